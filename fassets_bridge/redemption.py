"""
Redemption state machine — vault shares out, XRP paid back on the XRPL.

Phases:
    1. shares: redeem vault shares for FXRP (share accounting)
    2. redeem: FAssets redemption request; an agent is assigned and must
       pay the user on the XRPL
    3. payout: the payment detector reports the agent's payout
    4. proof: FDC attestation of the payout
    5. confirm: confirmRedemptionPayment, then the position is debited
       and a withdrawal is recorded in one store transaction

A proof timeout parks the record in awaiting_proof. Every destination tx
hash is stored before its receipt is awaited, and reconciliation finishes
a stored hash instead of sending it again. The confirmation tx hash is
written once; it is what marks a redemption as settled. Only a payout
from the assigned agent covering the expected drops moves a redemption
past xrpl_payout.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal
from enum import StrEnum
from typing import Any

from fassets_bridge.amounts import format_amount, from_raw, quantize_amount, to_decimal
from fassets_bridge.attestation.client import AttestationRequest
from fassets_bridge.bridge import ReconcileOutcome
from fassets_bridge.canonical_json import canonical_json
from fassets_bridge.collaborators import PaymentDetector, ShareAccounting
from fassets_bridge.errors import (
    BridgeError,
    ErrorKind,
    IncompleteReservationError,
    InvalidTransitionError,
    ProofTimeoutError,
    classify_exception,
    is_recoverable,
)
from fassets_bridge.evm.fassets import RedemptionTicket
from fassets_bridge.locks import KeyedLock
from fassets_bridge.records import (
    REDEMPTION_TRANSITIONS,
    RedemptionRecord,
    RedemptionStatus,
    now_utc,
)
from fassets_bridge.settlement import SettlementBackend
from fassets_bridge.store import BridgeStore

logger = logging.getLogger(__name__)

R = RedemptionStatus

PROOF_RETRY_FIELDS = ("voting_round_id", "request_bytes", "source_payout_tx_hash")

# Already past the payout; a repeated payout event is ignored.
_PAYOUT_SEEN = frozenset({R.XRPL_RECEIVED, R.AWAITING_PROOF, R.COMPLETED})


class RedemptionRecoveryAction(StrEnum):
    """What reconciliation should do with a redemption record."""

    RETRY_PROOF = "retry_proof"
    RESUME_PROOF_GENERATION = "resume_proof_generation"
    RESUME_CONFIRMATION = "resume_confirmation"
    CHECK_CONFIRMATION_TX = "check_confirmation_tx"
    CHECK_REDEMPTION_TX = "check_redemption_tx"
    RESUME_FXRP_REDEMPTION = "resume_fxrp_redemption"
    NONE = "none"


def redemption_recovery_action(record: RedemptionRecord) -> RedemptionRecoveryAction:
    """Route a redemption to its recovery action. Pure."""
    status = record.status
    if status == R.AWAITING_PROOF:
        return RedemptionRecoveryAction.RETRY_PROOF
    if status == R.REDEEMED_FXRP:
        return RedemptionRecoveryAction.RESUME_FXRP_REDEMPTION
    resumable = status == R.FAILED and is_recoverable(record.error_kind)
    if (
        record.redemption_tx_hash is not None
        and record.destination_request_id is None
        and (status == R.REDEEMING_FXRP or resumable)
    ):
        return RedemptionRecoveryAction.CHECK_REDEMPTION_TX
    if status == R.XRPL_RECEIVED or resumable:
        if record.confirmation_tx_hash is not None:
            return RedemptionRecoveryAction.CHECK_CONFIRMATION_TX
        if record.source_payout_tx_hash is not None:
            if record.proof_blob is not None:
                return RedemptionRecoveryAction.RESUME_CONFIRMATION
            return RedemptionRecoveryAction.RESUME_PROOF_GENERATION
    # No redeem tx hash was stored, so nothing was sent.
    if (
        status == R.FAILED
        and record.error_kind == ErrorKind.NETWORK_UNAVAILABLE
        and record.fxrp_redeemed is not None
        and record.redemption_tx_hash is None
        and record.destination_request_id is None
    ):
        return RedemptionRecoveryAction.RESUME_FXRP_REDEMPTION
    return RedemptionRecoveryAction.NONE


def next_retry_at(record: RedemptionRecord, backoff_base: float) -> datetime | None:
    """Earliest time the next automatic retry may run (None: immediately)."""
    if record.last_retry_at is None:
        return None
    delay = backoff_base * (2 ** record.retry_count)
    return record.last_retry_at + timedelta(seconds=delay)


class RedemptionStateMachine:
    """Drives redemption records from share redemption to settled payout.

    Args:
        store: Record store.
        settlement: Redemption and attestation backend.
        share_accounting: Vault share redemption.
        detector: Payment detector subscriptions.
        retry_backoff_base: Seconds before the first automatic retry;
            doubles with every retry.
        locks: Per-record locks.
        now_fn: Clock.
    """

    def __init__(
        self,
        store: BridgeStore,
        settlement: SettlementBackend,
        share_accounting: ShareAccounting,
        detector: PaymentDetector,
        *,
        retry_backoff_base: float = 60.0,
        locks: KeyedLock | None = None,
        now_fn: Callable[[], datetime] = now_utc,
    ) -> None:
        self._store = store
        self._settlement = settlement
        self._shares = share_accounting
        self._detector = detector
        self._backoff_base = retry_backoff_base
        self._locks = locks or KeyedLock()
        self._now_fn = now_fn

    def create_redemption(
        self,
        wallet_address: str,
        vault_id: str,
        position_id: str,
        share_amount: Decimal | str | int,
        user_source_address: str,
        *,
        redemption_id: str | None = None,
    ) -> RedemptionRecord:
        """Insert a pending redemption against an existing position.

        Raises:
            ValueError: Non-positive share amount.
            BridgeError: Position missing or too small.
        """
        amount = to_decimal(share_amount)
        if amount <= 0:
            raise ValueError(f"share amount must be positive, got {amount}")
        position = self._store.get_position(position_id)
        if position is None or Decimal(position["amount"]) < amount:
            held = position["amount"] if position else "0"
            raise BridgeError(
                f"position {position_id} holds {held}, cannot redeem {amount}",
                kind=ErrorKind.INVALID_RECORD,
                details={"position_id": position_id},
            )

        now = self._now_fn()
        record = RedemptionRecord(
            id=redemption_id or str(uuid.uuid4()),
            wallet_address=wallet_address,
            vault_id=vault_id,
            position_id=position_id,
            share_amount=amount,
            user_source_address=user_source_address,
            status=R.PENDING,
            created_at=now,
            updated_at=now,
        )
        if not self._store.insert_redemption(record):
            logger.info(f"Redemption {record.id} already exists")
            return self._store.get_redemption(record.id)
        logger.info(f"Created redemption {record.id}: {amount} shares of {vault_id}")
        return record

    # -----------------------------------------------------------------
    # Shares → FXRP → redemption request
    # -----------------------------------------------------------------

    async def request_redemption(self, redemption_id: str) -> RedemptionRecord:
        """Redeem the shares and request the FXRP redemption.

        Returns:
            The record in xrpl_payout, waiting for the agent's payment.
        """
        async with self._locks.hold(redemption_id):
            record = self._store.get_redemption(redemption_id)
            if record.status in (R.XRPL_PAYOUT, *_PAYOUT_SEEN):
                logger.info(f"Redemption {redemption_id} already requested ({record.status})")
                return record
            if record.status == R.PENDING:
                record = await self._redeem_shares(record)
            if record.status != R.REDEEMED_FXRP:
                raise InvalidTransitionError(
                    f"redemption {redemption_id} is {record.status}",
                    details={"redemption_id": redemption_id, "status": str(record.status)},
                )
            return await self._redeem_fxrp(record)

    async def _redeem_shares(self, record: RedemptionRecord) -> RedemptionRecord:
        redemption_id = record.id
        record = self._store.transition_redemption(redemption_id, R.PENDING, R.REDEEMING_SHARES)
        try:
            tx_hash = await self._shares.redeem_shares(
                record.vault_id, record.wallet_address, record.share_amount
            )
            record = self._store.update_redemption(redemption_id, vault_redeem_tx_hash=tx_hash)
            fxrp = await self._settlement.received_amount(record, tx_hash)
        except Exception as exc:
            self._fail(redemption_id, exc)
            raise
        return self._store.transition_redemption(
            redemption_id,
            R.REDEEMING_SHARES,
            R.REDEEMED_FXRP,
            fxrp_redeemed=quantize_amount(fxrp),
        )

    async def _redeem_fxrp(self, record: RedemptionRecord) -> RedemptionRecord:
        redemption_id = record.id
        if record.fxrp_redeemed is None:
            raise IncompleteReservationError(redemption_id, ["fxrp_redeemed"])
        record = self._store.transition_redemption(
            redemption_id, R.REDEEMED_FXRP, R.REDEEMING_FXRP
        )

        async def on_sent(tx_hash: str) -> None:
            self._store.update_redemption(redemption_id, redemption_tx_hash=tx_hash)
            logger.info(f"Redemption {redemption_id} redeem sent: {tx_hash}")

        try:
            ticket = await self._settlement.request_redemption(
                record, record.fxrp_redeemed, on_sent
            )
        except Exception as exc:
            self._fail(redemption_id, exc)
            raise
        return self._record_ticket(redemption_id, R.REDEEMING_FXRP, ticket)

    def _record_ticket(
        self,
        redemption_id: str,
        from_status: RedemptionStatus,
        ticket: RedemptionTicket,
    ) -> RedemptionRecord:
        record = self._store.transition_redemption(
            redemption_id,
            from_status,
            R.XRPL_PAYOUT,
            note=f"request {ticket.request_id}",
            redemption_tx_hash=ticket.tx_hash,
            destination_request_id=ticket.request_id,
            agent_vault_address=ticket.agent_vault,
            agent_source_address=ticket.agent_source_address,
            payment_reference=ticket.payment_reference,
            expected_payout_raw=ticket.expected_payout_raw,
            error_message=None,
            error_kind=None,
        )
        self._detector.subscribe_user_for_redemption(
            record.user_source_address,
            redemption_id,
            agent_address=ticket.agent_source_address,
            amount_raw=ticket.expected_payout_raw,
            payment_reference=ticket.payment_reference,
        )
        logger.info(
            f"Redemption {redemption_id} requested: agent {ticket.agent_vault} owes "
            f"{ticket.expected_payout_raw} drops to {record.user_source_address}"
        )
        return record

    # -----------------------------------------------------------------
    # Payout → proof → confirmation
    # -----------------------------------------------------------------

    async def execute_payout_confirmation(
        self,
        redemption_id: str,
        source_tx_hash: str,
        amount_raw: int | None = None,
        from_address: str | None = None,
    ) -> RedemptionRecord:
        """Attest the agent's payout and settle the redemption.

        A payout below ``expected_payout_raw`` or sent by anyone other than
        the assigned agent is ignored; the record stays in xrpl_payout and
        keeps waiting.

        Returns:
            completed, or awaiting_proof on a proof timeout. A payout
            for a redemption that already saw one is ignored.
        """
        async with self._locks.hold(redemption_id):
            record = self._store.get_redemption(redemption_id)
            if record.status in _PAYOUT_SEEN:
                logger.info(
                    f"Redemption {redemption_id} already has a payout ({record.status}), "
                    f"ignoring {source_tx_hash}"
                )
                return record
            if record.status != R.XRPL_PAYOUT:
                raise InvalidTransitionError(
                    f"redemption {redemption_id} is {record.status}, not waiting for a payout",
                    details={"redemption_id": redemption_id, "status": str(record.status)},
                )
            expected = record.expected_payout_raw
            if amount_raw is not None and expected is not None and amount_raw < expected:
                logger.warning(
                    f"Redemption {redemption_id} ignoring payout {source_tx_hash}: "
                    f"{amount_raw} drops is below the expected {expected}"
                )
                return record
            agent = record.agent_source_address
            if from_address is not None and agent is not None and from_address != agent:
                logger.warning(
                    f"Redemption {redemption_id} ignoring payout {source_tx_hash} "
                    f"from {from_address}, expected agent {agent}"
                )
                return record
            record = self._store.transition_redemption(
                redemption_id,
                R.XRPL_PAYOUT,
                R.XRPL_RECEIVED,
                note=source_tx_hash,
                source_payout_tx_hash=source_tx_hash,
                xrp_sent=from_raw(amount_raw) if amount_raw is not None else None,
                payout_received_at=self._now_fn(),
            )
            return await self._prove_and_confirm(record)

    async def _prove_and_confirm(self, record: RedemptionRecord) -> RedemptionRecord:
        redemption_id = record.id
        try:
            if record.voting_round_id is not None and record.request_bytes is not None:
                proof = await self._settlement.wait_for_proof(
                    record.voting_round_id, record.request_bytes, wait_for_round=False
                )
            else:
                request = await self._attest(record)
                proof = await self._settlement.wait_for_proof(
                    request.voting_round_id, request.request_bytes
                )
        except ProofTimeoutError as exc:
            logger.warning(f"Redemption {redemption_id}: {exc}")
            return self._store.transition_redemption(
                redemption_id,
                R.XRPL_RECEIVED,
                R.AWAITING_PROOF,
                note=f"round {exc.voting_round_id}",
                voting_round_id=exc.voting_round_id,
                request_bytes=exc.request_bytes,
                error_message=str(exc),
                error_kind=exc.kind,
            )
        except Exception as exc:
            self._fail(redemption_id, exc)
            raise

        record = self._store.update_redemption(redemption_id, proof_blob=canonical_json(proof))
        return await self._confirm(record, proof)

    async def _attest(self, record: RedemptionRecord) -> AttestationRequest:
        """Request the payout attestation, or finish one already sent."""
        redemption_id = record.id
        if record.attestation_tx_hash is not None and record.request_bytes is not None:
            request = await self._settlement.resume_attestation(
                record.attestation_tx_hash, record.request_bytes
            )
            if request is not None:
                self._store.update_redemption(
                    redemption_id, voting_round_id=request.voting_round_id
                )
                return request
            logger.warning(
                f"Redemption {redemption_id} attestation tx {record.attestation_tx_hash} "
                f"reverted, requesting again"
            )

        async def on_sent(attestation_tx_hash: str, request_bytes: str) -> None:
            self._store.update_redemption(
                redemption_id,
                attestation_tx_hash=attestation_tx_hash,
                request_bytes=request_bytes,
            )
            logger.info(f"Redemption {redemption_id} attestation requested: {attestation_tx_hash}")

        assert record.source_payout_tx_hash is not None
        request = await self._settlement.request_attestation(
            record.source_payout_tx_hash, on_sent
        )
        self._store.update_redemption(redemption_id, voting_round_id=request.voting_round_id)
        return request

    async def _confirm(self, record: RedemptionRecord, proof: dict[str, Any]) -> RedemptionRecord:
        redemption_id = record.id

        async def on_sent(tx_hash: str) -> None:
            if not self._store.set_confirmation_tx_hash(redemption_id, tx_hash):
                logger.warning(
                    f"Redemption {redemption_id} already has a confirmation tx, got {tx_hash}"
                )
            logger.info(f"Redemption {redemption_id} confirmRedemptionPayment sent: {tx_hash}")

        if record.confirmation_tx_hash is None:
            try:
                await self._settlement.confirm_redemption_payment(record, proof, on_sent)
            except Exception as exc:
                self._fail(redemption_id, exc)
                raise
        return self._settle(redemption_id)

    def _settle(self, redemption_id: str) -> RedemptionRecord:
        record = self._store.settle_redemption(redemption_id, (R.XRPL_RECEIVED,))
        self._detector.unsubscribe_user_address(record.user_source_address, redemption_id)
        logger.info(
            f"Redemption {redemption_id} completed: {format_amount(record.share_amount)} "
            f"shares debited from {record.position_id}"
        )
        return record

    # -----------------------------------------------------------------
    # Retries and reconciliation
    # -----------------------------------------------------------------

    async def retry_redemption_proof(self, redemption_id: str) -> RedemptionRecord:
        """Re-poll the proof of an awaiting_proof redemption, then settle it."""
        async with self._locks.hold(redemption_id):
            return await self._retry_proof(self._store.get_redemption(redemption_id))

    async def _retry_proof(self, record: RedemptionRecord) -> RedemptionRecord:
        redemption_id = record.id
        if record.is_terminal:
            logger.info(f"Redemption {redemption_id} is {record.status}, nothing to retry")
            return record
        if record.status != R.AWAITING_PROOF:
            raise InvalidTransitionError(
                f"redemption {redemption_id} is {record.status}, proof retry needs awaiting_proof",
                details={"redemption_id": redemption_id, "status": str(record.status)},
            )
        missing = [name for name in PROOF_RETRY_FIELDS if getattr(record, name) is None]
        if missing:
            raise IncompleteReservationError(redemption_id, missing)
        assert record.voting_round_id is not None and record.request_bytes is not None

        try:
            proof = await self._settlement.wait_for_proof(
                record.voting_round_id, record.request_bytes, wait_for_round=False
            )
        except ProofTimeoutError as exc:
            logger.warning(f"Redemption {redemption_id}: proof still unavailable: {exc}")
            return self._store.transition_redemption(
                redemption_id,
                R.AWAITING_PROOF,
                R.AWAITING_PROOF,
                note="retry timed out",
                error_message=str(exc),
                error_kind=exc.kind,
            )
        except Exception as exc:
            self._fail(redemption_id, exc)
            raise

        record = self._store.transition_redemption(
            redemption_id,
            R.AWAITING_PROOF,
            R.XRPL_RECEIVED,
            note="retry",
            proof_blob=canonical_json(proof),
            error_message=None,
            error_kind=None,
        )
        return await self._confirm(record, proof)

    def retry_due(self, record: RedemptionRecord, now: datetime | None = None) -> bool:
        """True once the exponential backoff since the last retry has elapsed."""
        due = next_retry_at(record, self._backoff_base)
        return due is None or (now or self._now_fn()) >= due

    async def reconcile_redemption(self, redemption_id: str) -> ReconcileOutcome:
        """Resume a stuck or recoverable redemption, honouring the backoff."""
        async with self._locks.hold(redemption_id):
            record = self._store.get_redemption(redemption_id)
            action = redemption_recovery_action(record)
            if action is RedemptionRecoveryAction.NONE:
                return ReconcileOutcome(redemption_id, action, record.status, "not recoverable")
            now = self._now_fn()
            if not self.retry_due(record, now):
                return ReconcileOutcome(redemption_id, action, record.status, "backing off")

            logger.info(f"Reconciling redemption {redemption_id} ({record.status}): {action}")
            record = self._store.update_redemption(
                redemption_id, retry_count=record.retry_count + 1, last_retry_at=now
            )

            if action is RedemptionRecoveryAction.RETRY_PROOF:
                record = await self._retry_proof(record)
            elif action is RedemptionRecoveryAction.RESUME_FXRP_REDEMPTION:
                if record.status == R.FAILED:
                    record = self._store.transition_redemption(
                        redemption_id, R.FAILED, R.REDEEMED_FXRP, note="resume redemption"
                    )
                record = await self._redeem_fxrp(record)
            elif action is RedemptionRecoveryAction.RESUME_PROOF_GENERATION:
                record = await self._prove_and_confirm(self._resume_received(record))
            elif action is RedemptionRecoveryAction.RESUME_CONFIRMATION:
                record = self._resume_received(record)
                assert record.proof_blob is not None
                record = await self._confirm(record, json.loads(record.proof_blob))
            elif action is RedemptionRecoveryAction.CHECK_CONFIRMATION_TX:
                record = await self._check_confirmation_tx(record)
            elif action is RedemptionRecoveryAction.CHECK_REDEMPTION_TX:
                record = await self._check_redemption_tx(record)
            return ReconcileOutcome(redemption_id, action, record.status)

    def _resume_received(self, record: RedemptionRecord) -> RedemptionRecord:
        if record.status == R.FAILED:
            return self._store.transition_redemption(
                record.id, R.FAILED, R.XRPL_RECEIVED, note="resume payout confirmation"
            )
        return record

    async def _check_redemption_tx(self, record: RedemptionRecord) -> RedemptionRecord:
        assert record.redemption_tx_hash is not None
        tx_hash = record.redemption_tx_hash
        try:
            ticket = await self._settlement.resume_redemption(record, tx_hash)
        except Exception as exc:
            self._fail(record.id, exc)
            raise
        if ticket is not None:
            return self._record_ticket(record.id, record.status, ticket)
        # A reverted redeem burns nothing.
        logger.warning(f"Redemption {record.id} redeem tx {tx_hash} reverted, redeeming again")
        record = self._store.transition_redemption(
            record.id,
            record.status,
            R.REDEEMED_FXRP,
            note="redeem reverted",
            redemption_tx_hash=None,
        )
        return await self._redeem_fxrp(record)

    async def _check_confirmation_tx(self, record: RedemptionRecord) -> RedemptionRecord:
        assert record.confirmation_tx_hash is not None
        tx_hash = record.confirmation_tx_hash
        succeeded = await self._settlement.destination_tx_succeeded(tx_hash)
        if succeeded is None:
            logger.info(f"Redemption {record.id} confirmation tx {tx_hash} still unconfirmed")
            return record
        if not succeeded:
            message = f"confirmation tx {tx_hash} reverted"
            logger.error(f"Redemption {record.id}: {message}, needs manual review")
            self._fail(record.id, BridgeError(message, kind=ErrorKind.CONTRACT_REVERTED))
            return self._store.get_redemption(record.id)
        self._resume_received(record)
        return self._settle(record.id)

    def _fail(self, redemption_id: str, exc: BaseException) -> None:
        kind = classify_exception(exc)
        current = self._store.get_redemption(redemption_id)
        if current.status == R.FAILED:
            self._store.update_redemption(redemption_id, error_message=str(exc), error_kind=kind)
            return
        if R.FAILED not in REDEMPTION_TRANSITIONS[current.status]:
            logger.error(f"Redemption {redemption_id} error in {current.status} ({kind}): {exc}")
            return
        log = logger.warning if is_recoverable(kind) else logger.error
        log(f"Redemption {redemption_id} failed in {current.status} ({kind}): {exc}")
        self._store.transition_redemption(
            redemption_id,
            current.status,
            R.FAILED,
            note=str(kind),
            error_message=str(exc),
            error_kind=kind,
        )

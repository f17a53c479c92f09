"""
Bridge state machine — XRP in, FXRP minted, vault shares credited.

Phases:
    1. create + reserve: a pending record, then collateral with an agent
       (fast, called from the request path)
    2. payment: the user pays the agent on the XRPL; the payment
       detector reports it and the runtime calls
       ``execute_minting_with_proof`` in the background
    3. proof: FDC attestation of the payment (minutes)
    4. mint: executeMinting on the AssetManager; the amount actually
       minted is read back from the FXRP Transfer event
    5. shares: vault shares minted for the received FXRP

Every step writes through the store before the next one starts, so a
crash at any point leaves a record that ``reconcile_bridge`` can resume.
Recoverable outcomes (proof timeout, share-mint failure) are persisted
as their own status and returned. Fatal ones are persisted as ``failed``
with an ErrorKind and re-raised.

Invariants:
    - at most one executeMinting per reservation: the destination tx
      hash is persisted before its receipt is awaited, and recovery
      checks that hash before ever sending again
    - the same holds for reserveCollateral and the attestation request:
      a stored hash is finished from its receipt, never paid for twice
    - at most one share mint per bridge (write-once vault_mint_tx_hash)
    - an expired record never reaches xrpl_confirmed
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import StrEnum
from typing import Any

from fassets_bridge.amounts import format_amount, from_raw, quantize_amount, to_decimal
from fassets_bridge.attestation.client import AttestationRequest
from fassets_bridge.canonical_json import canonical_json
from fassets_bridge.collaborators import PaymentDetector, ShareAccounting
from fassets_bridge.errors import (
    BridgeError,
    ErrorKind,
    IncompleteReservationError,
    InvalidTransitionError,
    ProofTimeoutError,
    ReservationExpiredError,
    SourceTransactionError,
    classify_exception,
    is_recoverable,
)
from fassets_bridge.evm.fassets import CollateralReservation
from fassets_bridge.locks import KeyedLock
from fassets_bridge.records import (
    BRIDGE_PRE_PAYMENT,
    BRIDGE_TRANSITIONS,
    BridgeRecord,
    BridgeStatus,
    now_utc,
)
from fassets_bridge.settlement import SettlementBackend
from fassets_bridge.store import BridgeStore
from fassets_bridge.xrpl.client import check_close_time

logger = logging.getLogger(__name__)

S = BridgeStatus

RESERVATION_FIELDS = (
    "agent_source_address",
    "total_amount_raw",
    "source_payment_reference",
    "reservation_expiry",
    "collateral_reservation_id",
)

PROOF_RETRY_FIELDS = (
    "voting_round_id",
    "request_bytes",
    "source_tx_hash",
    "collateral_reservation_id",
)

# Statuses from which a proof retry has nothing left to do.
_PAST_PROOF = frozenset(
    {
        S.FDC_PROOF_GENERATED,
        S.COMPLETED,
        S.VAULT_MINTING,
        S.VAULT_MINTED,
        S.VAULT_MINT_FAILED,
        S.CANCELLED,
        S.FAILED,
    }
)


def _missing(record: Any, names: tuple[str, ...]) -> list[str]:
    return [name for name in names if getattr(record, name) is None]


# =====================================================================
# Payment instruction
# =====================================================================


@dataclass(frozen=True)
class PaymentInstruction:
    """What the user must send on the XRPL to complete a reservation.

    Attributes:
        bridge_id: The bridge this payment belongs to.
        destination: Agent's XRPL address.
        amount_raw: Drops to send (reserved value plus agent fee).
        amount: Same, in XRP.
        memo: Payment reference, uppercase hex without 0x, for MemoData.
        network: Network profile name.
        expires_at: Deadline for the payment to be validated.
    """

    bridge_id: str
    destination: str
    amount_raw: int
    amount: Decimal
    memo: str
    network: str
    expires_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "bridge_id": self.bridge_id,
            "destination": self.destination,
            "amount_raw": str(self.amount_raw),
            "amount": format_amount(self.amount),
            "memo": self.memo,
            "network": self.network,
            "expires_at": self.expires_at.isoformat(),
        }


def build_payment_request(
    record: BridgeRecord,
    *,
    network: str,
    now: datetime | None = None,
) -> PaymentInstruction:
    """Payment instruction for a reserved bridge. Pure.

    Raises:
        IncompleteReservationError: A reservation field is missing.
        ReservationExpiredError: The reservation deadline has passed.
    """
    missing = _missing(record, RESERVATION_FIELDS)
    if missing:
        raise IncompleteReservationError(record.id, missing)
    now = now or now_utc()
    assert record.reservation_expiry is not None
    if record.reservation_expiry <= now:
        raise ReservationExpiredError(
            f"reservation for bridge {record.id} expired at "
            f"{record.reservation_expiry.isoformat()}",
            details={"bridge_id": record.id},
        )
    assert record.total_amount_raw is not None
    assert record.agent_source_address is not None
    assert record.source_payment_reference is not None
    return PaymentInstruction(
        bridge_id=record.id,
        destination=record.agent_source_address,
        amount_raw=record.total_amount_raw,
        amount=from_raw(record.total_amount_raw),
        memo=record.source_payment_reference.removeprefix("0x").upper(),
        network=network,
        expires_at=record.reservation_expiry,
    )


# =====================================================================
# Recovery routing
# =====================================================================


class RecoveryAction(StrEnum):
    """What reconciliation should do with a bridge record."""

    RETRY_PROOF = "retry_proof"
    RETRY_VAULT_MINT = "retry_vault_mint"
    RESUME_PROOF_GENERATION = "resume_proof_generation"
    RESUME_MINTING = "resume_minting"
    CHECK_DESTINATION_TX = "check_destination_tx"
    RESUME_RESERVATION = "resume_reservation"
    NONE = "none"


def bridge_recovery_action(record: BridgeRecord) -> RecoveryAction:
    """Route a record to its recovery action.

    Pure: depends only on status, error_kind and which fields are set.
    A stored destination tx always wins over resending one.
    """
    status = record.status
    if record.reservation_tx_hash is not None and record.collateral_reservation_id is None:
        if status == S.BRIDGING or (status == S.FAILED and is_recoverable(record.error_kind)):
            return RecoveryAction.RESUME_RESERVATION
    if status == S.FDC_TIMEOUT:
        return RecoveryAction.RETRY_PROOF
    if status == S.VAULT_MINT_FAILED:
        return RecoveryAction.RETRY_VAULT_MINT
    if status == S.COMPLETED and record.vault_mint_tx_hash is None:
        return RecoveryAction.RETRY_VAULT_MINT
    # A crash between the share mint and its bookkeeping; with no hash
    # the mint may or may not have happened, which needs a human.
    if status == S.VAULT_MINTING and record.vault_mint_tx_hash is not None:
        return RecoveryAction.RETRY_VAULT_MINT
    if status == S.XRPL_CONFIRMED and record.proof_blob is None:
        return RecoveryAction.RESUME_PROOF_GENERATION
    if status == S.FDC_PROOF_GENERATED:
        if record.destination_tx_hash is not None:
            return RecoveryAction.CHECK_DESTINATION_TX
        return RecoveryAction.RESUME_MINTING
    if status == S.FAILED and is_recoverable(record.error_kind):
        if record.destination_tx_hash is not None:
            return RecoveryAction.CHECK_DESTINATION_TX
        if record.proof_blob is not None:
            return RecoveryAction.RESUME_MINTING
        if record.source_tx_hash is not None:
            return RecoveryAction.RESUME_PROOF_GENERATION
    return RecoveryAction.NONE


@dataclass(frozen=True)
class ReconcileOutcome:
    """Result of one reconcile call."""

    record_id: str
    action: str
    status: str
    detail: str | None = None


# =====================================================================
# State machine
# =====================================================================


class BridgeStateMachine:
    """Drives bridge records from creation to credited vault shares.

    Args:
        store: Record store (single source of truth).
        settlement: Collateral, attestation and minting backend.
        share_accounting: Vault share minting.
        detector: Payment detector subscriptions.
        network: Network profile name, echoed in payment instructions.
        payment_window: Seconds a new bridge may wait for its payment.
        locks: Per-record locks, shared with other state machines.
        now_fn: Clock.
    """

    def __init__(
        self,
        store: BridgeStore,
        settlement: SettlementBackend,
        share_accounting: ShareAccounting,
        detector: PaymentDetector,
        *,
        network: str,
        payment_window: float = 1800.0,
        locks: KeyedLock | None = None,
        now_fn: Callable[[], datetime] = now_utc,
    ) -> None:
        self._store = store
        self._settlement = settlement
        self._shares = share_accounting
        self._detector = detector
        self._network = network
        self._payment_window = timedelta(seconds=payment_window)
        self._locks = locks or KeyedLock()
        self._now_fn = now_fn

    @property
    def network(self) -> str:
        return self._network

    # -----------------------------------------------------------------
    # Creation and reservation
    # -----------------------------------------------------------------

    def create_bridge(
        self,
        wallet_address: str,
        vault_id: str,
        source_amount: Decimal | str | int,
        *,
        destination_amount_expected: Decimal | str | int | None = None,
        bridge_id: str | None = None,
    ) -> BridgeRecord:
        """Insert a pending bridge. Returns the stored record.

        Re-creating an existing id returns the stored record unchanged.
        """
        amount = to_decimal(source_amount)
        if amount <= 0:
            raise ValueError(f"source amount must be positive, got {amount}")
        now = self._now_fn()
        record = BridgeRecord(
            id=bridge_id or str(uuid.uuid4()),
            wallet_address=wallet_address,
            vault_id=vault_id,
            source_amount=amount,
            status=S.PENDING,
            created_at=now,
            updated_at=now,
            destination_amount_expected=(
                to_decimal(destination_amount_expected)
                if destination_amount_expected is not None
                else None
            ),
            expires_at=now + self._payment_window,
        )
        if not self._store.insert_bridge(record):
            logger.info(f"Bridge {record.id} already exists")
            return self._store.get_bridge(record.id)
        logger.info(f"Created bridge {record.id}: {amount} XRP for vault {vault_id}")
        return record

    async def reserve_collateral_quick(self, bridge_id: str) -> BridgeRecord:
        """Reserve agent collateral and start watching the agent address.

        Returns:
            The record in awaiting_payment.

        Raises:
            ReservationExpiredError: The bridge expired before reserving.
            Any settlement error, after persisting ``failed``.
        """
        async with self._locks.hold(bridge_id):
            record = self._store.get_bridge(bridge_id)
            if record.status == S.AWAITING_PAYMENT:
                logger.info(f"Bridge {bridge_id} already reserved")
                return record
            now = self._now_fn()
            if record.is_expired(now):
                self._cancel_expired(record, now)
                raise ReservationExpiredError(
                    f"bridge {bridge_id} expired before collateral was reserved",
                    details={"bridge_id": bridge_id},
                )
            record = self._store.transition_bridge(
                bridge_id, S.PENDING, S.BRIDGING, bridge_started_at=now
            )

            async def on_sent(tx_hash: str) -> None:
                self._store.update_bridge(bridge_id, reservation_tx_hash=tx_hash)
                logger.info(f"Bridge {bridge_id} reserveCollateral sent: {tx_hash}")

            try:
                reservation = await self._settlement.reserve_collateral(record, on_sent)
            except Exception as exc:
                self._fail(bridge_id, exc)
                raise
            return self._record_reservation(record, S.BRIDGING, reservation)

    def _record_reservation(
        self,
        record: BridgeRecord,
        from_status: BridgeStatus,
        reservation: CollateralReservation,
    ) -> BridgeRecord:
        bridge_id = record.id
        record = self._store.transition_bridge(
            bridge_id,
            from_status,
            S.AWAITING_PAYMENT,
            note=f"reservation {reservation.reservation_id}",
            reservation_tx_hash=reservation.reservation_tx_hash,
            agent_vault_address=reservation.agent_vault,
            agent_source_address=reservation.agent_source_address,
            collateral_reservation_id=reservation.reservation_id,
            source_payment_reference=reservation.payment_reference,
            reserved_value_raw=reservation.value_raw,
            reserved_fee_raw=reservation.fee_raw,
            total_amount_raw=reservation.total_raw,
            minting_fee_bips=reservation.fee_bips,
            reservation_expiry=reservation.expires_at,
            expires_at=reservation.expires_at,
            destination_amount_expected=(
                record.destination_amount_expected
                if record.destination_amount_expected is not None
                else from_raw(reservation.value_raw)
            ),
            reserved_at=self._now_fn(),
            error_message=None,
            error_kind=None,
        )
        self._detector.add_agent_address(
            reservation.agent_source_address,
            bridge_id,
            reservation.payment_reference,
            reservation.total_raw,
        )
        logger.info(
            f"Bridge {bridge_id} reserved {reservation.total_raw} drops "
            f"with agent {reservation.agent_vault}"
        )
        return record

    def build_payment_request(
        self,
        record: BridgeRecord,
        *,
        now: datetime | None = None,
    ) -> PaymentInstruction:
        return build_payment_request(record, network=self._network, now=now or self._now_fn())

    # -----------------------------------------------------------------
    # Payment → proof → mint
    # -----------------------------------------------------------------

    async def execute_minting_with_proof(
        self,
        bridge_id: str,
        source_tx_hash: str,
    ) -> BridgeRecord:
        """Carry a paid bridge through attestation, minting and shares.

        Returns:
            The final record: vault_minted on success, fdc_timeout or
            vault_mint_failed on a recoverable stop, or the unchanged
            record if the payment was already processed.

        Raises:
            ReservationExpiredError: The payment window had passed; the
                record is now cancelled.
            InvalidTransitionError: The record is cancelled or failed.
            Any fatal error, after persisting ``failed``.
        """
        async with self._locks.hold(bridge_id):
            record = self._store.get_bridge(bridge_id)
            now = self._now_fn()

            if record.is_expired(now):
                self._cancel_expired(record, now)
                raise ReservationExpiredError(
                    f"payment for bridge {bridge_id} arrived after the reservation expired",
                    details={"bridge_id": bridge_id, "source_tx_hash": source_tx_hash},
                )
            if record.status in (S.CANCELLED, S.FAILED):
                raise InvalidTransitionError(
                    f"bridge {bridge_id} is {record.status}",
                    details={"bridge_id": bridge_id, "status": str(record.status)},
                )
            if record.status not in BRIDGE_PRE_PAYMENT:
                logger.info(
                    f"Bridge {bridge_id} already past payment ({record.status}), "
                    f"ignoring {source_tx_hash}"
                )
                return record
            if record.status != S.AWAITING_PAYMENT:
                raise InvalidTransitionError(
                    f"bridge {bridge_id} has no collateral reservation yet",
                    details={"bridge_id": bridge_id, "status": str(record.status)},
                )

            record = self._store.transition_bridge(
                bridge_id,
                S.AWAITING_PAYMENT,
                S.XRPL_CONFIRMED,
                note=source_tx_hash,
                source_tx_hash=source_tx_hash,
                expires_at=None,
            )
            if record.agent_source_address is not None:
                self._detector.remove_agent_address(record.agent_source_address, record.id)
            return await self._prove_and_mint(record)

    async def _verify_source(self, record: BridgeRecord) -> BridgeRecord:
        assert record.source_tx_hash is not None
        tx = await self._settlement.fetch_source_transaction(record.source_tx_hash)
        if not tx.succeeded:
            raise SourceTransactionError(
                f"source transaction {record.source_tx_hash} is not a validated success "
                f"(found={tx.found}, validated={tx.validated}, result={tx.engine_result})",
                details={"bridge_id": record.id, "source_tx_hash": record.source_tx_hash},
            )
        closed_at = check_close_time(tx, self._now_fn())
        return self._store.update_bridge(record.id, source_confirmed_at=closed_at)

    async def _prove_and_mint(self, record: BridgeRecord) -> BridgeRecord:
        """xrpl_confirmed → fdc_proof_generated (or fdc_timeout) → tail."""
        bridge_id = record.id
        try:
            if record.source_confirmed_at is None:
                record = await self._verify_source(record)

            if record.voting_round_id is not None and record.request_bytes is not None:
                logger.info(
                    f"Bridge {bridge_id} resuming proof poll for round {record.voting_round_id}"
                )
                proof = await self._settlement.wait_for_proof(
                    record.voting_round_id, record.request_bytes, wait_for_round=False
                )
            else:
                request = await self._attest(record)
                proof = await self._settlement.wait_for_proof(
                    request.voting_round_id, request.request_bytes
                )
        except ProofTimeoutError as exc:
            logger.warning(f"Bridge {bridge_id}: {exc}")
            return self._store.transition_bridge(
                bridge_id,
                S.XRPL_CONFIRMED,
                S.FDC_TIMEOUT,
                note=f"round {exc.voting_round_id}",
                voting_round_id=exc.voting_round_id,
                request_bytes=exc.request_bytes,
                error_message=str(exc),
                error_kind=exc.kind,
            )
        except Exception as exc:
            self._fail(bridge_id, exc)
            raise

        record = self._store.transition_bridge(
            bridge_id,
            S.XRPL_CONFIRMED,
            S.FDC_PROOF_GENERATED,
            proof_blob=canonical_json(proof),
            proof_generated_at=self._now_fn(),
            error_message=None,
            error_kind=None,
        )
        return await self._mint(record, proof)

    async def _attest(self, record: BridgeRecord) -> AttestationRequest:
        """Request the payment attestation, or finish one already sent."""
        bridge_id = record.id
        if record.attestation_tx_hash is not None and record.request_bytes is not None:
            request = await self._settlement.resume_attestation(
                record.attestation_tx_hash, record.request_bytes
            )
            if request is not None:
                logger.info(
                    f"Bridge {bridge_id} resumed attestation {record.attestation_tx_hash} "
                    f"(round {request.voting_round_id})"
                )
                self._store.update_bridge(bridge_id, voting_round_id=request.voting_round_id)
                return request
            logger.warning(
                f"Bridge {bridge_id} attestation tx {record.attestation_tx_hash} "
                f"reverted, requesting again"
            )

        async def on_sent(attestation_tx_hash: str, request_bytes: str) -> None:
            self._store.update_bridge(
                bridge_id,
                attestation_tx_hash=attestation_tx_hash,
                request_bytes=request_bytes,
            )
            logger.info(f"Bridge {bridge_id} attestation requested: {attestation_tx_hash}")

        assert record.source_tx_hash is not None
        request = await self._settlement.request_attestation(record.source_tx_hash, on_sent)
        self._store.update_bridge(bridge_id, voting_round_id=request.voting_round_id)
        return request

    async def _mint(self, record: BridgeRecord, proof: dict[str, Any]) -> BridgeRecord:
        """fdc_proof_generated → completed → shares."""
        bridge_id = record.id

        async def on_sent(tx_hash: str) -> None:
            self._store.update_bridge(bridge_id, destination_tx_hash=tx_hash)
            logger.info(f"Bridge {bridge_id} executeMinting sent: {tx_hash}")

        try:
            tx_hash = await self._settlement.execute_minting(record, proof, on_sent)
            amount = await self._settlement.minted_amount(record, tx_hash)
        except Exception as exc:
            self._fail(bridge_id, exc)
            raise
        return await self._record_minted(bridge_id, tx_hash, amount)

    async def _record_minted(self, bridge_id: str, tx_hash: str, amount: Decimal) -> BridgeRecord:
        amount = quantize_amount(amount)
        record = self._store.get_bridge(bridge_id)
        expected = record.destination_amount_expected
        if expected is not None and expected != amount:
            logger.warning(
                f"Bridge {bridge_id} minted {format_amount(amount)} FXRP, "
                f"expected {format_amount(expected)}"
            )
        now = self._now_fn()
        record = self._store.transition_bridge(
            bridge_id,
            (S.FDC_PROOF_GENERATED, S.FAILED),
            S.COMPLETED,
            note=tx_hash,
            destination_tx_hash=tx_hash,
            destination_amount_received=amount,
            destination_received_at=now,
            completed_at=now,
            error_message=None,
            error_kind=None,
        )
        return await self._complete_vault_minting(record)

    # -----------------------------------------------------------------
    # Retries
    # -----------------------------------------------------------------

    async def retry_proof_generation(self, bridge_id: str) -> BridgeRecord:
        """Re-poll for the proof of an fdc_timeout bridge, then finish it.

        Uses the stored round id and request bytes, so the attestation
        is never paid for twice. No-op on records past the proof step.
        """
        async with self._locks.hold(bridge_id):
            return await self._retry_proof(self._store.get_bridge(bridge_id))

    async def _retry_proof(self, record: BridgeRecord) -> BridgeRecord:
        bridge_id = record.id
        if record.status in _PAST_PROOF:
            logger.info(f"Bridge {bridge_id} is {record.status}, nothing to retry")
            return record
        if record.status != S.FDC_TIMEOUT:
            raise InvalidTransitionError(
                f"bridge {bridge_id} is {record.status}, proof retry needs fdc_timeout",
                details={"bridge_id": bridge_id, "status": str(record.status)},
            )
        missing = _missing(record, PROOF_RETRY_FIELDS)
        if missing:
            raise IncompleteReservationError(bridge_id, missing)
        assert record.voting_round_id is not None and record.request_bytes is not None

        try:
            proof = await self._settlement.wait_for_proof(
                record.voting_round_id, record.request_bytes, wait_for_round=False
            )
        except ProofTimeoutError as exc:
            logger.warning(f"Bridge {bridge_id}: proof still unavailable: {exc}")
            return self._store.transition_bridge(
                bridge_id,
                S.FDC_TIMEOUT,
                S.FDC_TIMEOUT,
                note="retry timed out",
                error_message=str(exc),
                error_kind=exc.kind,
            )
        except Exception as exc:
            self._fail(bridge_id, exc)
            raise

        record = self._store.transition_bridge(
            bridge_id,
            S.FDC_TIMEOUT,
            S.FDC_PROOF_GENERATED,
            note="retry",
            proof_blob=canonical_json(proof),
            proof_generated_at=self._now_fn(),
            error_message=None,
            error_kind=None,
        )
        return await self._mint(record, proof)

    async def complete_bridge_with_vault_minting(self, bridge_id: str) -> BridgeRecord:
        """Mint vault shares for a completed bridge.

        A share-accounting failure leaves the record in
        vault_mint_failed and is returned, not raised.
        """
        async with self._locks.hold(bridge_id):
            return await self._complete_vault_minting(self._store.get_bridge(bridge_id))

    async def _complete_vault_minting(self, record: BridgeRecord) -> BridgeRecord:
        bridge_id = record.id
        if record.vault_mint_tx_hash is not None:
            if record.status == S.VAULT_MINTING:
                return self._finish_vault_mint(bridge_id)
            logger.info(f"Bridge {bridge_id} shares already minted ({record.vault_mint_tx_hash})")
            return record
        if record.status in (S.CANCELLED, S.FAILED):
            logger.info(f"Bridge {bridge_id} is {record.status}, skipping share mint")
            return record
        if record.destination_amount_received is None:
            raise IncompleteReservationError(bridge_id, ["destination_amount_received"])
        if record.status not in (S.COMPLETED, S.VAULT_MINTING, S.VAULT_MINT_FAILED):
            raise InvalidTransitionError(
                f"bridge {bridge_id} is {record.status}, cannot mint shares",
                details={"bridge_id": bridge_id, "status": str(record.status)},
            )

        if record.status != S.VAULT_MINTING:
            record = self._store.transition_bridge(bridge_id, record.status, S.VAULT_MINTING)
        amount = record.destination_amount_received
        try:
            mint = await self._shares.mint_shares(record.vault_id, record.wallet_address, amount)
        except Exception as exc:
            logger.warning(f"Bridge {bridge_id} share mint failed: {exc}")
            return self._store.transition_bridge(
                bridge_id,
                S.VAULT_MINTING,
                S.VAULT_MINT_FAILED,
                error_message=str(exc),
                error_kind=ErrorKind.SHARE_MINT_FAILED,
            )

        if not self._store.record_vault_mint(bridge_id, mint.tx_hash, mint.position_id, amount):
            logger.warning(
                f"Bridge {bridge_id} already has a share mint recorded, "
                f"ignoring {mint.tx_hash}"
            )
        return self._finish_vault_mint(bridge_id)

    def _finish_vault_mint(self, bridge_id: str) -> BridgeRecord:
        record = self._store.transition_bridge(
            bridge_id,
            S.VAULT_MINTING,
            S.VAULT_MINTED,
            vault_minted_at=self._now_fn(),
            error_message=None,
            error_kind=None,
        )
        logger.info(
            f"Bridge {bridge_id} credited {format_amount(record.destination_amount_received)} "
            f"to position {record.position_id} (tx {record.vault_mint_tx_hash})"
        )
        return record

    # -----------------------------------------------------------------
    # Reconciliation
    # -----------------------------------------------------------------

    async def reconcile_bridge(self, bridge_id: str) -> ReconcileOutcome:
        """Resume a stuck or recoverable bridge from wherever it stopped.

        Increments retry_count when an action is taken. Errors from the
        resumed step propagate after being persisted.
        """
        async with self._locks.hold(bridge_id):
            record = self._store.get_bridge(bridge_id)
            action = bridge_recovery_action(record)
            if action is RecoveryAction.NONE:
                return ReconcileOutcome(bridge_id, action, record.status, "not recoverable")

            logger.info(f"Reconciling bridge {bridge_id} ({record.status}): {action}")
            record = self._store.update_bridge(bridge_id, retry_count=record.retry_count + 1)

            if action is RecoveryAction.RETRY_PROOF:
                record = await self._retry_proof(record)
            elif action is RecoveryAction.RETRY_VAULT_MINT:
                record = await self._complete_vault_minting(record)
            elif action is RecoveryAction.RESUME_PROOF_GENERATION:
                if record.status == S.FAILED:
                    record = self._store.transition_bridge(
                        bridge_id, S.FAILED, S.XRPL_CONFIRMED, note="resume proof generation"
                    )
                record = await self._prove_and_mint(record)
            elif action is RecoveryAction.RESUME_MINTING:
                record = await self._resume_minting(record)
            elif action is RecoveryAction.RESUME_RESERVATION:
                record = await self._resume_reservation(record)
            elif action is RecoveryAction.CHECK_DESTINATION_TX:
                record = await self._check_destination_tx(record)
            return ReconcileOutcome(bridge_id, action, record.status)

    async def _resume_reservation(self, record: BridgeRecord) -> BridgeRecord:
        """Finish a reserveCollateral that was sent but never recorded."""
        assert record.reservation_tx_hash is not None
        tx_hash = record.reservation_tx_hash
        try:
            reservation = await self._settlement.resume_reservation(record, tx_hash)
        except Exception as exc:
            self._fail(record.id, exc)
            raise
        if reservation is None:
            message = f"reservation tx {tx_hash} reverted"
            logger.error(f"Bridge {record.id}: {message}")
            self._fail(record.id, BridgeError(message, kind=ErrorKind.CONTRACT_REVERTED))
            return self._store.get_bridge(record.id)
        return self._record_reservation(record, record.status, reservation)

    async def _resume_minting(self, record: BridgeRecord) -> BridgeRecord:
        if record.proof_blob is None:
            raise IncompleteReservationError(record.id, ["proof_blob"])
        if record.status == S.FAILED:
            record = self._store.transition_bridge(
                record.id, S.FAILED, S.FDC_PROOF_GENERATED, note="resume minting"
            )
        return await self._mint(record, json.loads(record.proof_blob))

    async def _check_destination_tx(self, record: BridgeRecord) -> BridgeRecord:
        """Settle a bridge whose executeMinting was sent but not confirmed."""
        assert record.destination_tx_hash is not None
        tx_hash = record.destination_tx_hash
        succeeded = await self._settlement.destination_tx_succeeded(tx_hash)
        if succeeded is None:
            logger.info(f"Bridge {record.id} minting tx {tx_hash} still unconfirmed")
            return record
        if succeeded:
            try:
                amount = await self._settlement.minted_amount(record, tx_hash)
            except Exception as exc:
                self._fail(record.id, exc)
                raise
            return await self._record_minted(record.id, tx_hash, amount)

        logger.warning(f"Bridge {record.id} minting tx {tx_hash} reverted, resending")
        record = self._store.update_bridge(record.id, destination_tx_hash=None)
        return await self._resume_minting(record)

    # -----------------------------------------------------------------
    # Failure and expiry bookkeeping
    # -----------------------------------------------------------------

    def _fail(self, bridge_id: str, exc: BaseException) -> None:
        kind = classify_exception(exc)
        current = self._store.get_bridge(bridge_id)
        if current.status == S.FAILED:
            self._store.update_bridge(bridge_id, error_message=str(exc), error_kind=kind)
            return
        if S.FAILED not in BRIDGE_TRANSITIONS[current.status]:
            logger.error(f"Bridge {bridge_id} error in {current.status} ({kind}): {exc}")
            return
        log = logger.warning if is_recoverable(kind) else logger.error
        log(f"Bridge {bridge_id} failed in {current.status} ({kind}): {exc}")
        self._store.transition_bridge(
            bridge_id,
            current.status,
            S.FAILED,
            note=str(kind),
            error_message=str(exc),
            error_kind=kind,
        )

    async def cancel_if_expired(
        self,
        bridge_id: str,
        now: datetime | None = None,
    ) -> BridgeRecord | None:
        """Cancel a bridge whose payment window has passed.

        The record is re-read under its lock, so a payment processed in
        the meantime wins. Returns the cancelled record, or None if it
        was no longer expired.
        """
        async with self._locks.hold(bridge_id):
            record = self._store.get_bridge(bridge_id)
            now = now or self._now_fn()
            if not record.is_expired(now):
                return None
            return self._cancel_expired(record, now)

    def _cancel_expired(self, record: BridgeRecord, now: datetime) -> BridgeRecord:
        cancelled = self._store.transition_bridge(
            record.id,
            record.status,
            S.CANCELLED,
            note="expired",
            cancelled_at=now,
            cancellation_reason="expired",
        )
        if record.agent_source_address is not None:
            self._detector.remove_agent_address(record.agent_source_address, record.id)
        logger.info(f"Bridge {record.id} cancelled: reservation expired")
        return cancelled

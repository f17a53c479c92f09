"""
Settlement backends — where collateral, proofs and mints actually happen.

The state machines never talk to a chain directly. They call a
SettlementBackend, chosen once when the runtime is built:

    - ChainSettlementBackend: FAssets AssetManager + FDC over web3,
      source ledger over rippled JSON-RPC.
    - SimulatedSettlementBackend: deterministic values derived from the
      record ids, no network. Used for demos and local runs.

Both honour the same persistence contract: every transaction hash is
handed to the caller's ``on_sent`` callback before the backend waits for
the transaction to be mined, and a stored hash is finished through the
matching ``resume_*`` method instead of being sent again.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable

from fassets_bridge.amounts import from_raw, to_raw
from fassets_bridge.attestation.client import AttestationClient, AttestationRequest, OnRequestSent
from fassets_bridge.attestation.rounds import RoundSchedule, compute_round
from fassets_bridge.canonical_json import sha256_hex
from fassets_bridge.config import PAYMENT_ATTESTATION_TYPE, SOURCE_ID_TEST_XRP
from fassets_bridge.errors import DestinationTransactionError, ErrorKind, ProofTimeoutError
from fassets_bridge.evm.fassets import CollateralReservation, FAssetsClient, RedemptionTicket
from fassets_bridge.evm.gateway import EvmGateway, OnSent
from fassets_bridge.records import BridgeRecord, RedemptionRecord, now_utc
from fassets_bridge.xrpl.client import SourceTransaction, XrplLedgerClient

logger = logging.getLogger(__name__)

@runtime_checkable
class SettlementBackend(Protocol):
    """Capabilities the state machines need from the outside world."""

    async def reserve_collateral(
        self,
        record: BridgeRecord,
        on_sent: OnSent,
    ) -> CollateralReservation:
        ...

    async def resume_reservation(
        self,
        record: BridgeRecord,
        tx_hash: str,
    ) -> CollateralReservation | None:
        """Reservation made by ``tx_hash``; None if it reverted."""
        ...

    async def fetch_source_transaction(self, tx_hash: str) -> SourceTransaction:
        ...

    async def request_attestation(
        self,
        source_tx_hash: str,
        on_sent: OnRequestSent,
    ) -> AttestationRequest:
        ...

    async def resume_attestation(
        self,
        attestation_tx_hash: str,
        request_bytes: str,
    ) -> AttestationRequest | None:
        ...

    async def wait_for_proof(
        self,
        voting_round_id: int,
        request_bytes: str,
        *,
        wait_for_round: bool = True,
    ) -> dict[str, Any]:
        ...

    async def execute_minting(
        self,
        record: BridgeRecord,
        proof: dict[str, Any],
        on_sent: OnSent,
    ) -> str:
        ...

    async def destination_tx_succeeded(self, tx_hash: str) -> bool | None:
        """True if mined and successful, False if reverted, None if unknown."""
        ...

    async def minted_amount(self, record: BridgeRecord, tx_hash: str) -> Decimal:
        """FXRP actually minted by ``tx_hash``, from the Transfer event."""
        ...

    async def received_amount(self, record: RedemptionRecord, tx_hash: str) -> Decimal:
        """FXRP received by the operator in the vault redemption ``tx_hash``."""
        ...

    async def request_redemption(
        self,
        record: RedemptionRecord,
        fxrp_amount: Decimal,
        on_sent: OnSent,
    ) -> RedemptionTicket:
        ...

    async def resume_redemption(
        self,
        record: RedemptionRecord,
        tx_hash: str,
    ) -> RedemptionTicket | None:
        ...

    async def confirm_redemption_payment(
        self,
        record: RedemptionRecord,
        proof: dict[str, Any],
        on_sent: OnSent,
    ) -> str:
        ...


# =====================================================================
# Chain-backed
# =====================================================================


class ChainSettlementBackend:
    """SettlementBackend over FAssets, FDC and rippled.

    Args:
        gateway: Destination chain gateway (operator account).
        fassets: AssetManager client.
        attestation: FDC attestation client.
        ledger: Source ledger client.
        decimals: FXRP decimals.
    """

    def __init__(
        self,
        gateway: EvmGateway,
        fassets: FAssetsClient,
        attestation: AttestationClient,
        ledger: XrplLedgerClient,
        *,
        decimals: int = 6,
    ) -> None:
        self._gateway = gateway
        self._fassets = fassets
        self._attestation = attestation
        self._ledger = ledger
        self._decimals = decimals

    async def reserve_collateral(
        self,
        record: BridgeRecord,
        on_sent: OnSent,
    ) -> CollateralReservation:
        lots = await self._fassets.calculate_lots(record.source_amount)
        return await self._fassets.reserve_collateral(lots, on_sent)

    async def resume_reservation(
        self,
        record: BridgeRecord,
        tx_hash: str,
    ) -> CollateralReservation | None:
        return await self._fassets.reservation_from_tx(tx_hash)

    async def fetch_source_transaction(self, tx_hash: str) -> SourceTransaction:
        return await self._ledger.get_transaction(tx_hash)

    async def request_attestation(
        self,
        source_tx_hash: str,
        on_sent: OnRequestSent,
    ) -> AttestationRequest:
        return await self._attestation.request_attestation(source_tx_hash, on_sent=on_sent)

    async def resume_attestation(
        self,
        attestation_tx_hash: str,
        request_bytes: str,
    ) -> AttestationRequest | None:
        return await self._attestation.resume_attestation(attestation_tx_hash, request_bytes)

    async def wait_for_proof(
        self,
        voting_round_id: int,
        request_bytes: str,
        *,
        wait_for_round: bool = True,
    ) -> dict[str, Any]:
        return await self._attestation.wait_for_proof(
            voting_round_id, request_bytes, wait_for_round=wait_for_round
        )

    async def execute_minting(
        self,
        record: BridgeRecord,
        proof: dict[str, Any],
        on_sent: OnSent,
    ) -> str:
        if record.collateral_reservation_id is None:
            raise ValueError(f"bridge {record.id} has no collateral reservation")
        receipt = await self._fassets.execute_minting(
            proof, record.collateral_reservation_id, on_sent
        )
        return receipt.tx_hash

    async def destination_tx_succeeded(self, tx_hash: str) -> bool | None:
        receipt = await self._gateway.get_receipt(tx_hash)
        return None if receipt is None else receipt.succeeded

    async def _transfer_amount(self, tx_hash: str, *, minted_only: bool) -> Decimal:
        receipt = await self._gateway.get_receipt(tx_hash)
        if receipt is None:
            raise DestinationTransactionError(
                f"transaction {tx_hash} not mined",
                tx_hash=tx_hash,
                kind=ErrorKind.DESTINATION_TX_UNCONFIRMED,
            )
        raw = await self._fassets.transferred_amount(
            receipt, recipient=self._gateway.account_address, minted_only=minted_only
        )
        if raw == 0:
            raise DestinationTransactionError(
                f"no FXRP transfer to the operator in {tx_hash}",
                tx_hash=tx_hash,
            )
        return from_raw(raw, self._decimals)

    async def minted_amount(self, record: BridgeRecord, tx_hash: str) -> Decimal:
        return await self._transfer_amount(tx_hash, minted_only=True)

    async def received_amount(self, record: RedemptionRecord, tx_hash: str) -> Decimal:
        return await self._transfer_amount(tx_hash, minted_only=False)

    async def request_redemption(
        self,
        record: RedemptionRecord,
        fxrp_amount: Decimal,
        on_sent: OnSent,
    ) -> RedemptionTicket:
        return await self._fassets.redeem(
            to_raw(fxrp_amount, self._decimals), record.user_source_address, on_sent
        )

    async def resume_redemption(
        self,
        record: RedemptionRecord,
        tx_hash: str,
    ) -> RedemptionTicket | None:
        return await self._fassets.redemption_from_tx(tx_hash)

    async def confirm_redemption_payment(
        self,
        record: RedemptionRecord,
        proof: dict[str, Any],
        on_sent: OnSent,
    ) -> str:
        if record.destination_request_id is None:
            raise ValueError(f"redemption {record.id} has no redemption request id")
        receipt = await self._fassets.confirm_redemption_payment(
            proof, record.destination_request_id, on_sent
        )
        return receipt.tx_hash


# =====================================================================
# Simulated
# =====================================================================


def _hash(*parts: object) -> str:
    return f"0x{sha256_hex(':'.join(str(p) for p in parts))}"


class SimulatedSettlementBackend:
    """Deterministic SettlementBackend with no network access.

    Every value derives from record ids and the injected clock, so the
    same inputs always produce the same reservation, round and hashes.

    Args:
        fee_bips: Simulated agent minting / redemption fee.
        payment_window: Seconds until a simulated reservation expires.
        round_schedule: Voting round constants.
        proof_timeouts: Number of initial proof polls that time out,
            to exercise the recovery path.
        now_fn: Clock.
    """

    def __init__(
        self,
        *,
        fee_bips: int = 25,
        payment_window: float = 1800.0,
        round_schedule: RoundSchedule | None = None,
        proof_timeouts: int = 0,
        now_fn: Callable[[], datetime] = now_utc,
    ) -> None:
        self._fee_bips = fee_bips
        self._payment_window = payment_window
        self._schedule = round_schedule or RoundSchedule(offset_sec=1658430000, duration_sec=90)
        self._proof_timeouts = proof_timeouts
        self._now_fn = now_fn

    def _split(self, total_raw: int) -> tuple[int, int]:
        fee = total_raw * self._fee_bips // 10_000
        return total_raw - fee, fee

    def _reservation(self, record: BridgeRecord) -> CollateralReservation:
        value_raw, fee_raw = self._split(to_raw(record.source_amount))
        expires = self._now_fn() + timedelta(seconds=self._payment_window)
        digest = sha256_hex(f"reservation:{record.id}")
        return CollateralReservation(
            reservation_id=int(digest[:12], 16),
            reservation_tx_hash=_hash("reserve", record.id),
            agent_vault=f"0x{digest[-40:]}",
            agent_source_address=f"rSim{digest[:24]}",
            fee_bips=self._fee_bips,
            value_raw=value_raw,
            fee_raw=fee_raw,
            payment_reference=_hash("reference", record.id),
            last_underlying_block=0,
            last_underlying_timestamp=int(expires.timestamp()),
        )

    async def reserve_collateral(
        self,
        record: BridgeRecord,
        on_sent: OnSent,
    ) -> CollateralReservation:
        reservation = self._reservation(record)
        await on_sent(reservation.reservation_tx_hash)
        logger.info(f"Simulated reservation {reservation.reservation_id} for bridge {record.id}")
        return reservation

    async def resume_reservation(
        self,
        record: BridgeRecord,
        tx_hash: str,
    ) -> CollateralReservation | None:
        return self._reservation(record)

    async def fetch_source_transaction(self, tx_hash: str) -> SourceTransaction:
        return SourceTransaction(
            found=True,
            tx_hash=tx_hash,
            validated=True,
            engine_result="tesSUCCESS",
            transaction_type="Payment",
            close_time=int(self._now_fn().timestamp()) - 5,
        )

    def _attestation(self, source_tx_hash: str) -> AttestationRequest:
        timestamp = int(self._now_fn().timestamp())
        return AttestationRequest(
            request_bytes=_hash("request", source_tx_hash),
            attestation_tx_hash=_hash("attestation", source_tx_hash),
            block_number=timestamp,
            block_timestamp=timestamp,
            voting_round_id=compute_round(timestamp, self._schedule),
        )

    async def request_attestation(
        self,
        source_tx_hash: str,
        on_sent: OnRequestSent,
    ) -> AttestationRequest:
        request = self._attestation(source_tx_hash)
        await on_sent(request.attestation_tx_hash, request.request_bytes)
        return request

    async def resume_attestation(
        self,
        attestation_tx_hash: str,
        request_bytes: str,
    ) -> AttestationRequest | None:
        timestamp = int(self._now_fn().timestamp())
        return AttestationRequest(
            request_bytes=request_bytes,
            attestation_tx_hash=attestation_tx_hash,
            block_number=timestamp,
            block_timestamp=timestamp,
            voting_round_id=compute_round(timestamp, self._schedule),
        )

    async def wait_for_proof(
        self,
        voting_round_id: int,
        request_bytes: str,
        *,
        wait_for_round: bool = True,
    ) -> dict[str, Any]:
        if self._proof_timeouts > 0:
            self._proof_timeouts -= 1
            raise ProofTimeoutError(voting_round_id, 404, request_bytes)
        return {
            "proof": [_hash("merkle", request_bytes)],
            "response": {
                "attestationType": PAYMENT_ATTESTATION_TYPE,
                "sourceId": SOURCE_ID_TEST_XRP,
                "votingRound": voting_round_id,
                "lowestUsedTimestamp": self._schedule.round_start(voting_round_id),
                "requestBody": {"transactionId": request_bytes, "inUtxo": 0, "utxo": 0},
                "responseBody": {"status": 0},
            },
        }

    async def execute_minting(
        self,
        record: BridgeRecord,
        proof: dict[str, Any],
        on_sent: OnSent,
    ) -> str:
        tx_hash = _hash("execute-minting", record.collateral_reservation_id)
        await on_sent(tx_hash)
        return tx_hash

    async def destination_tx_succeeded(self, tx_hash: str) -> bool | None:
        return True

    async def minted_amount(self, record: BridgeRecord, tx_hash: str) -> Decimal:
        if record.reserved_value_raw is None:
            raise ValueError(f"bridge {record.id} has no reserved value")
        return from_raw(record.reserved_value_raw)

    async def received_amount(self, record: RedemptionRecord, tx_hash: str) -> Decimal:
        # Simulated vaults redeem shares 1:1.
        return record.share_amount

    def _ticket(self, record: RedemptionRecord, value_raw: int) -> RedemptionTicket:
        _, fee_raw = self._split(value_raw)
        digest = sha256_hex(f"redemption:{record.id}")
        return RedemptionTicket(
            request_id=int(digest[:12], 16),
            tx_hash=_hash("redeem", record.id),
            agent_vault=f"0x{digest[-40:]}",
            payment_address=record.user_source_address,
            value_raw=value_raw,
            fee_raw=fee_raw,
            agent_source_address=f"rSim{digest[:24]}",
            payment_reference=_hash("redemption-reference", record.id),
        )

    async def request_redemption(
        self,
        record: RedemptionRecord,
        fxrp_amount: Decimal,
        on_sent: OnSent,
    ) -> RedemptionTicket:
        ticket = self._ticket(record, to_raw(fxrp_amount))
        await on_sent(ticket.tx_hash)
        return ticket

    async def resume_redemption(
        self,
        record: RedemptionRecord,
        tx_hash: str,
    ) -> RedemptionTicket | None:
        if record.fxrp_redeemed is None:
            raise ValueError(f"redemption {record.id} has no FXRP amount")
        return self._ticket(record, to_raw(record.fxrp_redeemed))

    async def confirm_redemption_payment(
        self,
        record: RedemptionRecord,
        proof: dict[str, Any],
        on_sent: OnSent,
    ) -> str:
        tx_hash = _hash("confirm-redemption", record.destination_request_id)
        await on_sent(tx_hash)
        return tx_hash

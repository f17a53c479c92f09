"""
FdcHub client — pays for and submits attestation requests on-chain.

The request fee is looked up per request from FdcRequestFeeConfigurations.
The block timestamp of the mined submission decides the voting round.

Resubmission after a crash or a client retry can hit a node that still
holds the identical signed transaction ("already known"). Submitting
again would only fail again, so instead the recent blocks are scanned
for a hub transaction whose input carries the same request bytes and
that transaction's block is used.

The hub tx hash reaches the caller before the receipt wait. A stored
hash is finished with ``resume``, never paid for a second time.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from fassets_bridge.attestation.rounds import RoundSchedule
from fassets_bridge.errors import AttestationSubmissionUnresolvedError, TransactionAlreadyKnownError
from fassets_bridge.evm.abis import (
    FDC_FEE_CONFIGURATIONS_ABI,
    FDC_HUB_ABI,
    FLARE_SYSTEMS_MANAGER_ABI,
)
from fassets_bridge.evm.gateway import EvmGateway, OnSent, TxReceipt, mined_receipt, transact

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmittedAttestation:
    """A mined requestAttestation transaction."""

    tx_hash: str
    block_number: int
    block_timestamp: int
    recovered: bool = False


class FdcHubClient:
    """Submits attestation requests to FdcHub.

    Args:
        gateway: Destination chain gateway.
        lookback_blocks: Blocks scanned when recovering an "already
            known" submission.
        search_attempts: Scans before giving up.
        search_interval: Seconds between scans.
        sleep: Injectable sleep.
    """

    def __init__(
        self,
        gateway: EvmGateway,
        *,
        lookback_blocks: int = 20,
        search_attempts: int = 12,
        search_interval: float = 5.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._gateway = gateway
        self._lookback_blocks = lookback_blocks
        self._search_attempts = search_attempts
        self._search_interval = search_interval
        self._sleep = sleep

    async def round_schedule(self) -> RoundSchedule:
        """Read the voting round constants from FlareSystemsManager."""
        manager = await self._gateway.resolve_contract("FlareSystemsManager")
        offset = await self._gateway.call(
            manager, FLARE_SYSTEMS_MANAGER_ABI, "firstVotingRoundStartTs"
        )
        duration = await self._gateway.call(
            manager, FLARE_SYSTEMS_MANAGER_ABI, "votingEpochDurationSeconds"
        )
        schedule = RoundSchedule(offset_sec=int(offset), duration_sec=int(duration))
        logger.info(
            f"Voting rounds: offset {schedule.offset_sec}, duration {schedule.duration_sec}s"
        )
        return schedule

    async def request_fee(self, request_bytes: str) -> int:
        fee_config = await self._gateway.resolve_contract("FdcRequestFeeConfigurations")
        fee = await self._gateway.call(
            fee_config, FDC_FEE_CONFIGURATIONS_ABI, "getRequestFee", _to_bytes(request_bytes)
        )
        return int(fee)

    async def submit(
        self,
        request_bytes: str,
        on_sent: OnSent | None = None,
    ) -> SubmittedAttestation:
        """Pay the fee and submit ``request_bytes``; wait until mined.

        ``on_sent`` is awaited with the hub tx hash before the receipt
        wait, so the caller can persist it and later finish the same
        submission with ``resume`` instead of paying again.

        Raises:
            AttestationSubmissionUnresolvedError: The node reported the
                transaction as already known and no mined copy was found.
        """
        hub = await self._gateway.resolve_contract("FdcHub")
        fee = await self.request_fee(request_bytes)
        try:
            receipt = await transact(
                self._gateway,
                hub,
                FDC_HUB_ABI,
                "requestAttestation",
                _to_bytes(request_bytes),
                value=fee,
                on_sent=on_sent,
            )
        except TransactionAlreadyKnownError:
            logger.warning("Attestation request already known, searching recent blocks")
            return await self.find_submission(hub, request_bytes)

        submitted = await self._submitted(receipt)
        logger.info(
            f"Attestation requested in tx {submitted.tx_hash} "
            f"(block {submitted.block_number}, fee {fee} wei)"
        )
        return submitted

    async def resume(self, tx_hash: str) -> SubmittedAttestation | None:
        """Finish a submission whose hash was stored before it was mined.

        Returns:
            The mined submission, or None if it reverted (the fee went
            back with the revert and a new submission is needed).

        Raises:
            DestinationTransactionError: Still not mined.
        """
        receipt = await mined_receipt(self._gateway, tx_hash)
        if receipt is None:
            return None
        submitted = await self._submitted(receipt)
        logger.info(f"Resumed attestation request {tx_hash} (block {submitted.block_number})")
        return submitted

    async def _submitted(self, receipt: TxReceipt) -> SubmittedAttestation:
        timestamp = await self._gateway.block_timestamp(receipt.block_number)
        return SubmittedAttestation(
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            block_timestamp=timestamp,
        )

    async def find_submission(self, hub: str, request_bytes: str) -> SubmittedAttestation:
        """Scan recent blocks for a hub transaction carrying ``request_bytes``."""
        needle = request_bytes.lower().removeprefix("0x")
        hub_address = hub.lower()

        for attempt in range(1, self._search_attempts + 1):
            latest = await self._gateway.block_number()
            first = max(0, latest - self._lookback_blocks + 1)
            for block_number in range(latest, first - 1, -1):
                for tx in await self._gateway.block_transactions(block_number):
                    if tx.to is None or tx.to.lower() != hub_address:
                        continue
                    if needle in tx.input.lower():
                        timestamp = await self._gateway.block_timestamp(block_number)
                        logger.info(
                            f"Found existing attestation request {tx.tx_hash} "
                            f"in block {block_number}"
                        )
                        return SubmittedAttestation(
                            tx_hash=tx.tx_hash,
                            block_number=block_number,
                            block_timestamp=timestamp,
                            recovered=True,
                        )
            logger.debug(
                f"Attestation request not mined yet "
                f"(search {attempt}/{self._search_attempts}, blocks {first}-{latest})"
            )
            if attempt < self._search_attempts:
                await self._sleep(self._search_interval)

        raise AttestationSubmissionUnresolvedError(
            "attestation request reported as already known but not found in recent blocks",
            details={"lookback_blocks": self._lookback_blocks, "attempts": self._search_attempts},
        )


def _to_bytes(hex_data: str) -> bytes:
    return bytes.fromhex(hex_data.removeprefix("0x"))

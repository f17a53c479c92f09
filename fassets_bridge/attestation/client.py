"""
Attestation client — from a source transaction hash to a finalized proof.

Pipeline:
    1. prepare: verifier encodes the Payment request (polled)
    2. submit: FdcHub.requestAttestation paid with the per-request fee
    3. round: voting round from the mined block's timestamp
    4. wait: two full round durations
    5. poll: data-availability layer until the proof is finalized

Steps 1-3 are ``request_attestation``; steps 4-5 are ``wait_for_proof``.
``submit_and_prove`` runs both and hands the submitted request to an
optional callback in between, so the caller can persist the round id
and request bytes before the long poll starts. A retry after a proof
timeout calls ``wait_for_proof`` alone and never pays twice, and a
submission whose receipt never arrived is finished from its stored hash
with ``resume_attestation``.

The network (source id, service URLs) is bound at construction.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from fassets_bridge.attestation.data_availability import DataAvailabilityClient
from fassets_bridge.attestation.hub import FdcHubClient, SubmittedAttestation
from fassets_bridge.attestation.rounds import CachedRoundSchedule, compute_round
from fassets_bridge.attestation.verifier import VerifierClient
from fassets_bridge.evm.gateway import OnSent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttestationRequest:
    """A submitted, paid attestation request.

    Attributes:
        request_bytes: ABI-encoded request, 0x-prefixed hex.
        attestation_tx_hash: The FdcHub transaction.
        block_number: Block the submission was mined in.
        block_timestamp: That block's timestamp (unix seconds).
        voting_round_id: Round derived from block_timestamp.
    """

    request_bytes: str
    attestation_tx_hash: str
    block_number: int
    block_timestamp: int
    voting_round_id: int


@dataclass(frozen=True)
class AttestationResult:
    """Finalized proof plus the request it answers."""

    proof: dict[str, Any]
    attestation_tx_hash: str
    voting_round_id: int
    request_bytes: str


OnSubmitted = Callable[[AttestationRequest], Awaitable[None]]
# (attestation_tx_hash, request_bytes)
OnRequestSent = Callable[[str, str], Awaitable[None]]


class AttestationClient:
    """Drives the full FDC attestation protocol.

    Args:
        verifier: prepareRequest client.
        hub: FdcHub submission client.
        data_availability: Proof polling client.
        round_wait_multiplier: Round durations to wait before polling.
        sleep: Injectable sleep.
    """

    def __init__(
        self,
        verifier: VerifierClient,
        hub: FdcHubClient,
        data_availability: DataAvailabilityClient,
        *,
        round_wait_multiplier: int = 2,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._verifier = verifier
        self._hub = hub
        self._da = data_availability
        self._schedule = CachedRoundSchedule(hub.round_schedule)
        self._round_wait_multiplier = round_wait_multiplier
        self._sleep = sleep

    async def request_attestation(
        self,
        source_tx_hash: str,
        *,
        on_sent: OnRequestSent | None = None,
    ) -> AttestationRequest:
        """Prepare, pay for and submit a Payment attestation request.

        ``on_sent`` receives the hub tx hash and the request bytes as soon
        as the submission is broadcast, before it is mined.
        """
        request_bytes = await self._verifier.prepare_request(source_tx_hash)

        hub_sent = None if on_sent is None else _with_request_bytes(on_sent, request_bytes)
        submitted = await self._hub.submit(request_bytes, on_sent=hub_sent)
        request = await self._to_request(request_bytes, submitted)
        logger.info(
            f"Attestation for {source_tx_hash} submitted in round {request.voting_round_id} "
            f"(tx {submitted.tx_hash})"
        )
        return request

    async def resume_attestation(
        self,
        attestation_tx_hash: str,
        request_bytes: str,
    ) -> AttestationRequest | None:
        """Finish a submission sent earlier. None if it reverted.

        Raises:
            DestinationTransactionError: The submission is still not mined.
        """
        submitted = await self._hub.resume(attestation_tx_hash)
        if submitted is None:
            return None
        return await self._to_request(request_bytes, submitted)

    async def _to_request(
        self, request_bytes: str, submitted: SubmittedAttestation
    ) -> AttestationRequest:
        schedule = await self._schedule.get()
        return AttestationRequest(
            request_bytes=request_bytes,
            attestation_tx_hash=submitted.tx_hash,
            block_number=submitted.block_number,
            block_timestamp=submitted.block_timestamp,
            voting_round_id=compute_round(submitted.block_timestamp, schedule),
        )

    async def wait_for_proof(
        self,
        voting_round_id: int,
        request_bytes: str,
        *,
        wait_for_round: bool = True,
    ) -> dict[str, Any]:
        """Fetch the proof, optionally after waiting for round finalization.

        Raises:
            ProofTimeoutError: Not finalized within the polling ceiling.
            DataAvailabilityError: Fatal DA response.
        """
        if wait_for_round:
            schedule = await self._schedule.get()
            delay = schedule.duration_sec * self._round_wait_multiplier
            logger.info(f"Waiting {delay}s for round {voting_round_id} to finalize")
            await self._sleep(delay)
        return await self._da.get_proof(voting_round_id, request_bytes)

    async def submit_and_prove(
        self,
        source_tx_hash: str,
        *,
        on_submitted: OnSubmitted | None = None,
    ) -> AttestationResult:
        """Run the whole pipeline for ``source_tx_hash``.

        Raises:
            VerifierNotReadyError, AttestationSubmissionUnresolvedError,
            ProofTimeoutError, DataAvailabilityError, AttestationError.
        """
        request = await self.request_attestation(source_tx_hash)
        if on_submitted is not None:
            await on_submitted(request)
        proof = await self.wait_for_proof(request.voting_round_id, request.request_bytes)
        return AttestationResult(
            proof=proof,
            attestation_tx_hash=request.attestation_tx_hash,
            voting_round_id=request.voting_round_id,
            request_bytes=request.request_bytes,
        )


def _with_request_bytes(on_sent: OnRequestSent, request_bytes: str) -> OnSent:
    async def hub_sent(tx_hash: str) -> None:
        await on_sent(tx_hash, request_bytes)

    return hub_sent

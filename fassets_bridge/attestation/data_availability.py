"""
Data-availability layer client — polls for a finalized Merkle proof.

Proofs become available only after the voting round containing the
request is finalized. Until then the DA layer answers 404, or 400 with
a "not found" message; both mean "keep polling". Transport failures are
polled through as well. Any other HTTP error is fatal immediately.

Polling stops at a wall-clock ceiling (15 minutes by default) with a
ProofTimeoutError that carries everything needed to resume later.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import jsonschema  # type: ignore[import-untyped]

from fassets_bridge.attestation.http import JsonPoster
from fassets_bridge.attestation.schemas import PROOF_RESPONSE_SCHEMA, validate
from fassets_bridge.errors import DataAvailabilityError, ProofTimeoutError

logger = logging.getLogger(__name__)


def is_not_ready(status_code: int, body: str) -> bool:
    """True for the DA layer's "request not finalized yet" answers."""
    if status_code == 404:
        return True
    return status_code == 400 and "not found" in body.lower()


class DataAvailabilityClient:
    """Client for ``/api/v1/fdc/proof-by-request-round``.

    Args:
        base_url: DA layer base URL.
        poster: JSON poster carrying the API key.
        poll_interval: Seconds between polls.
        timeout: Polling ceiling in seconds.
        sleep: Injectable sleep.
        clock: Injectable monotonic clock.
    """

    def __init__(
        self,
        base_url: str,
        poster: JsonPoster,
        *,
        poll_interval: float = 10.0,
        timeout: float = 900.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/api/v1/fdc/proof-by-request-round"
        self._poster = poster
        self._poll_interval = poll_interval
        self._timeout = timeout
        self._sleep = sleep
        self._clock = clock

    async def get_proof(self, voting_round_id: int, request_bytes: str) -> dict[str, Any]:
        """Poll until the proof for ``(voting_round_id, request_bytes)`` exists.

        Returns:
            The DA response: ``{"response": {...}, "proof": [...]}``.

        Raises:
            DataAvailabilityError: Fatal HTTP status or malformed proof.
            ProofTimeoutError: Not finalized within the ceiling.
        """
        payload = {"votingRoundId": voting_round_id, "requestBytes": request_bytes}
        deadline = self._clock() + self._timeout
        last_status: int | None = None
        attempt = 0

        while True:
            attempt += 1
            try:
                response = await self._poster.post(self._url, payload)
            except httpx.TransportError as e:
                logger.warning(f"DA layer unreachable for round {voting_round_id}: {e}")
            else:
                last_status = response.status_code
                if response.is_success:
                    return self._parse(response, voting_round_id)
                if not is_not_ready(response.status_code, response.text):
                    raise DataAvailabilityError(
                        f"DA layer returned HTTP {response.status_code} "
                        f"for round {voting_round_id}",
                        status_code=response.status_code,
                        body=response.text,
                    )
                logger.debug(
                    f"Proof for round {voting_round_id} not ready "
                    f"({response.status_code}, attempt {attempt})"
                )

            if self._clock() >= deadline:
                logger.warning(
                    f"Proof for round {voting_round_id} not available after "
                    f"{self._timeout:.0f}s ({attempt} attempts)"
                )
                raise ProofTimeoutError(voting_round_id, last_status, request_bytes)
            await self._sleep(self._poll_interval)

    def _parse(self, response: httpx.Response, voting_round_id: int) -> dict[str, Any]:
        try:
            body = response.json()
            validate(body, PROOF_RESPONSE_SCHEMA)
        except (ValueError, jsonschema.ValidationError) as e:
            raise DataAvailabilityError(
                f"malformed proof for round {voting_round_id}: {e}",
                status_code=response.status_code,
                body=response.text,
            ) from e
        logger.info(f"Proof retrieved for round {voting_round_id}")
        result: dict[str, Any] = body
        return result

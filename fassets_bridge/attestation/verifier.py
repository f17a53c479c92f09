"""
FDC verifier client — turns a source transaction hash into request bytes.

The verifier indexes the source ledger with some lag, so a freshly
validated payment may come back as not yet known. Those answers are
retried at a fixed interval for a bounded number of attempts; only an
HTTP error or running out of attempts is raised.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from fassets_bridge.attestation.http import JsonPoster
from fassets_bridge.attestation.schemas import PREPARE_RESPONSE_SCHEMA, is_valid
from fassets_bridge.config import PAYMENT_ATTESTATION_TYPE
from fassets_bridge.errors import AttestationError, ErrorKind, VerifierNotReadyError

logger = logging.getLogger(__name__)

VALID_STATUS = "VALID"


def build_prepare_payload(source_id: str, tx_hash: str) -> dict[str, Any]:
    """prepareRequest body for an XRP Payment attestation."""
    transaction_id = tx_hash.lower() if tx_hash.startswith("0x") else f"0x{tx_hash.lower()}"
    return {
        "attestationType": PAYMENT_ATTESTATION_TYPE,
        "sourceId": source_id,
        "requestBody": {
            "transactionId": transaction_id,
            "inUtxo": "0",
            "utxo": "0",
        },
    }


class VerifierClient:
    """Client for ``/verifier/xrp/Payment/prepareRequest``.

    Args:
        base_url: Verifier base URL.
        source_id: FDC source id of the network (XRP / testXRP).
        poster: JSON poster carrying the API key.
        attempts: Maximum prepareRequest attempts.
        interval: Seconds between attempts.
        sleep: Injectable sleep (tests pass a no-op).
    """

    def __init__(
        self,
        base_url: str,
        source_id: str,
        poster: JsonPoster,
        *,
        attempts: int = 10,
        interval: float = 10.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/verifier/xrp/Payment/prepareRequest"
        self._source_id = source_id
        self._poster = poster
        self._attempts = attempts
        self._interval = interval
        self._sleep = sleep

    async def prepare_request(self, tx_hash: str) -> str:
        """Return the ABI-encoded request bytes for ``tx_hash``.

        Raises:
            AttestationError: The verifier answered with an HTTP error
                or could not be reached.
            VerifierNotReadyError: No VALID answer within the attempts.
        """
        payload = build_prepare_payload(self._source_id, tx_hash)
        last_status: str | None = None

        for attempt in range(1, self._attempts + 1):
            body = await self._post(payload)
            if is_valid(body, PREPARE_RESPONSE_SCHEMA):
                last_status = body["status"]
                encoded = body.get("abiEncodedRequest")
                if last_status == VALID_STATUS and encoded:
                    logger.info(f"Verifier prepared request for {tx_hash} (attempt {attempt})")
                    return str(encoded)
            else:
                last_status = "malformed"

            logger.debug(
                f"Verifier not ready for {tx_hash}: {last_status} "
                f"(attempt {attempt}/{self._attempts})"
            )
            if attempt < self._attempts:
                await self._sleep(self._interval)

        raise VerifierNotReadyError(
            f"verifier did not return a valid request for {tx_hash} "
            f"after {self._attempts} attempts (last status: {last_status})",
            details={"tx_hash": tx_hash, "last_status": last_status},
        )

    async def _post(self, payload: dict[str, Any]) -> Any:
        try:
            response = await self._poster.post(self._url, payload)
        except httpx.TransportError as e:
            raise AttestationError(
                f"verifier unreachable: {e}",
                kind=ErrorKind.NETWORK_UNAVAILABLE,
            ) from e

        if response.status_code >= 400:
            kind = (
                ErrorKind.NETWORK_UNAVAILABLE
                if response.status_code >= 500
                else ErrorKind.SOURCE_TX_INVALID
            )
            raise AttestationError(
                f"verifier returned HTTP {response.status_code}",
                kind=kind,
                details={"status_code": response.status_code, "body": response.text[:500]},
            )
        try:
            return response.json()
        except ValueError:
            return None

"""
XRPL ledger client — reads source-ledger payments via JSON-RPC ``tx``.

Uses an injectable transport (JsonRpcTransport) so the HTTP layer can be
swapped for test fakes without changing parsing logic.

No retry loops. No secrets. Expected conditions (not found, not yet
validated, server error) come back in the SourceTransaction result;
transport exceptions propagate to the caller.

Response parsing targets rippled JSON-RPC conventions:
    - Successful responses: {"result": {"status": "success", ...}}
    - Error responses: {"result": {"status": "error", "error": "...", ...}}
    - tx responses include: validated, ledger_index, meta, hash, date
    - ``date`` is seconds since the Ripple epoch (2000-01-01T00:00:00Z)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from fassets_bridge.amounts import RIPPLE_EPOCH_OFFSET
from fassets_bridge.errors import InvalidTimestampError
from fassets_bridge.xrpl.transport import HttpxTransport, JsonRpcTransport

# JSON-RPC request ID counter (simple, no thread-safety needed for async)
_REQUEST_ID = 0

# Oldest payment the bridge will attest.
MAX_PAYMENT_AGE = timedelta(days=365)


def _next_request_id() -> int:
    global _REQUEST_ID
    _REQUEST_ID += 1
    return _REQUEST_ID


@dataclass(frozen=True)
class SourceTransaction:
    """A source-ledger transaction as seen by rippled.

    Attributes:
        found: Whether the transaction was found at all.
        tx_hash: Transaction hash (uppercase hex, as rippled reports it).
        validated: Whether the transaction is in a validated ledger.
        engine_result: meta.TransactionResult (e.g. "tesSUCCESS").
        transaction_type: "Payment", "OfferCreate", ...
        account: Sending address.
        destination: Receiving address (payments only).
        delivered_raw: Drops actually delivered (meta.delivered_amount),
            None for non-XRP or partial-payment-less responses.
        close_time: Unix timestamp of the ledger close.
        memos: Decoded MemoData values, hex uppercase.
        error_code: Server error when the query itself failed.
        detail: Human-readable detail for diagnostics.
    """

    found: bool
    tx_hash: str | None = None
    validated: bool = False
    engine_result: str | None = None
    transaction_type: str | None = None
    account: str | None = None
    destination: str | None = None
    delivered_raw: int | None = None
    close_time: int | None = None
    memos: tuple[str, ...] = field(default_factory=tuple)
    error_code: str | None = None
    detail: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.found and self.validated and self.engine_result == "tesSUCCESS"

    @property
    def closed_at(self) -> datetime | None:
        if self.close_time is None:
            return None
        return datetime.fromtimestamp(self.close_time, tz=timezone.utc)


class XrplLedgerClient:
    """Read-only rippled JSON-RPC client.

    Args:
        url: The rippled JSON-RPC endpoint URL.
        transport: Injectable transport for HTTP POST. Defaults to
            HttpxTransport. Pass a FakeTransport for testing.
    """

    def __init__(self, url: str, transport: JsonRpcTransport | None = None) -> None:
        self._url = url
        self._transport = transport or HttpxTransport()

    @property
    def url(self) -> str:
        """The JSON-RPC endpoint URL."""
        return self._url

    async def get_transaction(self, tx_hash: str) -> SourceTransaction:
        """Fetch a transaction by hash via the ``tx`` method."""
        payload = {
            "method": "tx",
            "params": [{"transaction": tx_hash.removeprefix("0x").upper(), "binary": False}],
            "id": _next_request_id(),
        }
        response = await self._transport.post_json(self._url, payload)
        return _parse_tx_response(response)


def check_close_time(
    tx: SourceTransaction,
    now: datetime,
    max_age: timedelta = MAX_PAYMENT_AGE,
) -> datetime:
    """Sanity-check a payment's ledger close time.

    Returns:
        The close time as an aware datetime.

    Raises:
        InvalidTimestampError: Missing, in the future, or older than
            ``max_age``.
    """
    closed_at = tx.closed_at
    details = {"tx_hash": tx.tx_hash, "close_time": tx.close_time}
    if closed_at is None:
        raise InvalidTimestampError("source transaction has no close time", details=details)
    if closed_at > now:
        raise InvalidTimestampError(
            f"source transaction closes in the future ({closed_at.isoformat()})",
            details=details,
        )
    if now - closed_at > max_age:
        raise InvalidTimestampError(
            f"source transaction is older than {max_age.days} days ({closed_at.isoformat()})",
            details=details,
        )
    return closed_at


# =====================================================================
# Response parsing (pure functions, no I/O)
# =====================================================================


def _parse_drops(value: Any) -> int | None:
    """XRP amounts are drop strings; issued currencies are objects."""
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def _parse_memos(tx: dict[str, Any]) -> tuple[str, ...]:
    memos: list[str] = []
    for wrapper in tx.get("Memos") or []:
        memo = wrapper.get("Memo") if isinstance(wrapper, dict) else None
        if isinstance(memo, dict) and isinstance(memo.get("MemoData"), str):
            memos.append(memo["MemoData"].upper())
    return tuple(memos)


def _parse_tx_response(response: dict[str, Any]) -> SourceTransaction:
    """Parse a rippled tx JSON-RPC response into SourceTransaction.

    Handles:
        - Transaction found and validated
        - Transaction found but not yet validated
        - Transaction not found (txnNotFound error)
        - Server-level errors
        - API v1 (fields at top level) and v2 (fields under tx_json)
    """
    result = response.get("result", {})

    if result.get("status") == "error":
        error = result.get("error", "")
        if error == "txnNotFound":
            return SourceTransaction(found=False)
        return SourceTransaction(
            found=False,
            error_code="SERVER_ERROR",
            detail=result.get("error_message") or error,
        )

    tx = result.get("tx_json") if isinstance(result.get("tx_json"), dict) else result
    meta = result.get("meta") if isinstance(result.get("meta"), dict) else {}

    engine_result = meta.get("TransactionResult")
    delivered = _parse_drops(meta.get("delivered_amount"))
    if delivered is None and engine_result == "tesSUCCESS":
        delivered = _parse_drops(tx.get("Amount") or tx.get("DeliverMax"))

    ripple_date = result.get("date", tx.get("date"))
    close_time = int(ripple_date) + RIPPLE_EPOCH_OFFSET if ripple_date is not None else None

    return SourceTransaction(
        found=True,
        tx_hash=result.get("hash") or tx.get("hash"),
        validated=bool(result.get("validated", False)),
        engine_result=engine_result,
        transaction_type=tx.get("TransactionType"),
        account=tx.get("Account"),
        destination=tx.get("Destination"),
        delivered_raw=delivered,
        close_time=close_time,
        memos=_parse_memos(tx),
    )

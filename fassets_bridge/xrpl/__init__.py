"""XRP Ledger (source ledger) access over rippled JSON-RPC."""

from fassets_bridge.xrpl.client import SourceTransaction, XrplLedgerClient, check_close_time
from fassets_bridge.xrpl.transport import HttpxTransport, JsonRpcTransport

__all__ = [
    "HttpxTransport",
    "JsonRpcTransport",
    "SourceTransaction",
    "XrplLedgerClient",
    "check_close_time",
]

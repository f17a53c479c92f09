"""
Destination-chain gateway — the seam between bridge logic and web3.

The FDC hub client and the FAssets client depend on the EvmGateway
protocol, not on web3 directly, so tests can substitute a fake that
returns canned receipts and events.

Concrete implementations:
    - Web3Gateway (default, web3.py AsyncWeb3 over HTTP, signs with the
      operator key)
    - FakeGateway (tests)

Transactions are sent in two steps so callers can persist the hash
before waiting for the receipt: ``send`` returns as soon as the node
accepts the transaction, ``wait_for_receipt`` blocks until it is mined.
A hash persisted that way is finished later with ``mined_receipt``
instead of being sent again.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from web3 import AsyncWeb3
from web3.exceptions import TimeExhausted, TransactionNotFound, Web3RPCError
from web3.logs import DISCARD

from fassets_bridge.config import CONTRACT_REGISTRY_ADDRESS
from fassets_bridge.errors import (
    BridgeError,
    DestinationTransactionError,
    ErrorKind,
    TransactionAlreadyKnownError,
)
from fassets_bridge.evm.abis import CONTRACT_REGISTRY_ABI

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

OnSent = Callable[[str], Awaitable[None]]


@dataclass(frozen=True)
class TxReceipt:
    """A mined destination-chain transaction.

    Attributes:
        tx_hash: 0x-prefixed transaction hash.
        block_number: Block the transaction was mined in.
        status: 1 on success, 0 on revert.
        raw: Backend-specific receipt object, used for event decoding.
    """

    tx_hash: str
    block_number: int
    status: int
    raw: Any = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass(frozen=True)
class BlockTransaction:
    """Minimal view of a transaction inside a block."""

    tx_hash: str
    to: str | None
    input: str


@runtime_checkable
class EvmGateway(Protocol):
    """Async access to the destination chain."""

    @property
    def account_address(self) -> str:
        """Address of the operator account that signs transactions."""
        ...

    async def resolve_contract(self, name: str) -> str:
        """Look a contract address up in the Flare contract registry."""
        ...

    async def call(self, address: str, abi: list[dict[str, Any]], fn_name: str, *args: Any) -> Any:
        """Run a read-only contract call."""
        ...

    async def send(
        self,
        address: str,
        abi: list[dict[str, Any]],
        fn_name: str,
        *args: Any,
        value: int = 0,
    ) -> str:
        """Sign and broadcast a contract call. Returns the tx hash.

        Raises:
            TransactionAlreadyKnownError: The node already has this tx.
        """
        ...

    async def wait_for_receipt(self, tx_hash: str) -> TxReceipt:
        """Block until ``tx_hash`` is mined.

        Raises:
            DestinationTransactionError: Not mined in time, or reverted.
        """
        ...

    async def get_receipt(self, tx_hash: str) -> TxReceipt | None:
        """Receipt if mined, None otherwise."""
        ...

    async def block_number(self) -> int:
        ...

    async def block_timestamp(self, block_number: int) -> int:
        ...

    async def block_transactions(self, block_number: int) -> list[BlockTransaction]:
        ...

    def decode_events(
        self,
        address: str,
        abi: list[dict[str, Any]],
        event_name: str,
        receipt: TxReceipt,
    ) -> list[dict[str, Any]]:
        """Decode ``event_name`` logs emitted by ``address`` in a receipt."""
        ...


async def transact(
    gateway: EvmGateway,
    address: str,
    abi: list[dict[str, Any]],
    fn_name: str,
    *args: Any,
    value: int = 0,
    on_sent: OnSent | None = None,
) -> TxReceipt:
    """Send a transaction, hand its hash to ``on_sent``, then wait for the receipt."""
    tx_hash = await gateway.send(address, abi, fn_name, *args, value=value)
    if on_sent is not None:
        await on_sent(tx_hash)
    return await gateway.wait_for_receipt(tx_hash)


async def mined_receipt(gateway: EvmGateway, tx_hash: str) -> TxReceipt | None:
    """Receipt of a transaction sent earlier, or None if it reverted.

    Raises:
        DestinationTransactionError: Not mined yet (destination_tx_unconfirmed).
    """
    receipt = await gateway.get_receipt(tx_hash)
    if receipt is None:
        raise DestinationTransactionError(
            f"transaction {tx_hash} not mined yet",
            tx_hash=tx_hash,
            kind=ErrorKind.DESTINATION_TX_UNCONFIRMED,
        )
    if not receipt.succeeded:
        logger.warning(f"Transaction {tx_hash} reverted")
        return None
    return receipt


# =====================================================================
# web3.py implementation
# =====================================================================


def _is_already_known(exc: Exception) -> bool:
    """True if a node rejected a raw transaction as a duplicate.

    Geth-style nodes answer with JSON-RPC code -32000 and the message
    "already known" when the identical signed transaction is pooled.
    """
    response = getattr(exc, "rpc_response", None)
    message = str(exc)
    if isinstance(response, dict) and isinstance(response.get("error"), dict):
        message = str(response["error"].get("message", message))
    return "already known" in message.lower()


class Web3Gateway:
    """EvmGateway over web3.py's AsyncWeb3.

    Args:
        rpc_url: Destination chain JSON-RPC endpoint.
        private_key: Operator key used to sign transactions.
        registry_address: Flare contract registry.
        request_timeout: Per-request HTTP timeout in seconds.
        receipt_timeout: Seconds to wait for a transaction to be mined.
        w3: Pre-built AsyncWeb3 instance (overrides rpc_url).
    """

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        *,
        registry_address: str = CONTRACT_REGISTRY_ADDRESS,
        request_timeout: float = 30.0,
        receipt_timeout: float = 180.0,
        w3: AsyncWeb3 | None = None,
    ) -> None:
        self._w3 = w3 or AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})
        )
        self._account = self._w3.eth.account.from_key(private_key)
        self._registry_address = AsyncWeb3.to_checksum_address(registry_address)
        self._receipt_timeout = receipt_timeout
        self._addresses: dict[str, str] = {}
        self._send_lock = asyncio.Lock()

    @property
    def account_address(self) -> str:
        return str(self._account.address)

    def _contract(self, address: str, abi: list[dict[str, Any]]) -> Any:
        return self._w3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=abi)

    async def resolve_contract(self, name: str) -> str:
        if name not in self._addresses:
            registry = self._contract(self._registry_address, CONTRACT_REGISTRY_ABI)
            address = await registry.functions.getContractAddressByName(name).call()
            if int(address, 16) == 0:
                raise BridgeError(
                    f"contract {name} is not registered",
                    kind=ErrorKind.INVALID_RECORD,
                    details={"contract": name},
                )
            self._addresses[name] = str(address)
            logger.info(f"Resolved {name} at {address}")
        return self._addresses[name]

    async def call(self, address: str, abi: list[dict[str, Any]], fn_name: str, *args: Any) -> Any:
        contract = self._contract(address, abi)
        return await contract.functions[fn_name](*args).call()

    async def send(
        self,
        address: str,
        abi: list[dict[str, Any]],
        fn_name: str,
        *args: Any,
        value: int = 0,
    ) -> str:
        contract = self._contract(address, abi)
        # Nonce allocation and broadcast must not interleave.
        async with self._send_lock:
            tx = await contract.functions[fn_name](*args).build_transaction(
                {
                    "from": self._account.address,
                    "value": value,
                    "nonce": await self._w3.eth.get_transaction_count(
                        self._account.address, "pending"
                    ),
                }
            )
            signed = self._account.sign_transaction(tx)
            try:
                tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
            except (Web3RPCError, ValueError) as e:
                if _is_already_known(e):
                    raise TransactionAlreadyKnownError(
                        f"{fn_name} transaction already known to the node",
                        details={"function": fn_name},
                    ) from e
                raise
        hex_hash = AsyncWeb3.to_hex(tx_hash)
        logger.info(f"Sent {fn_name} to {address}: {hex_hash}")
        return hex_hash

    async def wait_for_receipt(self, tx_hash: str) -> TxReceipt:
        try:
            raw = await self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self._receipt_timeout
            )
        except TimeExhausted as e:
            raise DestinationTransactionError(
                f"transaction {tx_hash} not mined within {self._receipt_timeout}s",
                tx_hash=tx_hash,
                kind=ErrorKind.DESTINATION_TX_UNCONFIRMED,
            ) from e
        receipt = _to_receipt(raw)
        if not receipt.succeeded:
            raise DestinationTransactionError(
                f"transaction {tx_hash} reverted",
                tx_hash=tx_hash,
            )
        return receipt

    async def get_receipt(self, tx_hash: str) -> TxReceipt | None:
        try:
            raw = await self._w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        return _to_receipt(raw)

    async def block_number(self) -> int:
        return int(await self._w3.eth.block_number)

    async def block_timestamp(self, block_number: int) -> int:
        block = await self._w3.eth.get_block(block_number)
        return int(block["timestamp"])

    async def block_transactions(self, block_number: int) -> list[BlockTransaction]:
        block = await self._w3.eth.get_block(block_number, full_transactions=True)
        return [
            BlockTransaction(
                tx_hash=AsyncWeb3.to_hex(tx["hash"]),
                to=tx.get("to"),
                input=AsyncWeb3.to_hex(tx["input"]),
            )
            for tx in block["transactions"]
        ]

    def decode_events(
        self,
        address: str,
        abi: list[dict[str, Any]],
        event_name: str,
        receipt: TxReceipt,
    ) -> list[dict[str, Any]]:
        contract = self._contract(address, abi)
        events = contract.events[event_name]().process_receipt(receipt.raw, errors=DISCARD)
        wanted = address.lower()
        return [dict(ev["args"]) for ev in events if str(ev["address"]).lower() == wanted]


def _to_receipt(raw: Any) -> TxReceipt:
    return TxReceipt(
        tx_hash=AsyncWeb3.to_hex(raw["transactionHash"]),
        block_number=int(raw["blockNumber"]),
        status=int(raw["status"]),
        raw=raw,
    )

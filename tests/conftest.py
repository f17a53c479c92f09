"""
Shared fakes for the state machine and reconciliation tests.

FakeSettlement stands in for the chain: every call is recorded, proofs
are served from a queue (an exception in the queue is raised instead),
and each knob can be flipped per test. The ``*_receipt_error`` knobs
raise after the tx hash was handed to ``on_sent``, as a receipt timeout
does; ``reverted`` makes every ``resume_*`` report a reverted tx.
FakeShareAccounting fails a set number of times before succeeding.
FakeGateway can leave the first ``unconfirmed`` receipt waits timing
out while the sent transactions are still mined.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import pytest

from fassets_bridge.amounts import from_raw, to_raw
from fassets_bridge.attestation.client import AttestationRequest
from fassets_bridge.bridge import BridgeStateMachine
from fassets_bridge.collaborators import ShareMint, SubscriptionRegistry
from fassets_bridge.config import PAYMENT_ATTESTATION_TYPE, SOURCE_ID_TEST_XRP
from fassets_bridge.errors import (
    DestinationTransactionError,
    ErrorKind,
    ShareAccountingError,
    TransactionAlreadyKnownError,
)
from fassets_bridge.evm.fassets import CollateralReservation, RedemptionTicket
from fassets_bridge.evm.gateway import BlockTransaction, TxReceipt
from fassets_bridge.locks import KeyedLock
from fassets_bridge.records import BridgeRecord, RedemptionRecord
from fassets_bridge.redemption import RedemptionStateMachine
from fassets_bridge.store import BridgeStore
from fassets_bridge.xrpl.client import SourceTransaction

START = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

WALLET = "0x1111111111111111111111111111111111111111"
VAULT = "shxrp"
AGENT_XRPL = "rAgentXRPL1111111111111111111111"
USER_XRPL = "rUserXRPL22222222222222222222222"
PAYMENT_REFERENCE = "0x46425052664100010000000000000000000000000000000000000000000000aa"
REQUEST_BYTES = "0x" + "ab" * 40
RESERVATION_TX = "0x" + "11" * 32
ATTESTATION_TX = "0x" + "22" * 32
REDEEM_TX = "0x" + "44" * 32
REDEMPTION_REFERENCE = "0x46425052664100020000000000000000000000000000000000000000000000bb"
MINT_TX = "0x" + "33" * 32
CONFIRM_TX = "0x" + "55" * 32
POSITION = "pos-1"


def make_proof(voting_round_id: int = 12345) -> dict[str, Any]:
    return {
        "proof": ["0x" + "ab" * 32, "0x" + "cd" * 32],
        "response": {
            "attestationType": PAYMENT_ATTESTATION_TYPE,
            "sourceId": SOURCE_ID_TEST_XRP,
            "votingRound": voting_round_id,
            "lowestUsedTimestamp": 1700000000,
            "requestBody": {"transactionId": "0x" + "ee" * 32, "inUtxo": "0", "utxo": "0"},
            "responseBody": {"blockNumber": "100", "receivedAmount": "100000000"},
        },
    }


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeSettlement:
    """Scriptable SettlementBackend."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.value_raw = 99_750_000
        self.fee_raw = 250_000
        self.payment_reference = PAYMENT_REFERENCE
        self.voting_round_id = 12345
        self.proofs: list[dict[str, Any] | Exception] = []
        self.minted: Decimal | None = None
        self.fxrp_received: Decimal | None = None
        self.reserve_error: Exception | None = None
        self.attestation_error: Exception | None = None
        self.reserve_receipt_error: Exception | None = None
        self.attestation_receipt_error: Exception | None = None
        self.redeem_receipt_error: Exception | None = None
        self.reverted = False
        self.mint_error: Exception | None = None
        self.confirm_error: Exception | None = None
        self.source_tx: SourceTransaction | None = None
        self.destination_status: bool | None = True
        self.calls: list[str] = []
        self.wait_calls: list[tuple[int, str, bool]] = []

    def count(self, name: str) -> int:
        return self.calls.count(name)

    def _reservation(self) -> CollateralReservation:
        return CollateralReservation(
            reservation_id=4242,
            reservation_tx_hash=RESERVATION_TX,
            agent_vault="0x2222222222222222222222222222222222222222",
            agent_source_address=AGENT_XRPL,
            fee_bips=25,
            value_raw=self.value_raw,
            fee_raw=self.fee_raw,
            payment_reference=self.payment_reference,
            last_underlying_block=9_000_000,
            last_underlying_timestamp=int(self.clock().timestamp()) + 3600,
        )

    async def reserve_collateral(self, record: BridgeRecord, on_sent: Any) -> CollateralReservation:
        self.calls.append("reserve_collateral")
        if self.reserve_error is not None:
            raise self.reserve_error
        await on_sent(RESERVATION_TX)
        if self.reserve_receipt_error is not None:
            raise self.reserve_receipt_error
        return self._reservation()

    async def resume_reservation(
        self, record: BridgeRecord, tx_hash: str
    ) -> CollateralReservation | None:
        self.calls.append("resume_reservation")
        return None if self.reverted else self._reservation()

    async def fetch_source_transaction(self, tx_hash: str) -> SourceTransaction:
        self.calls.append("fetch_source_transaction")
        if self.source_tx is not None:
            return self.source_tx
        return SourceTransaction(
            found=True,
            tx_hash=tx_hash,
            validated=True,
            engine_result="tesSUCCESS",
            transaction_type="Payment",
            close_time=int(self.clock().timestamp()) - 10,
        )

    def _attestation(self, request_bytes: str = REQUEST_BYTES) -> AttestationRequest:
        return AttestationRequest(
            request_bytes=request_bytes,
            attestation_tx_hash=ATTESTATION_TX,
            block_number=100,
            block_timestamp=int(self.clock().timestamp()),
            voting_round_id=self.voting_round_id,
        )

    async def request_attestation(self, source_tx_hash: str, on_sent: Any) -> AttestationRequest:
        self.calls.append("request_attestation")
        if self.attestation_error is not None:
            raise self.attestation_error
        await on_sent(ATTESTATION_TX, REQUEST_BYTES)
        if self.attestation_receipt_error is not None:
            raise self.attestation_receipt_error
        return self._attestation()

    async def resume_attestation(
        self, attestation_tx_hash: str, request_bytes: str
    ) -> AttestationRequest | None:
        self.calls.append("resume_attestation")
        return None if self.reverted else self._attestation(request_bytes)

    async def wait_for_proof(
        self,
        voting_round_id: int,
        request_bytes: str,
        *,
        wait_for_round: bool = True,
    ) -> dict[str, Any]:
        self.calls.append("wait_for_proof")
        self.wait_calls.append((voting_round_id, request_bytes, wait_for_round))
        if self.proofs:
            item = self.proofs.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return make_proof(voting_round_id)

    async def execute_minting(self, record: BridgeRecord, proof: dict[str, Any], on_sent: Any) -> str:
        self.calls.append("execute_minting")
        await on_sent(MINT_TX)
        if self.mint_error is not None:
            raise self.mint_error
        return MINT_TX

    async def destination_tx_succeeded(self, tx_hash: str) -> bool | None:
        self.calls.append("destination_tx_succeeded")
        return self.destination_status

    async def minted_amount(self, record: BridgeRecord, tx_hash: str) -> Decimal:
        self.calls.append("minted_amount")
        if self.minted is not None:
            return self.minted
        return from_raw(self.value_raw)

    async def received_amount(self, record: RedemptionRecord, tx_hash: str) -> Decimal:
        self.calls.append("received_amount")
        if self.fxrp_received is not None:
            return self.fxrp_received
        return record.share_amount

    def _ticket(self, record: RedemptionRecord, value_raw: int) -> RedemptionTicket:
        return RedemptionTicket(
            request_id=777,
            tx_hash=REDEEM_TX,
            agent_vault="0x2222222222222222222222222222222222222222",
            payment_address=record.user_source_address,
            value_raw=value_raw,
            fee_raw=value_raw * 25 // 10_000,
            agent_source_address=AGENT_XRPL,
            payment_reference=REDEMPTION_REFERENCE,
        )

    async def request_redemption(
        self, record: RedemptionRecord, fxrp_amount: Decimal, on_sent: Any
    ) -> RedemptionTicket:
        self.calls.append("request_redemption")
        await on_sent(REDEEM_TX)
        if self.redeem_receipt_error is not None:
            raise self.redeem_receipt_error
        return self._ticket(record, to_raw(fxrp_amount))

    async def resume_redemption(
        self, record: RedemptionRecord, tx_hash: str
    ) -> RedemptionTicket | None:
        self.calls.append("resume_redemption")
        if self.reverted:
            return None
        assert record.fxrp_redeemed is not None
        return self._ticket(record, to_raw(record.fxrp_redeemed))

    async def confirm_redemption_payment(
        self, record: RedemptionRecord, proof: dict[str, Any], on_sent: Any
    ) -> str:
        self.calls.append("confirm_redemption_payment")
        await on_sent(CONFIRM_TX)
        if self.confirm_error is not None:
            raise self.confirm_error
        return CONFIRM_TX


class FakeShareAccounting:
    """ShareAccounting that fails ``failures`` times, then succeeds."""

    def __init__(self) -> None:
        self.failures = 0
        self.mints: list[tuple[str, str, Decimal]] = []
        self.redemptions: list[tuple[str, str, Decimal]] = []

    async def mint_shares(self, vault_id: str, user_address: str, amount: Decimal) -> ShareMint:
        if self.failures > 0:
            self.failures -= 1
            raise ShareAccountingError("vault paused")
        self.mints.append((vault_id, user_address, amount))
        return ShareMint(tx_hash=f"0xmint{len(self.mints)}", position_id=POSITION)

    async def redeem_shares(self, vault_id: str, user_address: str, share_amount: Decimal) -> str:
        self.redemptions.append((vault_id, user_address, share_amount))
        return "0x" + "66" * 32


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> Iterator[BridgeStore]:
    s = BridgeStore(":memory:", now_fn=clock)
    yield s
    s.close()


@pytest.fixture
def settlement(clock: FakeClock) -> FakeSettlement:
    return FakeSettlement(clock)


@pytest.fixture
def shares() -> FakeShareAccounting:
    return FakeShareAccounting()


@pytest.fixture
def registry() -> SubscriptionRegistry:
    r = SubscriptionRegistry()
    r.start()
    return r


@pytest.fixture
def locks() -> KeyedLock:
    return KeyedLock()


@pytest.fixture
def bridges(
    store: BridgeStore,
    settlement: FakeSettlement,
    shares: FakeShareAccounting,
    registry: SubscriptionRegistry,
    locks: KeyedLock,
    clock: FakeClock,
) -> BridgeStateMachine:
    return BridgeStateMachine(
        store,
        settlement,
        shares,
        registry,
        network="coston2",
        payment_window=1800,
        locks=locks,
        now_fn=clock,
    )


@pytest.fixture
def redemptions(
    store: BridgeStore,
    settlement: FakeSettlement,
    shares: FakeShareAccounting,
    registry: SubscriptionRegistry,
    locks: KeyedLock,
    clock: FakeClock,
) -> RedemptionStateMachine:
    return RedemptionStateMachine(
        store,
        settlement,
        shares,
        registry,
        retry_backoff_base=60,
        locks=locks,
        now_fn=clock,
    )


class FakeGateway:
    """EvmGateway with canned calls, receipts, blocks and events."""

    def __init__(self) -> None:
        self.account_address = "0x9999999999999999999999999999999999999999"
        self.contracts: dict[str, str] = {
            "FdcHub": "0x00000000000000000000000000000000000000F1",
            "FdcRequestFeeConfigurations": "0x00000000000000000000000000000000000000F2",
            "FlareSystemsManager": "0x00000000000000000000000000000000000000F3",
            "AssetManagerFXRP": "0x00000000000000000000000000000000000000A1",
        }
        self.call_results: dict[str, Any] = {}
        self.events: dict[str, list[dict[str, Any]]] = {}
        self.blocks: dict[int, list[BlockTransaction]] = {}
        self.receipts: dict[str, TxReceipt] = {}
        self.latest_block = 1000
        self.already_known = False
        self.unconfirmed = 0
        self.sent: list[tuple[str, str, tuple[Any, ...], int]] = []
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    async def resolve_contract(self, name: str) -> str:
        return self.contracts[name]

    async def call(self, address: str, abi: list[dict[str, Any]], fn_name: str, *args: Any) -> Any:
        self.calls.append((fn_name, args))
        return self.call_results[fn_name]

    async def send(
        self,
        address: str,
        abi: list[dict[str, Any]],
        fn_name: str,
        *args: Any,
        value: int = 0,
    ) -> str:
        if self.already_known:
            raise TransactionAlreadyKnownError("already known")
        self.sent.append((address, fn_name, args, value))
        return f"0x{len(self.sent):064x}"

    def _sent_hashes(self) -> set[str]:
        return {f"0x{n:064x}" for n in range(1, len(self.sent) + 1)}

    async def wait_for_receipt(self, tx_hash: str) -> TxReceipt:
        if self.unconfirmed > 0:
            self.unconfirmed -= 1
            raise DestinationTransactionError(
                f"transaction {tx_hash} not mined in time",
                tx_hash=tx_hash,
                kind=ErrorKind.DESTINATION_TX_UNCONFIRMED,
            )
        return self.receipts.get(tx_hash, TxReceipt(tx_hash=tx_hash, block_number=990, status=1))

    async def get_receipt(self, tx_hash: str) -> TxReceipt | None:
        if tx_hash in self.receipts:
            return self.receipts[tx_hash]
        if tx_hash in self._sent_hashes():
            return TxReceipt(tx_hash=tx_hash, block_number=990, status=1)
        return None

    async def block_number(self) -> int:
        return self.latest_block

    async def block_timestamp(self, block_number: int) -> int:
        return 1_700_000_000 + block_number

    async def block_transactions(self, block_number: int) -> list[BlockTransaction]:
        return self.blocks.get(block_number, [])

    def decode_events(
        self,
        address: str,
        abi: list[dict[str, Any]],
        event_name: str,
        receipt: TxReceipt,
    ) -> list[dict[str, Any]]:
        return self.events.get(event_name, [])

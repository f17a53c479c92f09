"""
Tests for the subscription registry, share accounting simulator and
per-record locks.

Test plan:
- match: agent address → bridge event, redeemer → redemption event,
  unknown address → None, stopped registry → None
- several bridges on one agent: the memo picks the bridge, a payment
  without a known memo or short of the reserved total matches nothing,
  removing one bridge leaves the others watched
- payouts: only from the agent and for at least the expected drops;
  the reference picks between redemptions of one user
- remove/unsubscribe stop matching
- PaymentDetected requires exactly one record id
- SimulatedShareAccounting: one position per (vault, user), case
  insensitive on the user address
- KeyedLock serialises one key, leaves other keys free, and empties
  its table when released
"""

import asyncio
from decimal import Decimal

import pytest

from fassets_bridge.collaborators import (
    PaymentDetected,
    PaymentDetector,
    ShareAccounting,
    SimulatedShareAccounting,
    SubscriptionRegistry,
    normalize_reference,
)
from fassets_bridge.locks import KeyedLock


REF_A = "0x" + "aa" * 32
REF_B = "0x" + "bb" * 32
MEMO_A = "AA" * 32
MEMO_B = "BB" * 32


class TestRegistry:
    def test_matches_agent_and_redeemer(self, registry: SubscriptionRegistry) -> None:
        registry.add_agent_address("rAgent", "b-1", REF_A, 100)
        registry.subscribe_user_for_redemption(
            "rUser", "r-1", agent_address="rAgent", amount_raw=40
        )

        bridge_event = registry.match("T1", "rUser", "rAgent", 100, MEMO_A)
        redemption_event = registry.match("T2", "rAgent", "rUser", 40)

        assert bridge_event is not None and bridge_event.bridge_id == "b-1"
        assert bridge_event.redemption_id is None
        assert redemption_event is not None and redemption_event.redemption_id == "r-1"
        assert redemption_event.amount_raw == 40

    def test_unknown_address(self, registry: SubscriptionRegistry) -> None:
        assert registry.match("T1", "rUser", "rNobody", 1) is None

    def test_stopped_registry_ignores_payments(self) -> None:
        registry = SubscriptionRegistry()
        registry.add_agent_address("rAgent", "b-1", REF_A, 1)
        assert not registry.running
        assert registry.match("T1", "rUser", "rAgent", 1, MEMO_A) is None

        registry.start()
        assert registry.match("T1", "rUser", "rAgent", 1, MEMO_A) is not None
        registry.stop()
        assert registry.match("T1", "rUser", "rAgent", 1, MEMO_A) is None

    def test_unsubscribe(self, registry: SubscriptionRegistry) -> None:
        registry.add_agent_address("rAgent", "b-1", REF_A, 100)
        registry.subscribe_user_for_redemption("rUser", "r-1")

        registry.remove_agent_address("rAgent", "b-1")
        registry.unsubscribe_user_address("rUser", "r-1")
        registry.remove_agent_address("rNeverWatched", "b-9")

        assert registry.watched_addresses() == set()

    def test_conforms_to_detector(self, registry: SubscriptionRegistry) -> None:
        assert isinstance(registry, PaymentDetector)


# ---------------------------------------------------------------------------
# Several records on one address
# ---------------------------------------------------------------------------


class TestSharedAgentAddress:
    def test_memo_selects_the_bridge(self, registry: SubscriptionRegistry) -> None:
        registry.add_agent_address("rAgent", "b-A", REF_A, 100)
        registry.add_agent_address("rAgent", "b-B", REF_B, 200)

        event_a = registry.match("T1", "rUser", "rAgent", 100, MEMO_A)
        event_b = registry.match("T2", "rUser", "rAgent", 200, MEMO_B.lower())

        assert event_a is not None and event_a.bridge_id == "b-A"
        assert event_b is not None and event_b.bridge_id == "b-B"

    def test_memo_is_required(self, registry: SubscriptionRegistry) -> None:
        registry.add_agent_address("rAgent", "b-A", REF_A, 100)

        assert registry.match("T1", "rUser", "rAgent", 100) is None
        assert registry.match("T1", "rUser", "rAgent", 100, "CC" * 32) is None

    def test_short_payment_not_matched(self, registry: SubscriptionRegistry) -> None:
        registry.add_agent_address("rAgent", "b-A", REF_A, 100)

        assert registry.match("T1", "rUser", "rAgent", 99, MEMO_A) is None
        assert registry.match("T2", "rUser", "rAgent", 100, MEMO_A) is not None

    def test_removing_one_bridge_keeps_the_other(self, registry: SubscriptionRegistry) -> None:
        registry.add_agent_address("rAgent", "b-A", REF_A, 100)
        registry.add_agent_address("rAgent", "b-B", REF_B, 200)

        registry.remove_agent_address("rAgent", "b-A")

        assert "rAgent" in registry.watched_addresses()
        assert registry.match("T1", "rUser", "rAgent", 100, MEMO_A) is None
        event = registry.match("T2", "rUser", "rAgent", 200, MEMO_B)
        assert event is not None and event.bridge_id == "b-B"

        registry.remove_agent_address("rAgent", "b-B")
        assert registry.watched_addresses() == set()


class TestRedemptionPayouts:
    def test_wrong_sender_ignored(self, registry: SubscriptionRegistry) -> None:
        registry.subscribe_user_for_redemption(
            "rUser", "r-1", agent_address="rAgent", amount_raw=40
        )

        assert registry.match("T1", "rStranger", "rUser", 40) is None
        assert "rUser" in registry.watched_addresses()

    def test_short_payout_ignored(self, registry: SubscriptionRegistry) -> None:
        registry.subscribe_user_for_redemption(
            "rUser", "r-1", agent_address="rAgent", amount_raw=40
        )

        assert registry.match("T1", "rAgent", "rUser", 39) is None
        assert registry.match("T2", "rAgent", "rUser", 41) is not None

    def test_reference_picks_between_redemptions(self, registry: SubscriptionRegistry) -> None:
        registry.subscribe_user_for_redemption(
            "rUser", "r-1", agent_address="rAgent", amount_raw=40, payment_reference=REF_A
        )
        registry.subscribe_user_for_redemption(
            "rUser", "r-2", agent_address="rAgent", amount_raw=40, payment_reference=REF_B
        )

        event = registry.match("T1", "rAgent", "rUser", 40, MEMO_B)
        assert event is not None and event.redemption_id == "r-2"

        registry.unsubscribe_user_address("rUser", "r-2")
        event = registry.match("T2", "rAgent", "rUser", 40, MEMO_A)
        assert event is not None and event.redemption_id == "r-1"

    def test_normalize_reference(self) -> None:
        assert normalize_reference("0xabCD") == "ABCD"
        assert normalize_reference("ABCD") == "ABCD"
        assert normalize_reference(None) is None


class TestPaymentDetected:
    @pytest.mark.parametrize(
        "ids", [{}, {"bridge_id": "b-1", "redemption_id": "r-1"}]
    )
    def test_exactly_one_id(self, ids: dict) -> None:
        with pytest.raises(ValueError):
            PaymentDetected(tx_hash="T", amount_raw=1, from_address="a", to_address="b", **ids)


class TestSimulatedShareAccounting:
    @pytest.mark.asyncio
    async def test_one_position_per_vault_and_user(self) -> None:
        shares = SimulatedShareAccounting()
        first = await shares.mint_shares("shxrp", "0xAbC", Decimal("1"))
        second = await shares.mint_shares("shxrp", "0xabc", Decimal("2"))
        other = await shares.mint_shares("other", "0xabc", Decimal("3"))

        assert first.position_id == second.position_id
        assert first.position_id.startswith("pos-")
        assert other.position_id != first.position_id
        assert first.tx_hash != second.tx_hash
        assert isinstance(shares, ShareAccounting)

    @pytest.mark.asyncio
    async def test_redeem_records_call(self) -> None:
        shares = SimulatedShareAccounting()
        tx_hash = await shares.redeem_shares("shxrp", "0xabc", Decimal("5"))
        assert tx_hash.startswith("0x")
        assert shares.redemptions == [("shxrp", "0xabc", Decimal("5"))]


class TestKeyedLock:
    @pytest.mark.asyncio
    async def test_serialises_same_key(self) -> None:
        locks = KeyedLock()
        order: list[str] = []

        async def worker(name: str) -> None:
            async with locks.hold("b-1"):
                order.append(f"{name}:in")
                await asyncio.sleep(0)
                order.append(f"{name}:out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order == ["a:in", "a:out", "b:in", "b:out"]

    @pytest.mark.asyncio
    async def test_other_keys_free(self) -> None:
        locks = KeyedLock()
        async with locks.hold("b-1"):
            assert locks.locked("b-1")
            assert not locks.locked("b-2")
            async with locks.hold("b-2"):
                assert locks.locked("b-2")

    @pytest.mark.asyncio
    async def test_table_emptied(self) -> None:
        locks = KeyedLock()
        async with locks.hold("b-1"):
            pass
        assert not locks.locked("b-1")
        assert locks._locks == {}

"""
Tests for the runtime wiring and the command line.

Test plan:
- Simulated runtime: open_bridge returns a payment instruction; the
  matching ledger payment runs the slow path in the background and the
  bridge ends vault_minted with 99.750000 FXRP
- Payments to unwatched addresses are ignored
- start() restores agent and redeemer subscriptions from the store
- Redemption payouts from the assigned agent are dispatched to the
  redemption state machine; payouts from anyone else are ignored
- CLI: demo succeeds, status of an unknown id fails
"""

from dataclasses import replace
from decimal import Decimal
from pathlib import Path

import pytest

from fassets_bridge.__main__ import main
from fassets_bridge.collaborators import PaymentDetected
from fassets_bridge.config import BridgeSettings
from fassets_bridge.records import BridgeStatus, RedemptionStatus
from fassets_bridge.runtime import BridgeRuntime
from fassets_bridge.settlement import SimulatedSettlementBackend

from conftest import USER_XRPL, VAULT, WALLET, FakeClock

TX = "D" * 64


def _settings(db_path: str = ":memory:") -> BridgeSettings:
    return replace(BridgeSettings.from_env({}), db_path=db_path)


def _runtime(db_path: str = ":memory:") -> BridgeRuntime:
    return BridgeRuntime(_settings(db_path), now_fn=FakeClock())


class TestRuntime:
    def test_simulated_by_default(self) -> None:
        runtime = _runtime()
        assert isinstance(runtime.settlement, SimulatedSettlementBackend)
        runtime.store.close()

    @pytest.mark.asyncio
    async def test_payment_drives_bridge(self) -> None:
        runtime = _runtime()
        await runtime.start(reconcile=False)
        try:
            instruction = await runtime.open_bridge(WALLET, VAULT, "100")
            assert instruction.amount_raw == 100_000_000

            task = runtime.on_ledger_payment(
                TX, "rUser", instruction.destination, instruction.amount_raw, instruction.memo
            )
            assert task is not None
            await runtime.drain()

            record = runtime.store.get_bridge(instruction.bridge_id)
            assert record.status is BridgeStatus.VAULT_MINTED
            assert record.to_row()["destination_amount_received"] == "99.750000"
            assert record.source_tx_hash == TX
        finally:
            await runtime.stop()

    @pytest.mark.asyncio
    async def test_unwatched_payment_ignored(self) -> None:
        runtime = _runtime()
        await runtime.start(reconcile=False)
        try:
            assert runtime.on_ledger_payment(TX, "rUser", "rNobody", 1) is None
        finally:
            await runtime.stop()

    @pytest.mark.asyncio
    async def test_start_restores_subscriptions(self, tmp_path: Path) -> None:
        db_path = str(tmp_path / "bridge.db")
        first = _runtime(db_path)
        instruction = await first.open_bridge(WALLET, VAULT, "100")
        await first.stop()

        second = _runtime(db_path)
        await second.start(reconcile=False)
        try:
            assert instruction.destination in second.registry.watched_addresses()
        finally:
            await second.stop()

    async def _requested(self, runtime: BridgeRuntime) -> tuple[str, str]:
        instruction = await runtime.open_bridge(WALLET, VAULT, "100")
        runtime.on_ledger_payment(
            TX, "rUser", instruction.destination, instruction.amount_raw, instruction.memo
        )
        await runtime.drain()
        bridge = runtime.store.get_bridge(instruction.bridge_id)
        assert bridge.position_id is not None

        redemption = runtime.redemptions.create_redemption(
            WALLET, VAULT, bridge.position_id, "40", USER_XRPL
        )
        await runtime.redemptions.request_redemption(redemption.id)
        assert USER_XRPL in runtime.registry.watched_addresses()
        return redemption.id, bridge.position_id

    @pytest.mark.asyncio
    async def test_redemption_payout_dispatched(self) -> None:
        runtime = _runtime()
        await runtime.start(reconcile=False)
        try:
            redemption_id, position_id = await self._requested(runtime)
            record = runtime.store.get_redemption(redemption_id)
            assert record.agent_source_address is not None
            assert record.expected_payout_raw == 39_900_000

            task = runtime.on_ledger_payment(
                "E" * 64,
                record.agent_source_address,
                USER_XRPL,
                record.expected_payout_raw,
                record.payment_reference,
            )
            assert task is not None
            await runtime.drain()

            done = runtime.store.get_redemption(redemption_id)
            assert done.status is RedemptionStatus.COMPLETED
            position = runtime.store.get_position(position_id)
            assert position is not None
            assert Decimal(position["amount"]) == Decimal("59.75")
            assert USER_XRPL not in runtime.registry.watched_addresses()
        finally:
            await runtime.stop()

    @pytest.mark.asyncio
    async def test_stray_payout_ignored(self) -> None:
        runtime = _runtime()
        await runtime.start(reconcile=False)
        try:
            redemption_id, _ = await self._requested(runtime)

            assert runtime.on_ledger_payment("E" * 64, "rStranger", USER_XRPL, 39_900_000) is None

            runtime.dispatch_payment(
                PaymentDetected(
                    tx_hash="F" * 64,
                    amount_raw=39_900_000,
                    from_address="rStranger",
                    to_address=USER_XRPL,
                    redemption_id=redemption_id,
                )
            )
            await runtime.drain()

            record = runtime.store.get_redemption(redemption_id)
            assert record.status is RedemptionStatus.XRPL_PAYOUT
            assert record.source_payout_tx_hash is None
            assert USER_XRPL in runtime.registry.watched_addresses()
        finally:
            await runtime.stop()


class TestCli:
    def test_demo(self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
        monkeypatch.delenv("BRIDGE_SETTLEMENT", raising=False)
        monkeypatch.setenv("BRIDGE_DB_PATH", ":memory:")

        assert main(["demo", "--amount", "100"]) == 0
        assert '"status": "vault_minted"' in capsys.readouterr().out

    def test_status_unknown_id(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.delenv("BRIDGE_SETTLEMENT", raising=False)
        monkeypatch.setenv("BRIDGE_DB_PATH", str(tmp_path / "bridge.db"))

        assert main(["status", "no-such-bridge"]) == 1

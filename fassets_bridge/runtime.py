"""
Composition root — builds and owns every long-lived object.

BridgeRuntime wires settings into a store, a settlement backend (chain
or simulated, chosen once), the subscription registry, both state
machines and the reconciliation engine, and owns their lifecycles.

Slow paths (attestation and minting after a payment) run as background
tasks tracked by the runtime, so a caller reacting to a payment event
never waits on a proof poll.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from datetime import datetime
from decimal import Decimal
from typing import Any

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from fassets_bridge.attestation.client import AttestationClient
from fassets_bridge.attestation.data_availability import DataAvailabilityClient
from fassets_bridge.attestation.http import JsonPoster
from fassets_bridge.attestation.hub import FdcHubClient
from fassets_bridge.attestation.verifier import VerifierClient
from fassets_bridge.bridge import BridgeStateMachine, PaymentInstruction
from fassets_bridge.collaborators import (
    PaymentDetected,
    ShareAccounting,
    SimulatedShareAccounting,
    SubscriptionRegistry,
)
from fassets_bridge.config import BridgeSettings, SettlementMode
from fassets_bridge.errors import classify_exception
from fassets_bridge.evm.fassets import FAssetsClient
from fassets_bridge.evm.gateway import Web3Gateway
from fassets_bridge.locks import KeyedLock
from fassets_bridge.reconciliation import ReconciliationEngine
from fassets_bridge.records import BridgeStatus, RedemptionStatus, now_utc
from fassets_bridge.redemption import RedemptionStateMachine
from fassets_bridge.settlement import (
    ChainSettlementBackend,
    SettlementBackend,
    SimulatedSettlementBackend,
)
from fassets_bridge.store import BridgeStore
from fassets_bridge.xrpl.client import XrplLedgerClient
from fassets_bridge.xrpl.transport import HttpxTransport

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: int | str = logging.INFO) -> None:
    """Root logging with one timestamped format. Idempotent."""
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


class BridgeRuntime:
    """Owns the store, backends, state machines and background work.

    Args:
        settings: Process configuration.
        settlement: Override the backend chosen from settings.
        share_accounting: Vault share collaborator. Defaults to the
            deterministic simulator.
        scheduler: Scheduler for the reconciliation sweep.
        now_fn: Clock shared by every component.
    """

    def __init__(
        self,
        settings: BridgeSettings,
        *,
        settlement: SettlementBackend | None = None,
        share_accounting: ShareAccounting | None = None,
        scheduler: AsyncIOScheduler | None = None,
        now_fn: Callable[[], datetime] = now_utc,
    ) -> None:
        self.settings = settings
        self._http: httpx.AsyncClient | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

        self.store = BridgeStore(settings.db_path, now_fn=now_fn)
        self.registry = SubscriptionRegistry()
        self.settlement = settlement or self._build_settlement(now_fn)
        if share_accounting is None:
            if settings.settlement_mode == SettlementMode.CHAIN:
                logger.warning("No share accounting configured, vault shares are simulated")
            share_accounting = SimulatedShareAccounting()
        self.share_accounting = share_accounting

        locks = KeyedLock()
        self.bridges = BridgeStateMachine(
            self.store,
            self.settlement,
            self.share_accounting,
            self.registry,
            network=settings.network.name,
            payment_window=settings.payment_window,
            locks=locks,
            now_fn=now_fn,
        )
        self.redemptions = RedemptionStateMachine(
            self.store,
            self.settlement,
            self.share_accounting,
            self.registry,
            retry_backoff_base=settings.retry_backoff_base,
            locks=locks,
            now_fn=now_fn,
        )
        self.reconciliation = ReconciliationEngine(
            self.store,
            self.bridges,
            self.redemptions,
            interval=settings.reconciliation_interval,
            max_retries=settings.max_retries,
            scheduler=scheduler,
            now_fn=now_fn,
        )

    def _build_settlement(self, now_fn: Callable[[], datetime]) -> SettlementBackend:
        settings = self.settings
        if settings.settlement_mode == SettlementMode.SIMULATED:
            logger.info("Settlement: simulated")
            return SimulatedSettlementBackend(
                payment_window=settings.payment_window, now_fn=now_fn
            )

        network = settings.network
        polling = settings.polling
        assert settings.operator_private_key is not None
        self._http = httpx.AsyncClient(timeout=settings.http_timeout)

        gateway = Web3Gateway(
            network.evm_rpc_url,
            settings.operator_private_key,
            registry_address=network.contract_registry,
            request_timeout=settings.http_timeout,
        )
        poster = JsonPoster(settings.verifier_api_key, timeout=settings.http_timeout, client=self._http)
        attestation = AttestationClient(
            VerifierClient(
                network.verifier_url,
                network.source_id,
                poster,
                attempts=polling.verifier_attempts,
                interval=polling.verifier_interval,
            ),
            FdcHubClient(
                gateway,
                lookback_blocks=polling.submission_lookback_blocks,
                search_attempts=polling.submission_search_attempts,
                search_interval=polling.submission_search_interval,
            ),
            DataAvailabilityClient(
                network.da_url,
                poster,
                poll_interval=polling.proof_poll_interval,
                timeout=polling.proof_timeout,
            ),
            round_wait_multiplier=polling.round_wait_multiplier,
        )
        ledger = XrplLedgerClient(
            network.xrpl_rpc_url,
            HttpxTransport(settings.http_timeout, client=self._http),
        )
        logger.info(f"Settlement: chain ({network.name}, chain id {network.chain_id})")
        return ChainSettlementBackend(
            gateway,
            FAssetsClient(gateway),
            attestation,
            ledger,
            decimals=network.asset_decimals,
        )

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    async def start(self, *, reconcile: bool = True) -> None:
        """Restore subscriptions, start the registry and reconciliation."""
        for bridge in self.store.list_bridges([BridgeStatus.AWAITING_PAYMENT]):
            if (
                bridge.agent_source_address is not None
                and bridge.source_payment_reference is not None
                and bridge.total_amount_raw is not None
            ):
                self.registry.add_agent_address(
                    bridge.agent_source_address,
                    bridge.id,
                    bridge.source_payment_reference,
                    bridge.total_amount_raw,
                )
        for redemption in self.store.list_redemptions([RedemptionStatus.XRPL_PAYOUT]):
            self.registry.subscribe_user_for_redemption(
                redemption.user_source_address,
                redemption.id,
                agent_address=redemption.agent_source_address,
                amount_raw=redemption.expected_payout_raw,
                payment_reference=redemption.payment_reference,
            )
        self.registry.start()
        if reconcile:
            self._spawn(self.reconciliation.start(), "reconciliation-start")

    async def stop(self) -> None:
        """Stop scheduling, cancel background work and release resources."""
        self.reconciliation.stop()
        self.registry.stop()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._http is not None:
            await self._http.aclose()
            self._http = None
        self.store.close()
        logger.info("Runtime stopped")

    async def drain(self) -> None:
        """Wait until all background tasks have finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -----------------------------------------------------------------
    # Entry points
    # -----------------------------------------------------------------

    async def open_bridge(
        self,
        wallet_address: str,
        vault_id: str,
        source_amount: Decimal | str | int,
    ) -> PaymentInstruction:
        """Create a bridge, reserve collateral and return the payment to make."""
        record = self.bridges.create_bridge(wallet_address, vault_id, source_amount)
        record = await self.bridges.reserve_collateral_quick(record.id)
        return self.bridges.build_payment_request(record)

    def on_ledger_payment(
        self,
        tx_hash: str,
        from_address: str,
        to_address: str,
        amount_raw: int,
        memo: str | None = None,
    ) -> asyncio.Task[Any] | None:
        """Feed a source-ledger payment in; dispatches it if someone waits on it.

        ``memo`` is the hex MemoData of the payment, if any.
        """
        event = self.registry.match(tx_hash, from_address, to_address, amount_raw, memo)
        if event is None:
            return None
        return self.dispatch_payment(event)

    def dispatch_payment(self, event: PaymentDetected) -> asyncio.Task[Any]:
        """Run the slow path for a detected payment in the background."""
        if event.bridge_id is not None:
            logger.info(f"Payment {event.tx_hash} detected for bridge {event.bridge_id}")
            return self._spawn(
                self.bridges.execute_minting_with_proof(event.bridge_id, event.tx_hash),
                f"bridge-{event.bridge_id}",
            )
        assert event.redemption_id is not None
        logger.info(f"Payout {event.tx_hash} detected for redemption {event.redemption_id}")
        return self._spawn(
            self.redemptions.execute_payout_confirmation(
                event.redemption_id, event.tx_hash, event.amount_raw, event.from_address
            ),
            f"redemption-{event.redemption_id}",
        )

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(self._run(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, coro: Coroutine[Any, Any, Any], name: str) -> Any:
        # Failures are already persisted on the record; the task only logs.
        try:
            return await coro
        except asyncio.CancelledError:
            logger.info(f"Task {name} cancelled")
            raise
        except Exception as exc:
            logger.error(f"Task {name} failed ({classify_exception(exc)}): {exc}")
            return None

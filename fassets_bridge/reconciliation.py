"""
Reconciliation engine — expiry sweep and crash recovery.

Two jobs:
    - sweep_expired: cancels bridges whose payment window has passed
      and stops watching their agent addresses. Runs at startup and
      then on an APScheduler interval.
    - recover_all: drives every recoverable bridge and redemption
      through its reconcile routine, one record at a time. Runs at
      startup; a failing record is logged and collected, never fatal.

The scheduler is injectable so tests (and embedding applications) can
own its lifecycle.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from fassets_bridge.bridge import (
    BridgeStateMachine,
    ReconcileOutcome,
    RecoveryAction,
    bridge_recovery_action,
)
from fassets_bridge.errors import StaleRecordError, classify_exception
from fassets_bridge.records import BridgeStatus, RedemptionStatus, now_utc
from fassets_bridge.redemption import (
    RedemptionRecoveryAction,
    RedemptionStateMachine,
    redemption_recovery_action,
)
from fassets_bridge.store import BridgeStore

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "sweep_expired_bridges"

RECOVERABLE_BRIDGE_STATUSES = frozenset(
    {
        BridgeStatus.BRIDGING,
        BridgeStatus.FDC_TIMEOUT,
        BridgeStatus.VAULT_MINT_FAILED,
        BridgeStatus.XRPL_CONFIRMED,
        BridgeStatus.FDC_PROOF_GENERATED,
        BridgeStatus.COMPLETED,
        BridgeStatus.VAULT_MINTING,
        BridgeStatus.FAILED,
    }
)

RECOVERABLE_REDEMPTION_STATUSES = frozenset(
    {
        RedemptionStatus.AWAITING_PROOF,
        RedemptionStatus.REDEEMED_FXRP,
        RedemptionStatus.REDEEMING_FXRP,
        RedemptionStatus.XRPL_RECEIVED,
        RedemptionStatus.FAILED,
    }
)


@dataclass
class SweepReport:
    """Outcome of one expiry sweep."""

    checked: int = 0
    cancelled: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


@dataclass
class RecoveryReport:
    """Outcome of one recovery pass.

    Attributes:
        outcomes: Reconcile results for records that were attempted.
        failures: Record id → "kind: message" for attempts that raised.
        exhausted: Records skipped because they hit the retry ceiling.
    """

    outcomes: list[ReconcileOutcome] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    exhausted: list[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.outcomes) + len(self.failures)


def create_scheduler() -> AsyncIOScheduler:
    """AsyncIOScheduler with in-memory jobs, one instance per job, coalesced."""
    return AsyncIOScheduler(
        jobstores={"default": MemoryJobStore()},
        executors={"default": AsyncIOExecutor()},
        job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 60},
        timezone="UTC",
    )


class ReconciliationEngine:
    """Periodic expiry sweep plus startup recovery.

    Args:
        store: Record store.
        bridges: Bridge state machine.
        redemptions: Redemption state machine.
        interval: Seconds between expiry sweeps.
        max_retries: Records with this many automatic retries are left
            for manual review.
        scheduler: Scheduler to register the sweep with. Created on
            start if omitted.
        now_fn: Clock.
    """

    def __init__(
        self,
        store: BridgeStore,
        bridges: BridgeStateMachine,
        redemptions: RedemptionStateMachine,
        *,
        interval: float = 300.0,
        max_retries: int = 10,
        scheduler: AsyncIOScheduler | None = None,
        now_fn: Callable[[], datetime] = now_utc,
    ) -> None:
        self._store = store
        self._bridges = bridges
        self._redemptions = redemptions
        self._interval = interval
        self._max_retries = max_retries
        self._scheduler = scheduler
        self._now_fn = now_fn

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    # -----------------------------------------------------------------
    # Expiry
    # -----------------------------------------------------------------

    async def sweep_expired(self) -> SweepReport:
        """Cancel every non-terminal bridge whose expiry has passed."""
        now = self._now_fn()
        report = SweepReport()
        for record in self._store.list_expired_bridges(now):
            report.checked += 1
            try:
                cancelled = await self._bridges.cancel_if_expired(record.id, now)
            except StaleRecordError:
                logger.info(f"Bridge {record.id} changed during the expiry sweep")
                cancelled = None
            if cancelled is None:
                report.skipped.append(record.id)
            else:
                report.cancelled.append(record.id)
        if report.checked:
            logger.info(
                f"Expiry sweep: {len(report.cancelled)} cancelled, "
                f"{len(report.skipped)} skipped"
            )
        return report

    # -----------------------------------------------------------------
    # Recovery
    # -----------------------------------------------------------------

    async def recover_all(self) -> RecoveryReport:
        """Reconcile every recoverable record, sequentially."""
        report = RecoveryReport()

        for bridge in self._store.list_bridges(RECOVERABLE_BRIDGE_STATUSES):
            if bridge_recovery_action(bridge) is RecoveryAction.NONE:
                continue
            if bridge.retry_count >= self._max_retries:
                report.exhausted.append(bridge.id)
                continue
            try:
                report.outcomes.append(await self._bridges.reconcile_bridge(bridge.id))
            except Exception as exc:
                kind = classify_exception(exc)
                logger.error(f"Recovery of bridge {bridge.id} failed ({kind}): {exc}")
                report.failures[bridge.id] = f"{kind}: {exc}"

        for redemption in self._store.list_redemptions(RECOVERABLE_REDEMPTION_STATUSES):
            if redemption_recovery_action(redemption) is RedemptionRecoveryAction.NONE:
                continue
            if redemption.retry_count >= self._max_retries:
                report.exhausted.append(redemption.id)
                continue
            try:
                outcome = await self._redemptions.reconcile_redemption(redemption.id)
                report.outcomes.append(outcome)
            except Exception as exc:
                kind = classify_exception(exc)
                logger.error(f"Recovery of redemption {redemption.id} failed ({kind}): {exc}")
                report.failures[redemption.id] = f"{kind}: {exc}"

        if report.exhausted:
            logger.warning(
                f"{len(report.exhausted)} records reached {self._max_retries} retries "
                f"and need manual review: {', '.join(report.exhausted)}"
            )
        logger.info(
            f"Recovery pass: {report.attempted} attempted, {len(report.failures)} failed"
        )
        return report

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    async def start(self) -> None:
        """Sweep once, schedule the periodic sweep, then run recovery once."""
        await self.sweep_expired()

        if self._scheduler is None:
            self._scheduler = create_scheduler()
        self._scheduler.add_job(
            self.sweep_expired,
            trigger=IntervalTrigger(seconds=self._interval),
            id=SWEEP_JOB_ID,
            name="Sweep Expired Bridges",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        if not self._scheduler.running:
            self._scheduler.start()
        logger.info(f"Reconciliation scheduled every {self._interval:g}s")
        await self.recover_all()

    def stop(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Reconciliation stopped")

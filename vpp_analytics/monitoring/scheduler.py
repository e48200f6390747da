"""Periodic risk monitoring loop over all active VPPs.

State machine per tick:

    IDLE -> SCANNING (list active VPPs)
         -> EVALUATING (per-VPP metrics/assessments, bounded concurrency)
         -> ALERTING (per-VPP alert dispatch)
         -> IDLE

A failure for one VPP is logged and recorded in the TickReport; the other
VPPs of the tick continue. ``stop()`` lets an in-flight tick finish before
the loop halts.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone

import structlog

from vpp_analytics.core.config import Settings
from vpp_analytics.core.enums import SchedulerState
from vpp_analytics.core.interfaces import ActiveVppSource
from vpp_analytics.core.retry import call_collaborator
from vpp_analytics.core.utils.logging_config import bind_vpp_context
from vpp_analytics.risk.risk_monitor import RiskEvaluation, RiskMonitor, RiskMonitoringReport

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class VppFailure:
    """A per-VPP failure recorded during a tick."""

    vpp_id: str | None
    stage: str
    error: str


@dataclass
class TickReport:
    """Outcome of one monitoring tick."""

    tick: int
    started_at: datetime
    finished_at: datetime | None = None
    vpp_ids: list[str] = field(default_factory=list)
    reports: dict[str, RiskMonitoringReport] = field(default_factory=dict)
    failures: list[VppFailure] = field(default_factory=list)

    @property
    def n_alerts(self) -> int:
        return sum(len(r.alerts) for r in self.reports.values())

    @property
    def failed_vpp_ids(self) -> list[str]:
        return [f.vpp_id for f in self.failures if f.vpp_id is not None]


class RiskMonitoringScheduler:
    """Runs RiskMonitor over every active VPP on a fixed interval.

    Args:
        monitor: Per-VPP monitoring pipeline.
        vpp_source: Collaborator listing the active VPPs.
        interval_seconds: Pause between the end of one tick and the next.
        max_concurrency: Upper bound on concurrent VPP evaluations.
    """

    def __init__(
        self,
        monitor: RiskMonitor,
        vpp_source: ActiveVppSource,
        interval_seconds: float = 300.0,
        max_concurrency: int = 4,
        retry_attempts: int = 3,
        retry_wait_seconds: float = 0.1,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.monitor = monitor
        self.vpp_source = vpp_source
        self.interval_seconds = interval_seconds
        self.max_concurrency = max(1, max_concurrency)
        self.retry_attempts = retry_attempts
        self.retry_wait_seconds = retry_wait_seconds

        self._state = SchedulerState.IDLE
        self._task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None
        self._tick = 0
        self.last_report: TickReport | None = None

    @classmethod
    def from_settings(
        cls, config: Settings, monitor: RiskMonitor, vpp_source: ActiveVppSource
    ) -> RiskMonitoringScheduler:
        rm = config.risk_monitoring
        return cls(
            monitor,
            vpp_source,
            interval_seconds=rm.monitoring_interval_seconds,
            max_concurrency=rm.max_concurrency,
            retry_attempts=rm.collaborator_retry_attempts,
            retry_wait_seconds=rm.collaborator_retry_wait_seconds,
        )

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> asyncio.Task:
        """Launch the periodic loop; returns the existing task if running."""
        if self.is_running:
            return self._task
        self._stop_event = asyncio.Event()
        self._state = SchedulerState.IDLE
        self._task = asyncio.create_task(self._loop())
        logger.info("risk_monitoring_started", interval_seconds=self.interval_seconds)
        return self._task

    async def stop(self) -> None:
        """Signal the loop to halt and wait for the in-flight tick to finish."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        self._state = SchedulerState.STOPPED
        logger.info("risk_monitoring_stopped", ticks=self._tick)

    async def _loop(self) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:
                self._state = SchedulerState.IDLE
                logger.error("monitoring_tick_failed", tick=self._tick, error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------
    async def run_once(self) -> TickReport:
        """Run a single SCANNING -> EVALUATING -> ALERTING tick."""
        self._tick += 1
        report = TickReport(tick=self._tick, started_at=datetime.now(timezone.utc))

        self._state = SchedulerState.SCANNING
        try:
            vpp_ids = await call_collaborator(
                self.vpp_source.list_active_vpps,
                attempts=self.retry_attempts,
                wait_seconds=self.retry_wait_seconds,
            )
        except Exception as exc:
            logger.error("active_vpp_scan_failed", tick=self._tick, error=str(exc))
            report.failures.append(VppFailure(None, "scan", str(exc)))
            return self._finish(report)
        report.vpp_ids = [str(v) for v in vpp_ids or []]

        self._state = SchedulerState.EVALUATING
        evaluations = await self._evaluate_all(report)

        self._state = SchedulerState.ALERTING
        for evaluation in evaluations:
            with bind_vpp_context(evaluation.vpp_id):
                try:
                    alerts = await self.monitor.alert(evaluation)
                    report.reports[evaluation.vpp_id] = self.monitor.report(evaluation, alerts)
                except Exception as exc:
                    logger.error("vpp_alerting_failed", vpp_id=evaluation.vpp_id, error=str(exc))
                    report.failures.append(VppFailure(evaluation.vpp_id, "alert", str(exc)))

        return self._finish(report)

    async def _evaluate_all(self, report: TickReport) -> list[RiskEvaluation]:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def evaluate_one(vpp_id: str) -> RiskEvaluation:
            async with semaphore:
                with bind_vpp_context(vpp_id):
                    return await self.monitor.evaluate(vpp_id)

        outcomes = await asyncio.gather(
            *(evaluate_one(v) for v in report.vpp_ids), return_exceptions=True
        )
        evaluations: list[RiskEvaluation] = []
        for vpp_id, outcome in zip(report.vpp_ids, outcomes):
            if isinstance(outcome, Exception):
                logger.error("vpp_evaluation_failed", vpp_id=vpp_id, error=str(outcome))
                report.failures.append(VppFailure(vpp_id, "evaluate", str(outcome)))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                evaluations.append(outcome)
        return evaluations

    def _finish(self, report: TickReport) -> TickReport:
        report.finished_at = datetime.now(timezone.utc)
        self._state = SchedulerState.IDLE
        self.last_report = report
        logger.info(
            "monitoring_tick_completed",
            tick=report.tick,
            n_vpps=len(report.vpp_ids),
            n_alerts=report.n_alerts,
            n_failures=len(report.failures),
        )
        return report

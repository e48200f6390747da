"""Per-VPP risk monitoring pipeline.

RiskMonitor is the single entry point the scheduler and the service use to
monitor a VPP. It chains metric computation, level assessment, trend
detection and alert dispatch into a RiskMonitoringReport, and stores the
latest report in the risk cache.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, Mapping

import structlog

from vpp_analytics.cache.analytics_cache import AnalyticsCache
from vpp_analytics.core.config import Settings
from vpp_analytics.core.enums import DataQuality, RiskLevel, RiskType
from vpp_analytics.core.interfaces import HistoricalDataSource, PersistenceSink
from vpp_analytics.monitoring.notifier import EventNotifier
from vpp_analytics.risk.alert_dispatcher import Alert, AlertDispatcher, rules_from_thresholds
from vpp_analytics.risk.assessor import LevelRatios, RiskAssessment, RiskAssessor, overall_level
from vpp_analytics.risk.metric_calculator import RiskMetric, RiskMetricCalculator
from vpp_analytics.risk.trends import RiskTrend, RiskTrendAnalyzer

logger = structlog.get_logger(__name__)

RISK_ANALYSIS = "risk_monitoring"

_QUALITY_ORDER = {
    DataQuality.OK: 0,
    DataQuality.INSUFFICIENT: 1,
    DataQuality.UNAVAILABLE: 2,
}


@dataclass
class RiskEvaluation:
    """Metrics, assessments and trends for one VPP, before alerting."""

    vpp_id: str
    metrics: dict[RiskType, RiskMetric]
    assessments: dict[RiskType, RiskAssessment]
    trends: dict[RiskType, RiskTrend]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def overall_level(self) -> RiskLevel:
        return overall_level(self.assessments)

    @property
    def data_quality(self) -> DataQuality:
        """Worst data quality across all metrics."""
        if not self.metrics:
            return DataQuality.OK
        return max(
            (m.data_quality for m in self.metrics.values()),
            key=lambda q: _QUALITY_ORDER[q],
        )


@dataclass
class RiskMonitoringReport:
    """Outcome of one monitoring pass for a VPP.

    Attributes:
        vpp_id: VPP identifier.
        metrics: Metric per risk type.
        assessments: Assessment per risk type.
        trends: Trend per risk type.
        alerts: Alerts dispatched during this pass.
        overall_level: Highest level across risk types.
        data_quality: Worst data quality across risk types.
        timestamp: When the pass completed.
        next_monitoring_time: When the next periodic pass is due.
    """

    vpp_id: str
    metrics: dict[RiskType, RiskMetric]
    assessments: dict[RiskType, RiskAssessment]
    trends: dict[RiskType, RiskTrend]
    alerts: list[Alert]
    overall_level: RiskLevel
    data_quality: DataQuality
    timestamp: datetime
    next_monitoring_time: datetime


class RiskMonitor:
    """Orchestrates calculator, assessor, trend analyzer and dispatcher.

    Args:
        calculator: Metric computation engine.
        assessor: Level assignment engine.
        dispatcher: Alert persistence/publication engine.
        trend_analyzer: Cycle-over-cycle trend detection.
        thresholds: Per-type alert thresholds.
        cache: Optional risk cache receiving the latest report per VPP.
        monitoring_interval_seconds: Used to compute ``next_monitoring_time``.
    """

    def __init__(
        self,
        calculator: RiskMetricCalculator,
        assessor: RiskAssessor | None = None,
        dispatcher: AlertDispatcher | None = None,
        trend_analyzer: RiskTrendAnalyzer | None = None,
        thresholds: Mapping[RiskType, float] | None = None,
        cache: AnalyticsCache | None = None,
        monitoring_interval_seconds: float = 300.0,
    ) -> None:
        self.calculator = calculator
        self.assessor = assessor or RiskAssessor()
        self.dispatcher = dispatcher or AlertDispatcher()
        self.trend_analyzer = trend_analyzer or RiskTrendAnalyzer()
        self.thresholds = dict(thresholds or {})
        self.cache = cache
        self.monitoring_interval_seconds = monitoring_interval_seconds

    @classmethod
    def from_settings(
        cls,
        config: Settings,
        data_source: HistoricalDataSource,
        persistence: PersistenceSink | None = None,
        notifier: EventNotifier | None = None,
        cache: AnalyticsCache | None = None,
    ) -> RiskMonitor:
        """Wire a monitor from the ``risk_monitoring`` settings section."""
        rm = config.risk_monitoring
        return cls(
            calculator=RiskMetricCalculator(
                data_source,
                min_history_points=rm.min_history_points,
                price_history_limit=rm.price_history_limit,
                retry_attempts=rm.collaborator_retry_attempts,
                retry_wait_seconds=rm.collaborator_retry_wait_seconds,
            ),
            assessor=RiskAssessor(
                LevelRatios(rm.critical_ratio, rm.high_ratio, rm.medium_ratio),
                default_threshold=rm.default_threshold,
            ),
            dispatcher=AlertDispatcher(
                persistence=persistence,
                notifier=notifier,
                trend_alerts_enabled=rm.trend_alerts_enabled,
                trend_alert_change_rate=rm.trend_alert_change_rate,
                rules=rules_from_thresholds(
                    rm.alert_thresholds, rm.alert_min_level, rm.muted_risk_types
                ),
            ),
            trend_analyzer=RiskTrendAnalyzer(rm.trend_stable_band),
            thresholds=rm.alert_thresholds,
            cache=cache,
            monitoring_interval_seconds=rm.monitoring_interval_seconds,
        )

    async def evaluate(
        self,
        vpp_id: str,
        risk_types: Iterable[RiskType | str] | None = None,
    ) -> RiskEvaluation:
        """Compute metrics, assessments and trends for *vpp_id*."""
        metrics = await self.calculator.calculate(vpp_id, risk_types)
        assessments = self.assessor.assess(metrics, self.thresholds)
        trends = self.trend_analyzer.analyze(vpp_id, assessments)
        return RiskEvaluation(
            vpp_id=vpp_id,
            metrics=metrics,
            assessments=assessments,
            trends=trends,
        )

    async def alert(self, evaluation: RiskEvaluation) -> list[Alert]:
        """Dispatch the alerts implied by *evaluation*."""
        return await self.dispatcher.dispatch(
            evaluation.assessments, evaluation.trends, evaluation.vpp_id
        )

    def report(self, evaluation: RiskEvaluation, alerts: list[Alert]) -> RiskMonitoringReport:
        """Assemble the report and refresh the risk cache."""
        now = datetime.now(timezone.utc)
        report = RiskMonitoringReport(
            vpp_id=evaluation.vpp_id,
            metrics=evaluation.metrics,
            assessments=evaluation.assessments,
            trends=evaluation.trends,
            alerts=alerts,
            overall_level=evaluation.overall_level,
            data_quality=evaluation.data_quality,
            timestamp=now,
            next_monitoring_time=now + timedelta(seconds=self.monitoring_interval_seconds),
        )
        if self.cache is not None:
            self.cache.set(self.cache.key(evaluation.vpp_id, RISK_ANALYSIS), report)

        logger.info(
            "risk_monitoring_completed",
            vpp_id=evaluation.vpp_id,
            overall_level=report.overall_level.value,
            data_quality=report.data_quality.value,
            n_alerts=len(alerts),
        )
        return report

    async def monitor(
        self,
        vpp_id: str,
        risk_types: Iterable[RiskType | str] | None = None,
    ) -> RiskMonitoringReport:
        """Full pass: evaluate, alert and report."""
        evaluation = await self.evaluate(vpp_id, risk_types)
        alerts = await self.alert(evaluation)
        return self.report(evaluation, alerts)

    def latest_report(self, vpp_id: str) -> RiskMonitoringReport | None:
        """Most recent cached report for *vpp_id*, if still fresh."""
        if self.cache is None:
            return None
        return self.cache.get(self.cache.key(vpp_id, RISK_ANALYSIS))

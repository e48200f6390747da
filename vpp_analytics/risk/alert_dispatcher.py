"""Risk alert generation, persistence and publication.

One alert is produced per assessment at HIGH or CRITICAL level. Alerts are
written to the persistence sink and published as ``risk_alert`` events on
the notifier. There is no deduplication: an elevated risk alerts on every
cycle it stays elevated.

Sink and subscriber failures are logged and never raised -- alerting must
not crash the monitoring loop.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

import structlog

from vpp_analytics.core.enums import (
    DataQuality,
    EventKind,
    RiskLevel,
    RiskType,
    TrendDirection,
)
from vpp_analytics.core.interfaces import PersistenceSink, resolve
from vpp_analytics.monitoring.notifier import EventNotifier
from vpp_analytics.risk.assessor import RiskAssessment
from vpp_analytics.risk.trends import RiskTrend

logger = structlog.get_logger(__name__)

RISK_ALERT = "risk_alert"
RISK_TREND_ALERT = "risk_trend"


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------
@dataclass
class AlertRule:
    """Firing rule for one risk type.

    Attributes:
        risk_type: Risk type the rule applies to.
        threshold: Threshold T the assessment was classified against.
        severity: Lowest level that fires an alert.
        enabled: Runtime toggle.
    """

    risk_type: RiskType
    threshold: float
    severity: RiskLevel = RiskLevel.HIGH
    enabled: bool = True

    def fires(self, assessment: RiskAssessment) -> bool:
        return self.enabled and assessment.level.rank >= self.severity.rank


@dataclass(frozen=True)
class Alert:
    """Immutable alert record; one per elevated risk per cycle."""

    vpp_id: str
    risk_type: RiskType
    level: RiskLevel
    score: float
    threshold: float
    message: str
    priority: str
    alert_type: str = RISK_ALERT
    trend: TrendDirection = TrendDirection.STABLE
    data_quality: DataQuality = DataQuality.OK
    alert_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        """JSON-compatible representation for sinks and subscribers."""
        payload = asdict(self)
        for key in ("risk_type", "level", "trend", "data_quality"):
            payload[key] = payload[key].value
        payload["timestamp"] = self.timestamp.isoformat()
        return payload


def alert_message(risk_type: RiskType, level: RiskLevel, score: float) -> str:
    return f"{risk_type.value} risk level is {level.value} ({score:.3f})"


def alert_priority(level: RiskLevel) -> str:
    return "high" if level == RiskLevel.CRITICAL else "medium"


def rules_from_thresholds(
    thresholds: Mapping[RiskType | str, float],
    severity: RiskLevel = RiskLevel.HIGH,
    muted: Iterable[RiskType | str] = (),
) -> dict[RiskType, AlertRule]:
    """Build one AlertRule per configured threshold; *muted* types are disabled."""
    muted_types = {RiskType(rt) for rt in muted}
    return {
        RiskType(rt): AlertRule(
            risk_type=RiskType(rt),
            threshold=float(t),
            severity=RiskLevel(severity),
            enabled=RiskType(rt) not in muted_types,
        )
        for rt, t in thresholds.items()
    }


# ---------------------------------------------------------------------------
# AlertDispatcher
# ---------------------------------------------------------------------------
class AlertDispatcher:
    """Builds alerts from assessments, persists and publishes them.

    Args:
        persistence: Sink receiving every alert via ``save_alert``.
        notifier: Notifier on which ``risk_alert`` events are published.
        rules: Optional per-type rules; types without a rule fire at HIGH.
        trend_alerts_enabled: Also alert on fast-rising risks below HIGH.
        trend_alert_change_rate: Relative increase that fires a trend alert.
        enabled: Toggle to disable persistence/publication in dry runs.
    """

    def __init__(
        self,
        persistence: PersistenceSink | None = None,
        notifier: EventNotifier | None = None,
        rules: Mapping[RiskType, AlertRule] | None = None,
        trend_alerts_enabled: bool = False,
        trend_alert_change_rate: float = 0.1,
        enabled: bool = True,
    ) -> None:
        self.persistence = persistence
        self.notifier = notifier
        self.rules = dict(rules or {})
        self.trend_alerts_enabled = trend_alerts_enabled
        self.trend_alert_change_rate = trend_alert_change_rate
        self.enabled = enabled

    def build_alerts(
        self,
        assessments: Mapping[RiskType, RiskAssessment],
        trends: Mapping[RiskType, RiskTrend] | None,
        vpp_id: str,
    ) -> list[Alert]:
        """Pure alert construction, without persistence or publication."""
        trends = trends or {}
        alerts: list[Alert] = []
        for risk_type, assessment in assessments.items():
            trend = trends.get(risk_type)
            direction = trend.direction if trend else TrendDirection.STABLE
            rule = self.rules.get(risk_type) or AlertRule(risk_type, assessment.threshold)

            if rule.fires(assessment):
                alerts.append(
                    Alert(
                        vpp_id=vpp_id,
                        risk_type=risk_type,
                        level=assessment.level,
                        score=assessment.score,
                        threshold=assessment.threshold,
                        message=alert_message(risk_type, assessment.level, assessment.score),
                        priority=alert_priority(assessment.level),
                        trend=direction,
                        data_quality=assessment.data_quality,
                    )
                )
            elif rule.enabled and self._is_rising_fast(trend):
                alerts.append(
                    Alert(
                        vpp_id=vpp_id,
                        risk_type=risk_type,
                        level=assessment.level,
                        score=assessment.score,
                        threshold=assessment.threshold,
                        message=(
                            f"{risk_type.value} risk is increasing rapidly "
                            f"({trend.change_rate:+.1%})"
                        ),
                        priority="medium",
                        alert_type=RISK_TREND_ALERT,
                        trend=direction,
                        data_quality=assessment.data_quality,
                    )
                )
        return alerts

    async def dispatch(
        self,
        assessments: Mapping[RiskType, RiskAssessment],
        trends: Mapping[RiskType, RiskTrend] | None,
        vpp_id: str,
    ) -> list[Alert]:
        """Build, persist and publish the alerts for one VPP.

        Returns:
            The alerts produced, whether or not delivery succeeded.
        """
        alerts = self.build_alerts(assessments, trends, vpp_id)
        for alert in alerts:
            logger.warning(
                "risk_alert",
                vpp_id=vpp_id,
                risk_type=alert.risk_type.value,
                level=alert.level.value,
                score=round(alert.score, 4),
                alert_type=alert.alert_type,
            )
            if self.enabled:
                await self._deliver(alert)
        return alerts

    def _is_rising_fast(self, trend: RiskTrend | None) -> bool:
        return (
            self.trend_alerts_enabled
            and trend is not None
            and trend.direction == TrendDirection.INCREASING
            and trend.change_rate > self.trend_alert_change_rate
        )

    async def _deliver(self, alert: Alert) -> None:
        if self.persistence is not None:
            try:
                await resolve(self.persistence.save_alert(alert))
            except Exception as exc:
                logger.error(
                    "alert_persist_failed",
                    vpp_id=alert.vpp_id,
                    alert_id=alert.alert_id,
                    error=str(exc),
                )
        if self.notifier is not None:
            await self.notifier.publish(EventKind.RISK_ALERT, alert.to_dict())

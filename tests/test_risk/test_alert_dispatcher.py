"""Tests for AlertDispatcher and the Alert record.

Covers:
- one alert per HIGH/CRITICAL assessment, none for LOW/MEDIUM
- message and priority formatting
- persistence and notifier delivery, including failing sinks/subscribers
- opt-in trend alerts for fast-rising risks below HIGH
- custom AlertRule severity and disabled rules
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from vpp_analytics.core.enums import EventKind, RiskLevel, RiskType, TrendDirection
from vpp_analytics.risk.alert_dispatcher import (
    RISK_TREND_ALERT,
    AlertDispatcher,
    AlertRule,
    alert_message,
    alert_priority,
    rules_from_thresholds,
)
from vpp_analytics.risk.assessor import RiskAssessor
from vpp_analytics.risk.metric_calculator import RiskMetric
from vpp_analytics.risk.trends import RiskTrend


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def assessments():
    """credit CRITICAL, weather HIGH, technical MEDIUM, operational LOW."""
    scores = {
        RiskType.CREDIT: 1.0,
        RiskType.WEATHER: 0.8,
        RiskType.TECHNICAL: 0.6,
        RiskType.OPERATIONAL: 0.1,
    }
    metrics = {rt: RiskMetric(risk_type=rt, values={"score": s}) for rt, s in scores.items()}
    return RiskAssessor(default_threshold=0.8).assess(metrics)


def _rising(risk_type: RiskType, change: float) -> RiskTrend:
    return RiskTrend(
        risk_type=risk_type,
        direction=TrendDirection.INCREASING,
        change_rate=change,
        previous_score=0.3,
        current_score=0.3 * (1 + change),
    )


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------
class TestBuildAlerts:
    """Tests for AlertDispatcher.build_alerts."""

    def test_high_and_critical_only(self, assessments):
        alerts = AlertDispatcher().build_alerts(assessments, None, "vpp-1")
        assert {a.risk_type for a in alerts} == {RiskType.CREDIT, RiskType.WEATHER}
        by_type = {a.risk_type: a for a in alerts}
        assert by_type[RiskType.CREDIT].level == RiskLevel.CRITICAL
        assert by_type[RiskType.CREDIT].priority == "high"
        assert by_type[RiskType.WEATHER].priority == "medium"
        assert all(a.vpp_id == "vpp-1" for a in alerts)

    def test_message_format(self):
        assert alert_message(RiskType.MARKET, RiskLevel.HIGH, 0.81234) == (
            "market risk level is high (0.812)"
        )
        assert alert_priority(RiskLevel.CRITICAL) == "high"
        assert alert_priority(RiskLevel.HIGH) == "medium"

    def test_alert_ids_unique(self, assessments):
        alerts = AlertDispatcher().build_alerts(assessments, None, "vpp-1")
        assert len({a.alert_id for a in alerts}) == len(alerts)

    def test_trend_alert_opt_in(self, assessments):
        trends = {RiskType.TECHNICAL: _rising(RiskType.TECHNICAL, 0.5)}
        assert len(AlertDispatcher().build_alerts(assessments, trends, "v")) == 2

        dispatcher = AlertDispatcher(trend_alerts_enabled=True, trend_alert_change_rate=0.2)
        alerts = dispatcher.build_alerts(assessments, trends, "v")
        trend_alerts = [a for a in alerts if a.alert_type == RISK_TREND_ALERT]
        assert len(trend_alerts) == 1
        assert trend_alerts[0].risk_type == RiskType.TECHNICAL
        assert trend_alerts[0].trend == TrendDirection.INCREASING
        assert "increasing rapidly" in trend_alerts[0].message

    def test_trend_below_rate_ignored(self, assessments):
        trends = {RiskType.TECHNICAL: _rising(RiskType.TECHNICAL, 0.05)}
        dispatcher = AlertDispatcher(trend_alerts_enabled=True, trend_alert_change_rate=0.2)
        alerts = dispatcher.build_alerts(assessments, trends, "v")
        assert all(a.alert_type != RISK_TREND_ALERT for a in alerts)

    def test_rule_severity_and_toggle(self, assessments):
        rules = rules_from_thresholds({RiskType.TECHNICAL: 0.8}, severity=RiskLevel.MEDIUM)
        rules[RiskType.CREDIT] = AlertRule(RiskType.CREDIT, 0.8, enabled=False)
        alerts = AlertDispatcher(rules=rules).build_alerts(assessments, None, "v")
        assert {a.risk_type for a in alerts} == {RiskType.TECHNICAL, RiskType.WEATHER}

    def test_to_dict_is_plain(self, assessments):
        alert = AlertDispatcher().build_alerts(assessments, None, "v")[0]
        payload = alert.to_dict()
        assert payload["risk_type"] in {"credit", "weather"}
        assert isinstance(payload["timestamp"], str)
        assert payload["data_quality"] == "ok"


class TestDispatch:
    """Tests for AlertDispatcher.dispatch delivery."""

    @pytest.mark.asyncio
    async def test_persisted_and_published(self, assessments, persistence, notifier):
        received = []
        notifier.subscribe(EventKind.RISK_ALERT, received.append)
        dispatcher = AlertDispatcher(persistence=persistence, notifier=notifier)

        alerts = await dispatcher.dispatch(assessments, None, "vpp-1")

        assert len(alerts) == 2
        assert persistence.alerts == alerts
        assert [p["alert_id"] for p in received] == [a.alert_id for a in alerts]

    @pytest.mark.asyncio
    async def test_sink_failure_not_raised(self, assessments, notifier):
        sink = AsyncMock()
        sink.save_alert.side_effect = RuntimeError("disk full")
        received = []
        notifier.subscribe(EventKind.RISK_ALERT, received.append)

        alerts = await AlertDispatcher(persistence=sink, notifier=notifier).dispatch(
            assessments, None, "vpp-1"
        )
        assert len(alerts) == 2
        assert sink.save_alert.await_count == 2
        # Publication still happens
        assert len(received) == 2

    @pytest.mark.asyncio
    async def test_subscriber_failure_not_raised(self, assessments, persistence, notifier):
        def broken(payload):
            raise ValueError("bad handler")

        notifier.subscribe(EventKind.RISK_ALERT, broken)
        alerts = await AlertDispatcher(persistence=persistence, notifier=notifier).dispatch(
            assessments, None, "vpp-1"
        )
        assert len(persistence.alerts) == len(alerts) == 2

    @pytest.mark.asyncio
    async def test_disabled_dispatcher_does_not_deliver(self, assessments, persistence):
        dispatcher = AlertDispatcher(persistence=persistence, enabled=False)
        alerts = await dispatcher.dispatch(assessments, None, "vpp-1")
        assert len(alerts) == 2
        assert persistence.alerts == []

"""Tests for RiskMonitoringScheduler.

Covers:
- one tick over all active VPPs, report per VPP
- state machine: SCANNING -> EVALUATING -> ALERTING -> IDLE
- per-VPP failure isolation and scan failures
- bounded evaluation concurrency
- start/stop lifecycle
"""

from __future__ import annotations

import asyncio

import pytest

from conftest import falling_prices, make_price_records, noisy_prices
from vpp_analytics.core.enums import RiskType, SchedulerState
from vpp_analytics.monitoring.scheduler import RiskMonitoringScheduler
from vpp_analytics.risk.alert_dispatcher import AlertDispatcher
from vpp_analytics.risk.metric_calculator import RiskMetricCalculator
from vpp_analytics.risk.risk_monitor import RiskMonitor


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def fleet(data_source):
    """Three VPPs: calm, stressed market and one with a broken price feed."""
    data_source.active = ["vpp-1", "vpp-2", "vpp-3"]
    data_source.price_series["vpp-2"] = make_price_records(falling_prices(100))
    data_source.price_series["vpp-3"] = make_price_records(noisy_prices(seed=3))
    original = data_source.get_price_series

    async def get_price_series(vpp_id, limit=100):
        if vpp_id == "vpp-3":
            raise RuntimeError("corrupt price feed")
        return await original(vpp_id, limit)

    data_source.get_price_series = get_price_series
    return data_source


@pytest.fixture
def monitor(fleet, persistence):
    return RiskMonitor(
        calculator=RiskMetricCalculator(fleet, retry_attempts=1, retry_wait_seconds=0.0),
        dispatcher=AlertDispatcher(persistence=persistence),
        thresholds={RiskType.MARKET: 0.025},
    )


def _scheduler(monitor, source, **kwargs) -> RiskMonitoringScheduler:
    kwargs.setdefault("retry_attempts", 1)
    kwargs.setdefault("retry_wait_seconds", 0.0)
    return RiskMonitoringScheduler(monitor, source, **kwargs)


# ---------------------------------------------------------------------------
# Ticks
# ---------------------------------------------------------------------------
class TestRunOnce:
    """Tests for RiskMonitoringScheduler.run_once."""

    @pytest.mark.asyncio
    async def test_tick_isolates_failures(self, monitor, fleet, persistence):
        scheduler = _scheduler(monitor, fleet)
        report = await scheduler.run_once()

        assert report.tick == 1
        assert report.vpp_ids == ["vpp-1", "vpp-2", "vpp-3"]
        assert set(report.reports) == {"vpp-1", "vpp-2"}
        assert report.failed_vpp_ids == ["vpp-3"]
        assert report.failures[0].stage == "evaluate"
        assert "corrupt" in report.failures[0].error
        assert report.reports["vpp-1"].alerts == []
        assert report.n_alerts == len(report.reports["vpp-2"].alerts) >= 1
        assert len(persistence.alerts) == report.n_alerts
        assert report.finished_at >= report.started_at
        assert scheduler.state == SchedulerState.IDLE
        assert scheduler.last_report is report

    @pytest.mark.asyncio
    async def test_state_sequence(self, monitor, fleet):
        scheduler = _scheduler(monitor, fleet)
        seen = []
        list_active = fleet.list_active_vpps
        evaluate = monitor.evaluate
        alert = monitor.alert

        async def spy_list():
            seen.append(scheduler.state)
            return await list_active()

        async def spy_evaluate(vpp_id, risk_types=None):
            seen.append(scheduler.state)
            return await evaluate(vpp_id, risk_types)

        async def spy_alert(evaluation):
            seen.append(scheduler.state)
            return await alert(evaluation)

        fleet.list_active_vpps = spy_list
        monitor.evaluate = spy_evaluate
        monitor.alert = spy_alert
        fleet.active = ["vpp-1"]

        await scheduler.run_once()
        assert seen == [
            SchedulerState.SCANNING,
            SchedulerState.EVALUATING,
            SchedulerState.ALERTING,
        ]
        assert scheduler.state == SchedulerState.IDLE

    @pytest.mark.asyncio
    async def test_scan_failure(self, monitor, fleet):
        async def broken():
            raise RuntimeError("registry down")

        fleet.list_active_vpps = broken
        scheduler = _scheduler(monitor, fleet)
        report = await scheduler.run_once()
        assert report.vpp_ids == []
        assert report.failures[0].stage == "scan"
        assert report.failures[0].vpp_id is None
        assert scheduler.state == SchedulerState.IDLE

    @pytest.mark.asyncio
    async def test_bounded_concurrency(self, monitor, fleet):
        fleet.active = [f"vpp-{i}" for i in range(6)]
        state = {"running": 0, "peak": 0}
        evaluate = monitor.evaluate

        async def slow_evaluate(vpp_id, risk_types=None):
            state["running"] += 1
            state["peak"] = max(state["peak"], state["running"])
            await asyncio.sleep(0.01)
            try:
                return await evaluate(vpp_id, [RiskType.CREDIT])
            finally:
                state["running"] -= 1

        monitor.evaluate = slow_evaluate
        report = await _scheduler(monitor, fleet, max_concurrency=2).run_once()
        assert len(report.reports) == 6
        assert state["peak"] == 2

    def test_invalid_interval(self, monitor, fleet):
        with pytest.raises(ValueError):
            _scheduler(monitor, fleet, interval_seconds=0)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------
class TestLifecycle:
    """Tests for start/stop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, monitor, fleet):
        scheduler = _scheduler(monitor, fleet, interval_seconds=0.01)
        task = scheduler.start()
        assert scheduler.is_running
        assert scheduler.start() is task

        for _ in range(200):
            if scheduler.last_report is not None and scheduler.last_report.tick >= 2:
                break
            await asyncio.sleep(0.01)

        await scheduler.stop()
        assert scheduler.last_report.tick >= 2
        assert not scheduler.is_running
        assert scheduler.state == SchedulerState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_without_start(self, monitor, fleet):
        scheduler = _scheduler(monitor, fleet)
        await scheduler.stop()
        assert scheduler.state == SchedulerState.STOPPED

    def test_from_settings(self, analytics_settings, monitor, fleet):
        scheduler = RiskMonitoringScheduler.from_settings(analytics_settings, monitor, fleet)
        assert scheduler.interval_seconds == 300.0
        assert scheduler.max_concurrency == 4
        assert scheduler.retry_attempts == 2

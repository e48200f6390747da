"""AdvancedAnalyticsService -- single entry point of the analytics core.

Wires the risk monitor, scheduler, portfolio optimizer, sensitivity
analyzer and stress test engine to one set of collaborators, one
configuration and one set of caches owned by the service instance.

Usage::

    service = AdvancedAnalyticsService(data_source, persistence, model)
    await service.initialize()
    report = await service.monitor_risk("vpp-1")
    result = await service.optimize_portfolio("vpp-1", method="risk_parity")
    await service.stop()
"""

from __future__ import annotations

import time
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Sequence

import structlog

from vpp_analytics.cache.analytics_cache import AnalyticsCaches
from vpp_analytics.core.config import Settings, settings as default_settings
from vpp_analytics.core.enums import EventKind, OptimizationMethod, RiskType
from vpp_analytics.core.exceptions import AnalyticsError
from vpp_analytics.core.interfaces import (
    ActiveVppSource,
    BaselineStateSource,
    HistoricalDataSource,
    PersistenceSink,
    PortfolioSource,
    ValuationModel,
    resolve,
)
from vpp_analytics.core.retry import call_collaborator
from vpp_analytics.core.utils.logging_config import configure_logging
from vpp_analytics.monitoring.notifier import EventNotifier
from vpp_analytics.monitoring.scheduler import RiskMonitoringScheduler
from vpp_analytics.portfolio.optimizer import (
    OptimizationResult,
    PortfolioOptimizer,
    estimate_inputs,
    parse_method,
)
from vpp_analytics.portfolio.problem import PortfolioConstraints
from vpp_analytics.risk.risk_monitor import RISK_ANALYSIS, RiskMonitor, RiskMonitoringReport
from vpp_analytics.sensitivity.analyzer import SensitivityAnalyzer, SensitivityResult
from vpp_analytics.sensitivity.sampling import ParameterSpec
from vpp_analytics.stress.stress_engine import (
    StressScenario,
    StressTestEngine,
    StressTestReport,
    StressTestResult,
)

logger = structlog.get_logger(__name__)

SERVICE_VERSION = "2.0.0"


class AdvancedAnalyticsService:
    """Facade over the risk, portfolio, sensitivity and stress components.

    Args:
        data_source: Historical series collaborator; also used as the
            active-VPP, portfolio and baseline source unless those are given.
        persistence: Alert and configuration sink.
        valuation_model: Model run by sensitivity analysis.
        config: Settings; the module-level defaults when None.
        notifier: Event notifier; a private one when None.
        clock: Time source of the caches.
    """

    def __init__(
        self,
        data_source: HistoricalDataSource,
        persistence: PersistenceSink | None = None,
        valuation_model: ValuationModel | None = None,
        config: Settings | None = None,
        notifier: EventNotifier | None = None,
        vpp_source: ActiveVppSource | None = None,
        portfolio_source: PortfolioSource | None = None,
        baseline_source: BaselineStateSource | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.data_source = data_source
        self.persistence = persistence
        self.valuation_model = valuation_model
        self.vpp_source = vpp_source or data_source
        self.portfolio_source = portfolio_source or data_source
        self.baseline_source = baseline_source or data_source
        self.notifier = notifier or EventNotifier()
        self.config = config or default_settings
        self._clock = clock
        self.initialized = False
        self._build()

    def _build(self) -> None:
        """(Re)create every component from ``self.config``."""
        self.caches = AnalyticsCaches.create(self.config.cache_ttl_seconds, self._clock)
        self.risk_monitor = RiskMonitor.from_settings(
            self.config,
            self.data_source,
            persistence=self.persistence,
            notifier=self.notifier,
            cache=self.caches.risk,
        )
        self.scheduler = RiskMonitoringScheduler.from_settings(
            self.config, self.risk_monitor, self.vpp_source
        )
        self.optimizer = PortfolioOptimizer.from_settings(self.config)
        self.analyzer = (
            SensitivityAnalyzer.from_settings(self.config, self.valuation_model)
            if self.valuation_model is not None
            else None
        )
        self.stress_engine = StressTestEngine.from_settings(self.config, self.baseline_source)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def initialize(self, start_monitoring: bool | None = None) -> dict[str, Any]:
        """Load persisted configuration, optionally start monitoring, announce.

        A failing configuration load is logged and the current configuration
        is kept.
        """
        configure_logging(debug=self.config.debug, json_output=self.config.log_json)
        if self.persistence is not None:
            try:
                overrides = await resolve(self.persistence.load_config())
            except Exception as exc:
                logger.warning("config_load_failed", error=str(exc))
                overrides = None
            if overrides:
                self.config = self.config.merged(overrides)
                if self.scheduler.is_running:
                    await self.scheduler.stop()
                self._build()
                logger.info("config_overrides_applied", sections=sorted(overrides))

        start = self.config.start_monitoring_on_init if start_monitoring is None else start_monitoring
        if start:
            self.scheduler.start()

        self.initialized = True
        status = self.get_service_status()
        await self.notifier.publish(EventKind.SERVICE_INITIALIZED, status)
        logger.info("analytics_service_initialized", monitoring=start)
        return status

    async def stop(self) -> None:
        """Stop monitoring, clear caches and announce the shutdown."""
        await self.scheduler.stop()
        self.caches.clear()
        self.initialized = False
        await self.notifier.publish(
            EventKind.SERVICE_STOPPED,
            {"service": self.config.project_name, "timestamp": _now_iso()},
        )
        logger.info("analytics_service_stopped")

    async def save_configuration(self) -> dict[str, Any]:
        """Persist the current configuration through the sink."""
        if self.persistence is None:
            raise AnalyticsError("no persistence sink configured")
        payload = self.config.to_persisted()
        await resolve(self.persistence.save_config(payload))
        return payload

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def monitor_risk(
        self,
        vpp_id: str,
        risk_types: Iterable[RiskType | str] | None = None,
        use_cache: bool = True,
    ) -> RiskMonitoringReport:
        """Run (or reuse, within the cache TTL) a monitoring pass for *vpp_id*.

        Only passes over all risk types are cached.
        """
        if risk_types is not None or not use_cache:
            return await self.risk_monitor.monitor(vpp_id, risk_types)
        key = self.caches.risk.key(vpp_id, RISK_ANALYSIS)
        return await self.caches.risk.get_or_compute(
            key, lambda: self.risk_monitor.monitor(vpp_id)
        )

    async def optimize_portfolio(
        self,
        vpp_id: str,
        method: OptimizationMethod | str | None = None,
        target_return: float | None = None,
        risk_tolerance: float | None = None,
        constraints: PortfolioConstraints | Mapping[str, Any] | None = None,
        include_frontier: bool = False,
    ) -> OptimizationResult:
        """Optimize the VPP's asset weights from its portfolio source."""
        po = self.config.portfolio_optimization
        opt_method = parse_method(method or po.default_method)
        target = po.target_return if target_return is None else target_return
        params = {
            "target_return": target,
            "risk_tolerance": risk_tolerance,
            "constraints": constraints,
            "include_frontier": include_frontier,
        }

        async def compute() -> OptimizationResult:
            assets = await call_collaborator(
                self.portfolio_source.get_portfolio_assets,
                vpp_id,
                attempts=self.config.risk_monitoring.collaborator_retry_attempts,
                wait_seconds=self.config.risk_monitoring.collaborator_retry_wait_seconds,
            )
            mu, sigma = estimate_inputs(assets)
            result = self.optimizer.optimize(
                opt_method,
                assets,
                mu,
                sigma,
                target_return=target,
                risk_tolerance=risk_tolerance,
                constraints=constraints,
            )
            if include_frontier:
                result.details["efficient_frontier"] = self.optimizer.efficient_frontier(
                    mu, sigma, constraints=constraints
                )
            return result

        key = self.caches.optimization.key(vpp_id, opt_method.value, params)
        return await self.caches.optimization.get_or_compute(key, compute)

    async def analyze_sensitivity(
        self,
        vpp_id: str,
        parameters: Sequence[ParameterSpec | Mapping[str, Any]],
        analysis_type: str | None = None,
        output_metrics: Sequence[str] | None = None,
        sample_size: int | None = None,
        seed: int | None = None,
        confidence_level: float | None = None,
        timeout: float | None = None,
    ) -> SensitivityResult:
        """Sensitivity analysis; seeded runs are cached."""
        if self.analyzer is None:
            raise AnalyticsError("no valuation model configured for sensitivity analysis")

        async def compute() -> SensitivityResult:
            return await self.analyzer.analyze(
                vpp_id,
                analysis_type,
                parameters,
                output_metrics,
                sample_size,
                seed=seed,
                confidence_level=confidence_level,
                timeout=timeout,
            )

        if seed is None:
            return await compute()
        params = {
            "parameters": [asdict(ParameterSpec.from_mapping(p)) for p in parameters],
            "output_metrics": list(output_metrics) if output_metrics is not None else None,
            "sample_size": sample_size,
            "seed": seed,
            "confidence_level": confidence_level,
        }
        key = self.caches.sensitivity.key(vpp_id, str(analysis_type), params)
        result = await self.caches.sensitivity.get_or_compute(key, compute)
        if result.timed_out:
            # Partial results are not reused
            self.caches.sensitivity.discard(key)
        return result

    async def run_scenario(
        self,
        vpp_id: str,
        scenario: StressScenario | str | Mapping[str, Any],
        time_horizon_days: int | None = None,
    ) -> StressTestResult:
        """Apply a single stress scenario to the VPP's current baseline."""
        return await self.stress_engine.run_scenario(vpp_id, scenario, time_horizon_days)

    async def run_stress_test(
        self,
        vpp_id: str,
        scenarios: Iterable[StressScenario | str | Mapping[str, Any]] | None = None,
        time_horizon_days: int | None = None,
    ) -> StressTestReport:
        """Run several scenarios from one baseline (cached per scenario set)."""
        specs = list(scenarios) if scenarios is not None else None
        params = {"scenarios": specs, "time_horizon_days": time_horizon_days}
        key = self.caches.stress.key(vpp_id, "stress_test", params)
        return await self.caches.stress.get_or_compute(
            key,
            lambda: self.stress_engine.run_stress_test(vpp_id, specs, time_horizon_days),
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def get_service_status(self) -> dict[str, Any]:
        last_tick = self.scheduler.last_report
        return {
            "service": self.config.project_name,
            "version": SERVICE_VERSION,
            "initialized": self.initialized,
            "monitoring_active": self.scheduler.is_running,
            "scheduler_state": self.scheduler.state.value,
            "last_tick": None if last_tick is None else last_tick.tick,
            "cache_sizes": self.caches.sizes(),
            "configuration": self.config.to_persisted(),
            "timestamp": _now_iso(),
        }


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

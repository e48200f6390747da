"""Named adverse-scenario stress testing for VPPs.

Each scenario type is a shock profile: coefficients per unit severity that
move revenue, profit and liquidity relative to their baseline magnitude and
move the risk score by an absolute amount. Applying a scenario never
mutates the baseline snapshot; the stressed state is a new object.

Impact severity buckets on the largest absolute impact:
- LOW: < 0.10
- MEDIUM: < 0.25
- HIGH: < 0.50
- SEVERE: otherwise

Recovery time scales the scenario's table estimate by
severity / default severity, rounded up to whole days. Revenue is treated as
a daily rate recovering linearly to baseline over the recovery time.

Stress tests are advisory only. Scenarios are independent of each other.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

import numpy as np
import structlog

from vpp_analytics.core.config import Settings, StressTestSettings
from vpp_analytics.core.enums import ImpactSeverity, StressScenarioType
from vpp_analytics.core.exceptions import InputValidationError
from vpp_analytics.core.interfaces import BaselineStateSource
from vpp_analytics.core.retry import call_collaborator

logger = structlog.get_logger(__name__)

RELATIVE_FIELDS = ("revenue", "profit", "liquidity")
ABSOLUTE_FIELDS = ("risk",)


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ShockProfile:
    """Per-unit-severity shock coefficients of a scenario type.

    Relative fields move by ``coef * severity * |baseline|``; risk moves by
    ``coef * severity``.
    """

    revenue: float
    profit: float
    liquidity: float
    risk: float


DEFAULT_PROFILES: dict[StressScenarioType, ShockProfile] = {
    StressScenarioType.MARKET_CRASH: ShockProfile(revenue=-1.0, profit=-1.5, liquidity=-0.5, risk=0.5),
    StressScenarioType.EXTREME_WEATHER: ShockProfile(revenue=-0.8, profit=-1.0, liquidity=-0.2, risk=0.4),
    StressScenarioType.REGULATORY_CHANGE: ShockProfile(revenue=-0.3, profit=-1.0, liquidity=-0.2, risk=0.3),
    StressScenarioType.TECHNICAL_FAILURE: ShockProfile(revenue=-0.9, profit=-1.2, liquidity=-0.3, risk=0.5),
    StressScenarioType.LIQUIDITY_CRISIS: ShockProfile(revenue=-0.2, profit=-0.4, liquidity=-1.0, risk=0.6),
    StressScenarioType.CYBER_ATTACK: ShockProfile(revenue=-0.7, profit=-1.0, liquidity=-0.3, risk=0.8),
}


@dataclass(frozen=True)
class StressScenario:
    """A scenario instance: type, severity in [0, 1] and horizon."""

    type: StressScenarioType
    severity: float
    time_horizon_days: int = 30

    def __post_init__(self) -> None:
        if not (0.0 <= self.severity <= 1.0):
            raise InputValidationError(f"severity must be in [0, 1], got {self.severity}")
        if self.time_horizon_days < 0:
            raise InputValidationError("time_horizon_days must be non-negative")


@dataclass(frozen=True)
class BaselineState:
    """Snapshot of a VPP's financial/operational state."""

    revenue: float
    profit: float
    risk: float
    liquidity: float

    @classmethod
    def from_mapping(cls, data: BaselineState | Mapping[str, Any]) -> BaselineState:
        if isinstance(data, BaselineState):
            return data
        try:
            values = {f.name: float(data[f.name]) for f in fields(cls)}
        except (KeyError, TypeError, ValueError) as exc:
            raise InputValidationError(f"Malformed baseline state {data!r}") from exc
        if not all(math.isfinite(v) for v in values.values()):
            raise InputValidationError("baseline state values must be finite")
        return cls(**values)

    def as_dict(self) -> dict[str, float]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class StressTestResult:
    """Outcome of applying one scenario to one baseline.

    Attributes:
        impact: Relative deltas for revenue/profit/liquidity, absolute for risk.
        recovery_time_days: Days to return to baseline.
        severity_assessment: Bucket of the largest absolute impact.
        horizon_revenue_loss: Revenue lost within the horizon.
        recovers_within_horizon: Whether recovery completes within the horizon.
    """

    vpp_id: str
    scenario: StressScenario
    baseline: BaselineState
    stressed: BaselineState
    impact: dict[str, float]
    recovery_time_days: int
    severity_assessment: ImpactSeverity
    horizon_revenue_loss: float
    recovers_within_horizon: bool
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def impact_magnitude(self) -> float:
        return max((abs(v) for v in self.impact.values()), default=0.0)


@dataclass
class StressTestReport:
    """Several scenarios run from one baseline, with aggregates.

    Attributes:
        mean_impact: Mean impact per field across scenarios.
        worst_impact: Largest-magnitude impact per field across scenarios.
        worst_case: Scenario result with the largest impact magnitude.
        resilience_score: 1 - mean impact magnitude, clipped to [0, 1].
    """

    vpp_id: str
    baseline: BaselineState
    results: list[StressTestResult]
    mean_impact: dict[str, float]
    worst_impact: dict[str, float]
    worst_case: StressTestResult | None
    resilience_score: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Pure computation functions
# ---------------------------------------------------------------------------
def classify_impact(magnitude: float) -> ImpactSeverity:
    if magnitude < 0.10:
        return ImpactSeverity.LOW
    if magnitude < 0.25:
        return ImpactSeverity.MEDIUM
    if magnitude < 0.50:
        return ImpactSeverity.HIGH
    return ImpactSeverity.SEVERE


def apply_shock(
    baseline: BaselineState, profile: ShockProfile, severity: float
) -> tuple[BaselineState, dict[str, float]]:
    """Return the stressed state and the impact of *profile* at *severity*."""
    stressed: dict[str, float] = {}
    impact: dict[str, float] = {}
    for name in RELATIVE_FIELDS:
        base = getattr(baseline, name)
        delta = getattr(profile, name) * severity * abs(base)
        stressed[name] = base + delta
        # Scaled by |baseline| so a negative baseline moves further from zero
        impact[name] = 0.0 if base == 0 else delta / abs(base)
    for name in ABSOLUTE_FIELDS:
        delta = getattr(profile, name) * severity
        stressed[name] = getattr(baseline, name) + delta
        impact[name] = delta
    return BaselineState(**stressed), impact


def recovery_days(base_days: int, severity: float, default_severity: float) -> int:
    """Table estimate scaled by severity / default severity, rounded up."""
    if severity <= 0 or base_days <= 0:
        return 0
    scale = severity / default_severity if default_severity > 0 else 1.0
    return int(math.ceil(base_days * scale - 1e-9))


def horizon_revenue_loss(daily_loss: float, recovery: int, horizon: int) -> float:
    """Revenue lost over *horizon* days with a loss fading linearly to zero."""
    if recovery <= 0 or horizon <= 0 or daily_loss <= 0:
        return 0.0
    m = min(horizon, recovery)
    return float(daily_loss * (m - m * m / (2.0 * recovery)))


# ---------------------------------------------------------------------------
# StressTestEngine
# ---------------------------------------------------------------------------
class StressTestEngine:
    """Applies named scenarios to VPP baseline states.

    Args:
        baseline_source: Collaborator providing baseline states.
        config: Scenario table (severities, recovery days, horizon).
        profiles: Shock profile per scenario type.
    """

    def __init__(
        self,
        baseline_source: BaselineStateSource | None = None,
        config: StressTestSettings | None = None,
        profiles: Mapping[StressScenarioType, ShockProfile] | None = None,
        retry_attempts: int = 3,
        retry_wait_seconds: float = 0.1,
    ) -> None:
        self.baseline_source = baseline_source
        self.config = config or StressTestSettings()
        self.profiles = dict(DEFAULT_PROFILES)
        self.profiles.update(profiles or {})
        self.retry_attempts = retry_attempts
        self.retry_wait_seconds = retry_wait_seconds

    @classmethod
    def from_settings(
        cls, config: Settings, baseline_source: BaselineStateSource | None = None
    ) -> StressTestEngine:
        rm = config.risk_monitoring
        return cls(
            baseline_source,
            config=config.stress_test,
            retry_attempts=rm.collaborator_retry_attempts,
            retry_wait_seconds=rm.collaborator_retry_wait_seconds,
        )

    def make_scenario(
        self,
        scenario: StressScenario | StressScenarioType | str | Mapping[str, Any],
        time_horizon_days: int | None = None,
    ) -> StressScenario:
        """Resolve a scenario spec, filling severity/horizon from the table."""
        horizon = (
            self.config.default_time_horizon_days
            if time_horizon_days is None
            else int(time_horizon_days)
        )
        if isinstance(scenario, StressScenario):
            if time_horizon_days is None:
                return scenario
            return StressScenario(scenario.type, scenario.severity, horizon)

        severity = None
        if isinstance(scenario, Mapping):
            raw_type = scenario.get("type")
            severity = scenario.get("severity")
            if time_horizon_days is None and scenario.get("time_horizon_days") is not None:
                horizon = int(scenario["time_horizon_days"])
        else:
            raw_type = scenario
        try:
            scenario_type = StressScenarioType(raw_type)
        except ValueError as exc:
            raise InputValidationError(f"Unknown stress scenario '{raw_type}'") from exc

        if severity is None:
            severity = self.config.scenario_severity.get(scenario_type)
            if severity is None:
                raise InputValidationError(f"No default severity for '{scenario_type.value}'")
        return StressScenario(scenario_type, float(severity), horizon)

    def apply(
        self, vpp_id: str, baseline: BaselineState, scenario: StressScenario
    ) -> StressTestResult:
        """Pure application of *scenario* to *baseline*."""
        profile = self.profiles.get(scenario.type)
        if profile is None:
            raise InputValidationError(f"No shock profile for '{scenario.type.value}'")

        stressed, impact = apply_shock(baseline, profile, scenario.severity)
        recovery = recovery_days(
            self.config.recovery_time_estimates.get(scenario.type, 0),
            scenario.severity,
            self.config.scenario_severity.get(scenario.type, scenario.severity),
        )
        magnitude = max(abs(v) for v in impact.values())
        daily_loss = baseline.revenue - stressed.revenue
        result = StressTestResult(
            vpp_id=vpp_id,
            scenario=scenario,
            baseline=baseline,
            stressed=stressed,
            impact=impact,
            recovery_time_days=recovery,
            severity_assessment=classify_impact(magnitude),
            horizon_revenue_loss=horizon_revenue_loss(
                daily_loss, recovery, scenario.time_horizon_days
            ),
            recovers_within_horizon=recovery <= scenario.time_horizon_days,
        )
        logger.info(
            "stress_scenario_applied",
            vpp_id=vpp_id,
            scenario=scenario.type.value,
            severity=scenario.severity,
            severity_assessment=result.severity_assessment.value,
            recovery_time_days=recovery,
        )
        return result

    async def load_baseline(self, vpp_id: str) -> BaselineState:
        """Fetch and freeze the baseline state of *vpp_id*."""
        if self.baseline_source is None:
            raise InputValidationError("no baseline source configured and no baseline given")
        raw = await call_collaborator(
            self.baseline_source.get_baseline_state,
            vpp_id,
            attempts=self.retry_attempts,
            wait_seconds=self.retry_wait_seconds,
        )
        return BaselineState.from_mapping(raw)

    async def run_scenario(
        self,
        vpp_id: str,
        scenario: StressScenario | StressScenarioType | str | Mapping[str, Any],
        time_horizon_days: int | None = None,
        baseline: BaselineState | Mapping[str, Any] | None = None,
    ) -> StressTestResult:
        """Run one scenario against the VPP's (or the given) baseline."""
        resolved = self.make_scenario(scenario, time_horizon_days)
        state = (
            BaselineState.from_mapping(baseline)
            if baseline is not None
            else await self.load_baseline(vpp_id)
        )
        return self.apply(vpp_id, state, resolved)

    async def run_stress_test(
        self,
        vpp_id: str,
        scenarios: Iterable[StressScenario | StressScenarioType | str | Mapping[str, Any]] | None = None,
        time_horizon_days: int | None = None,
        baseline: BaselineState | Mapping[str, Any] | None = None,
    ) -> StressTestReport:
        """Run several scenarios from one baseline snapshot and aggregate."""
        specs = list(scenarios) if scenarios is not None else list(self.config.default_scenarios)
        if not specs:
            raise InputValidationError("at least one scenario is required")
        resolved = [self.make_scenario(s, time_horizon_days) for s in specs]
        state = (
            BaselineState.from_mapping(baseline)
            if baseline is not None
            else await self.load_baseline(vpp_id)
        )
        results = [self.apply(vpp_id, state, s) for s in resolved]
        report = aggregate_results(vpp_id, state, results)

        logger.info(
            "stress_test_completed",
            vpp_id=vpp_id,
            n_scenarios=len(results),
            worst_case=report.worst_case.scenario.type.value if report.worst_case else None,
            resilience_score=round(report.resilience_score, 4),
        )
        return report


def aggregate_results(
    vpp_id: str, baseline: BaselineState, results: list[StressTestResult]
) -> StressTestReport:
    """Mean/worst impact per field, worst case and resilience score."""
    names = RELATIVE_FIELDS + ABSOLUTE_FIELDS
    if not results:
        zeros = {name: 0.0 for name in names}
        return StressTestReport(vpp_id, baseline, [], zeros, dict(zeros), None, 1.0)

    matrix = np.array([[r.impact[name] for name in names] for r in results])
    mean_impact = dict(zip(names, matrix.mean(axis=0).tolist()))
    worst_rows = np.argmax(np.abs(matrix), axis=0)
    worst_impact = {name: float(matrix[worst_rows[j], j]) for j, name in enumerate(names)}
    worst_case = max(results, key=lambda r: r.impact_magnitude)
    mean_magnitude = float(np.mean([r.impact_magnitude for r in results]))
    return StressTestReport(
        vpp_id=vpp_id,
        baseline=baseline,
        results=results,
        mean_impact=mean_impact,
        worst_impact=worst_impact,
        worst_case=worst_case,
        resilience_score=min(max(1.0 - mean_magnitude, 0.0), 1.0),
    )

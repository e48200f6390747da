"""Shared enumerations used across the analytics modules.

All enums use the (str, Enum) mixin pattern so their values are
serializable strings, compatible with persistence sinks and JSON output.
"""

from enum import Enum


class RiskType(str, Enum):
    """Risk categories scored for every VPP."""

    MARKET = "market"
    CREDIT = "credit"
    OPERATIONAL = "operational"
    LIQUIDITY = "liquidity"
    REGULATORY = "regulatory"
    WEATHER = "weather"
    TECHNICAL = "technical"


class RiskLevel(str, Enum):
    """Four-level risk scale.

    Thresholds relative to the per-type threshold T:
    - CRITICAL: score >= 1.2 T
    - HIGH: score >= T
    - MEDIUM: score >= 0.7 T
    - LOW: otherwise
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Ordinal position on the scale (LOW=0 ... CRITICAL=3)."""
        return _LEVEL_RANK[self]


_LEVEL_RANK = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


class DataQuality(str, Enum):
    """Quality flag carried by metrics, assessments, alerts and reports."""

    OK = "ok"
    INSUFFICIENT = "insufficient"
    UNAVAILABLE = "unavailable"


class TrendDirection(str, Enum):
    """Direction of a risk score between two monitoring cycles."""

    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class OptimizationMethod(str, Enum):
    """Portfolio weight-generation strategies."""

    MEAN_VARIANCE = "mean_variance"
    RISK_PARITY = "risk_parity"
    BLACK_LITTERMAN = "black_litterman"
    HIERARCHICAL_RISK_PARITY = "hierarchical_risk_parity"
    CONDITIONAL_VALUE_AT_RISK = "cvar"


class SensitivityAnalysisType(str, Enum):
    """Sensitivity designs selectable by the analyzer."""

    LOCAL = "local_sensitivity"
    GLOBAL = "global_sensitivity"
    VARIANCE_BASED = "variance_based"
    MORRIS_METHOD = "morris_method"


class StressScenarioType(str, Enum):
    """Named adverse scenarios supported by the stress test engine."""

    MARKET_CRASH = "market_crash"
    EXTREME_WEATHER = "extreme_weather"
    REGULATORY_CHANGE = "regulatory_change"
    TECHNICAL_FAILURE = "technical_failure"
    LIQUIDITY_CRISIS = "liquidity_crisis"
    CYBER_ATTACK = "cyber_attack"


class ImpactSeverity(str, Enum):
    """Categorical bucketing of stress impact magnitude.

    Cut points on the largest absolute impact:
    - LOW: < 0.10
    - MEDIUM: 0.10 <= x < 0.25
    - HIGH: 0.25 <= x < 0.50
    - SEVERE: >= 0.50
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    SEVERE = "severe"


class SchedulerState(str, Enum):
    """States of the periodic risk monitoring loop."""

    IDLE = "idle"
    SCANNING = "scanning"
    EVALUATING = "evaluating"
    ALERTING = "alerting"
    STOPPED = "stopped"


class EventKind(str, Enum):
    """Events published on the notifier for external subscribers."""

    RISK_ALERT = "risk_alert"
    SERVICE_INITIALIZED = "service_initialized"
    SERVICE_STOPPED = "service_stopped"

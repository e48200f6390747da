"""Risk package -- metrics, level assessment, trends, alerts, and monitoring."""

from vpp_analytics.risk.alert_dispatcher import Alert, AlertDispatcher, AlertRule
from vpp_analytics.risk.assessor import (
    LevelRatios,
    RiskAssessment,
    RiskAssessor,
    classify_level,
)
from vpp_analytics.risk.metric_calculator import (
    RiskMetric,
    RiskMetricCalculator,
    compute_historical_var,
    compute_market_risk,
)
from vpp_analytics.risk.risk_monitor import (
    RiskEvaluation,
    RiskMonitor,
    RiskMonitoringReport,
)
from vpp_analytics.risk.trends import RiskTrend, RiskTrendAnalyzer

__all__ = [
    "Alert",
    "AlertDispatcher",
    "AlertRule",
    "LevelRatios",
    "RiskAssessment",
    "RiskAssessor",
    "RiskEvaluation",
    "RiskMetric",
    "RiskMetricCalculator",
    "RiskMonitor",
    "RiskMonitoringReport",
    "RiskTrend",
    "RiskTrendAnalyzer",
    "classify_level",
    "compute_historical_var",
    "compute_market_risk",
]

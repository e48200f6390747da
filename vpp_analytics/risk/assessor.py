"""Threshold-relative risk level assignment.

The level of each risk type is determined by its score relative to the
type's alert threshold T:
- CRITICAL: score >= 1.2 T
- HIGH: score >= T
- MEDIUM: score >= 0.7 T
- LOW: otherwise

Market score is the mean of VaR, CVaR and volatility; every other type uses
the metric's ``score`` directly.

All functions are pure computation -- no I/O or collaborator access.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

import structlog

from vpp_analytics.core.enums import DataQuality, RiskLevel, RiskType
from vpp_analytics.core.exceptions import InputValidationError
from vpp_analytics.risk.metric_calculator import RiskMetric

logger = structlog.get_logger(__name__)

DEFAULT_THRESHOLD = 0.8


@dataclass(frozen=True)
class LevelRatios:
    """Multipliers of the threshold T at which each level starts."""

    critical: float = 1.2
    high: float = 1.0
    medium: float = 0.7

    def __post_init__(self) -> None:
        if not (0 < self.medium <= self.high <= self.critical):
            raise InputValidationError(
                "level ratios must satisfy 0 < medium <= high <= critical, "
                f"got {self.medium}/{self.high}/{self.critical}"
            )


@dataclass(frozen=True)
class RiskAssessment:
    """Level assigned to one risk type.

    Attributes:
        risk_type: Category assessed.
        level: Assigned level.
        score: Scalar score the level was derived from.
        threshold: Threshold T used for the classification.
        metric: The metric the score came from.
    """

    risk_type: RiskType
    level: RiskLevel
    score: float
    threshold: float
    metric: RiskMetric

    @property
    def needs_attention(self) -> bool:
        return self.level in (RiskLevel.HIGH, RiskLevel.CRITICAL)

    @property
    def data_quality(self) -> DataQuality:
        return self.metric.data_quality


def score_metric(metric: RiskMetric) -> float:
    """Collapse a metric into the scalar compared against thresholds."""
    if metric.risk_type == RiskType.MARKET:
        return (metric.var + metric.cvar + metric.volatility) / 3.0
    return metric.score


def classify_level(
    score: float, threshold: float, ratios: LevelRatios = LevelRatios()
) -> RiskLevel:
    """Map a score to a RiskLevel relative to *threshold*.

    Monotone in *score*: a higher score never yields a lower level.
    """
    if threshold <= 0:
        raise InputValidationError(f"threshold must be positive, got {threshold}")
    if score >= ratios.critical * threshold:
        return RiskLevel.CRITICAL
    if score >= ratios.high * threshold:
        return RiskLevel.HIGH
    if score >= ratios.medium * threshold:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def overall_level(assessments: Mapping[RiskType, RiskAssessment]) -> RiskLevel:
    """Highest level across all assessments (LOW when empty)."""
    if not assessments:
        return RiskLevel.LOW
    return max((a.level for a in assessments.values()), key=lambda lvl: lvl.rank)


class RiskAssessor:
    """Assigns a RiskLevel per risk type from metrics and thresholds.

    Args:
        ratios: Level multipliers; fixed for the lifetime of the assessor.
        default_threshold: Threshold used when a risk type has none configured.
    """

    def __init__(
        self,
        ratios: LevelRatios | None = None,
        default_threshold: float = DEFAULT_THRESHOLD,
    ) -> None:
        if default_threshold <= 0:
            raise InputValidationError(
                f"default_threshold must be positive, got {default_threshold}"
            )
        self.ratios = ratios or LevelRatios()
        self.default_threshold = default_threshold

    def assess(
        self,
        metrics: Mapping[RiskType, RiskMetric],
        thresholds: Mapping[RiskType | str, float] | None = None,
    ) -> dict[RiskType, RiskAssessment]:
        """Assess every metric against its threshold.

        Args:
            metrics: Metrics keyed by risk type.
            thresholds: Per-type thresholds; missing types use the default.

        Returns:
            Assessments keyed by risk type, in the order of *metrics*.
        """
        resolved = {RiskType(k): float(v) for k, v in (thresholds or {}).items()}
        assessments: dict[RiskType, RiskAssessment] = {}
        for risk_type, metric in metrics.items():
            threshold = resolved.get(risk_type, self.default_threshold)
            score = score_metric(metric)
            assessments[risk_type] = RiskAssessment(
                risk_type=risk_type,
                level=classify_level(score, threshold, self.ratios),
                score=score,
                threshold=threshold,
                metric=metric,
            )

        flagged = [rt.value for rt, a in assessments.items() if a.needs_attention]
        if flagged:
            logger.info("risk_attention_required", risk_types=flagged)
        return assessments

"""Score trend detection between consecutive monitoring cycles."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping

from vpp_analytics.core.enums import RiskType, TrendDirection
from vpp_analytics.risk.assessor import RiskAssessment

STABLE_BAND = 0.05


@dataclass(frozen=True)
class RiskTrend:
    """Change of one risk type's score since the previous cycle."""

    risk_type: RiskType
    direction: TrendDirection
    change_rate: float
    previous_score: float | None
    current_score: float


def classify_trend(
    previous: float | None, current: float, stable_band: float = STABLE_BAND
) -> tuple[TrendDirection, float]:
    """Direction and relative change from *previous* to *current*.

    First observations (no previous score) are stable. A zero previous score
    counts any positive current score as a full (+100%) increase.
    """
    if previous is None:
        return TrendDirection.STABLE, 0.0
    if previous == 0:
        change = 1.0 if current > 0 else 0.0
    else:
        change = (current - previous) / abs(previous)
    if change > stable_band:
        return TrendDirection.INCREASING, change
    if change < -stable_band:
        return TrendDirection.DECREASING, change
    return TrendDirection.STABLE, change


class RiskTrendAnalyzer:
    """Keeps the last score per (vpp, risk type) and derives trends.

    Args:
        stable_band: Relative change within which a trend is stable.
    """

    def __init__(self, stable_band: float = STABLE_BAND) -> None:
        self.stable_band = stable_band
        self._last_scores: dict[tuple[str, RiskType], float] = {}

    def analyze(
        self, vpp_id: str, assessments: Mapping[RiskType, RiskAssessment]
    ) -> dict[RiskType, RiskTrend]:
        """Compare *assessments* with the previous cycle and remember them."""
        trends: dict[RiskType, RiskTrend] = {}
        for risk_type, assessment in assessments.items():
            previous = self._last_scores.get((vpp_id, risk_type))
            direction, change = classify_trend(previous, assessment.score, self.stable_band)
            trends[risk_type] = RiskTrend(
                risk_type=risk_type,
                direction=direction,
                change_rate=change,
                previous_score=previous,
                current_score=assessment.score,
            )
            self._last_scores[(vpp_id, risk_type)] = assessment.score
        return trends

    def reset(self, vpp_id: str | None = None) -> None:
        if vpp_id is None:
            self._last_scores.clear()
            return
        for key in [k for k in self._last_scores if k[0] == vpp_id]:
            del self._last_scores[key]

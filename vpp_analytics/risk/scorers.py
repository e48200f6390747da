"""Category scorers for non-market risk types.

Each scorer collapses a signal series (newest first) into a single score in
[0, 1]. Scorers are pure functions of their input array -- no hidden state,
no randomness -- so the same snapshot always produces the same score.

Signal semantics per category:
- credit: counterparty exposure as a fraction of the credit limit
- operational: incidents per day
- liquidity: liquidity coverage ratio (liquid assets / obligations)
- regulatory: compliance level in [0, 1] (1 = fully compliant)
- weather: forecast severity index in [0, 1], nearest forecast first
- technical: fraction of devices in a failed state
"""

from __future__ import annotations

import math
from typing import Callable

import numpy as np
import pandas as pd

from vpp_analytics.core.enums import RiskType

EWM_HALFLIFE = 5.0
OPERATIONAL_RATE_SCALE = 1.0
LIQUIDITY_TARGET_COVERAGE = 1.5
REGULATORY_VIOLATION_LEVEL = 0.8
WEATHER_LOOKAHEAD = 7


def _clip01(x: float) -> float:
    if not math.isfinite(x):
        return 0.0
    return float(min(max(x, 0.0), 1.0))


def _latest_ewm(values: np.ndarray, halflife: float = EWM_HALFLIFE) -> float:
    """Exponentially weighted mean ending at the newest observation."""
    # Input is newest first; ewm runs oldest -> newest
    series = pd.Series(values[::-1], dtype="float64")
    return float(series.ewm(halflife=halflife).mean().iloc[-1])


def credit_score(exposure_ratios: np.ndarray) -> float:
    """EWM exposure ratio; 1.0 means exposure at or above the credit limit."""
    if len(exposure_ratios) == 0:
        return 0.0
    return _clip01(_latest_ewm(exposure_ratios))


def operational_score(
    incident_rates: np.ndarray, scale: float = OPERATIONAL_RATE_SCALE
) -> float:
    """Saturating transform of the mean incident rate: 1 - exp(-rate/scale)."""
    if len(incident_rates) == 0:
        return 0.0
    rate = max(float(np.mean(incident_rates)), 0.0)
    return _clip01(1.0 - math.exp(-rate / scale))


def liquidity_score(
    coverage_ratios: np.ndarray, target_coverage: float = LIQUIDITY_TARGET_COVERAGE
) -> float:
    """Shortfall of the current coverage ratio against *target_coverage*."""
    if len(coverage_ratios) == 0:
        return 0.0
    coverage = _latest_ewm(coverage_ratios)
    return _clip01((target_coverage - coverage) / target_coverage)


def regulatory_score(
    compliance_levels: np.ndarray,
    violation_level: float = REGULATORY_VIOLATION_LEVEL,
) -> float:
    """Blend of average non-compliance and the share of violating periods."""
    if len(compliance_levels) == 0:
        return 0.0
    levels = np.clip(compliance_levels, 0.0, 1.0)
    non_compliance = 1.0 - float(np.mean(levels))
    violation_share = float(np.mean(levels < violation_level))
    return _clip01(0.5 * non_compliance + 0.5 * violation_share)


def weather_score(
    forecast_severity: np.ndarray, lookahead: int = WEATHER_LOOKAHEAD
) -> float:
    """Worst forecast severity within the look-ahead window."""
    if len(forecast_severity) == 0:
        return 0.0
    return _clip01(float(np.max(forecast_severity[:lookahead])))


def technical_score(failure_rates: np.ndarray) -> float:
    """EWM fraction of failed devices."""
    if len(failure_rates) == 0:
        return 0.0
    return _clip01(_latest_ewm(failure_rates))


SCORERS: dict[RiskType, Callable[[np.ndarray], float]] = {
    RiskType.CREDIT: credit_score,
    RiskType.OPERATIONAL: operational_score,
    RiskType.LIQUIDITY: liquidity_score,
    RiskType.REGULATORY: regulatory_score,
    RiskType.WEATHER: weather_score,
    RiskType.TECHNICAL: technical_score,
}

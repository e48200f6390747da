"""Tests for the non-market category scorers.

Covers:
- every scorer stays within [0, 1] and is 0 for empty input
- credit / technical EWM weighting towards the newest observation
- operational saturating transform
- liquidity shortfall against target coverage
- regulatory blend of non-compliance and violation share
- weather look-ahead window
"""

from __future__ import annotations

import math

import numpy as np
import pytest

from vpp_analytics.core.enums import RiskType
from vpp_analytics.risk.scorers import (
    SCORERS,
    credit_score,
    liquidity_score,
    operational_score,
    regulatory_score,
    technical_score,
    weather_score,
)


class TestScorerRegistry:
    """Every non-market risk type has a bounded scorer."""

    def test_all_categories_registered(self):
        assert set(SCORERS) == set(RiskType) - {RiskType.MARKET}

    @pytest.mark.parametrize("risk_type", sorted(SCORERS, key=lambda rt: rt.value))
    def test_bounded_and_empty(self, risk_type):
        scorer = SCORERS[risk_type]
        rng = np.random.default_rng(3)
        for values in (rng.normal(0, 5, 30), np.full(10, 1e6), np.full(10, -1e6)):
            score = scorer(values)
            assert 0.0 <= score <= 1.0
        assert scorer(np.empty(0)) == 0.0


class TestIndividualScorers:
    """Behaviour of individual scorers."""

    def test_credit_weights_newest(self):
        """A recent spike outweighs an old one of the same size."""
        recent_spike = np.array([0.9] + [0.1] * 19)
        old_spike = np.array([0.1] * 19 + [0.9])
        assert credit_score(recent_spike) > credit_score(old_spike)

    def test_technical_constant(self):
        assert technical_score(np.full(15, 0.25)) == pytest.approx(0.25)

    def test_operational_saturation(self):
        assert operational_score(np.full(10, 1.0)) == pytest.approx(1.0 - math.exp(-1.0))
        assert operational_score(np.zeros(10)) == 0.0

    def test_liquidity_shortfall(self):
        """Coverage 0.75 against a 1.5 target is a 50% shortfall."""
        assert liquidity_score(np.full(10, 0.75)) == pytest.approx(0.5)
        assert liquidity_score(np.full(10, 3.0)) == 0.0

    def test_regulatory_blend(self):
        """Compliance 0.5 everywhere: 0.5 * 0.5 + 0.5 * 1.0."""
        assert regulatory_score(np.full(10, 0.5)) == pytest.approx(0.75)
        assert regulatory_score(np.ones(10)) == 0.0

    def test_weather_lookahead(self):
        """Only the nearest seven forecasts count."""
        forecasts = np.array([0.1] * 7 + [1.0])
        assert weather_score(forecasts) == pytest.approx(0.1)
        assert weather_score(np.array([0.2, 0.6, 0.3])) == pytest.approx(0.6)

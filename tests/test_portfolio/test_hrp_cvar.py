"""Tests for the hierarchical risk parity and minimum-CVaR strategies.

Covers:
- correlation_distance and quasi_diagonal_order clustering
- hrp_weights: inverse-variance on a diagonal covariance, correlated blocks
- CVaRStrategy: riskless asset chosen, seeded determinism, bad confidence
- scenario_cvar tail mean
"""

from __future__ import annotations

import numpy as np
import pytest

from vpp_analytics.core.exceptions import InputValidationError
from vpp_analytics.portfolio.cvar import scenario_cvar, simulate_scenarios
from vpp_analytics.portfolio.hrp import correlation_distance, hrp_weights, quasi_diagonal_order
from vpp_analytics.portfolio.optimizer import PortfolioOptimizer


@pytest.fixture
def optimizer() -> PortfolioOptimizer:
    return PortfolioOptimizer(timeout_seconds=None)


# ---------------------------------------------------------------------------
# HRP
# ---------------------------------------------------------------------------
class TestHierarchicalRiskParity:
    """Tests for the HRP building blocks."""

    def test_distance_properties(self):
        cov = np.array([[0.04, 0.04 * 0.5], [0.04 * 0.5, 0.04]])
        dist = correlation_distance(cov)
        np.testing.assert_allclose(np.diag(dist), 0.0, atol=1e-12)
        assert dist[0, 1] == pytest.approx(np.sqrt(0.25))

    def test_diagonal_is_inverse_variance(self):
        variances = np.array([0.01, 0.02, 0.04, 0.08])
        weights = hrp_weights(np.diag(variances))
        expected = (1 / variances) / (1 / variances).sum()
        np.testing.assert_allclose(weights, expected)

    def test_two_assets(self):
        np.testing.assert_allclose(hrp_weights(np.diag([0.01, 0.04])), [0.8, 0.2])

    def test_correlated_blocks_adjacent(self):
        """Highly correlated pairs end up next to each other in the leaf order."""
        vols = np.full(4, 0.2)
        corr = np.array(
            [
                [1.0, 0.1, 0.9, 0.1],
                [0.1, 1.0, 0.1, 0.9],
                [0.9, 0.1, 1.0, 0.1],
                [0.1, 0.9, 0.1, 1.0],
            ]
        )
        order = quasi_diagonal_order(np.outer(vols, vols) * corr)
        assert sorted(order) == [0, 1, 2, 3]
        pos = {asset: i for i, asset in enumerate(order)}
        assert abs(pos[0] - pos[2]) == 1
        assert abs(pos[1] - pos[3]) == 1
        # Symmetric blocks share the budget equally
        weights = hrp_weights(np.outer(vols, vols) * corr)
        np.testing.assert_allclose(weights, 0.25)

    def test_strategy_details(self, optimizer):
        result = optimizer.optimize(
            "hierarchical_risk_parity", ["a", "b", "c"], [0.1, 0.1, 0.1], np.diag([0.01, 0.02, 0.03])
        )
        assert sorted(result.details["order"]) == ["a", "b", "c"]
        assert result.iterations == 1
        assert result.converged


# ---------------------------------------------------------------------------
# CVaR
# ---------------------------------------------------------------------------
class TestCVaR:
    """Tests for the minimum-CVaR strategy."""

    def test_prefers_riskless_asset(self, optimizer):
        scenarios = np.column_stack([np.tile([0.1, -0.1], 100), np.zeros(200)])
        result = optimizer.optimize(
            "cvar",
            ["risky", "cash"],
            [0.0, 0.0],
            np.diag([0.01, 0.0]),
            constraints={"return_scenarios": scenarios},
        )
        np.testing.assert_allclose(result.weights, [0.0, 1.0], atol=1e-6)
        assert result.details["cvar"] == pytest.approx(0.0, abs=1e-9)
        assert result.details["n_scenarios"] == 200
        assert result.converged

    def test_seeded_simulation_deterministic(self, optimizer):
        mu = [0.08, 0.12, 0.05]
        sigma = np.diag([0.04, 0.09, 0.01])
        constraints = {"n_scenarios": 400, "seed": 7}
        first = optimizer.optimize("cvar", ["a", "b", "c"], mu, sigma, constraints=constraints)
        second = optimizer.optimize("cvar", ["a", "b", "c"], mu, sigma, constraints=constraints)
        np.testing.assert_allclose(first.weights, second.weights)
        # The low-volatility asset dominates the minimum-CVaR mix
        assert first.weight_map["c"] == max(first.weights)

    def test_invalid_confidence(self, optimizer):
        with pytest.raises(InputValidationError):
            optimizer.optimize(
                "cvar", ["a", "b"], [0.1, 0.1], np.eye(2) * 0.01, constraints={"cvar_confidence": 1.5}
            )

    def test_scenario_shape_checked(self, optimizer):
        with pytest.raises(InputValidationError):
            optimizer.optimize(
                "cvar",
                ["a", "b"],
                [0.1, 0.1],
                np.eye(2) * 0.01,
                constraints={"return_scenarios": np.zeros((10, 3))},
            )

    def test_scenario_cvar_tail_mean(self):
        scenarios = np.arange(-10, 10, dtype=float).reshape(-1, 1) / 100
        cvar = scenario_cvar(np.array([1.0]), scenarios, 0.9)
        # Worst two losses are 0.10 and 0.09
        assert cvar == pytest.approx(0.095, abs=5e-3)

    def test_simulate_shape(self):
        draws = simulate_scenarios(np.zeros(3), np.eye(3), 50, seed=1)
        assert draws.shape == (50, 3)
        np.testing.assert_allclose(draws, simulate_scenarios(np.zeros(3), np.eye(3), 50, seed=1))

"""SLSQP-based strategies: mean-variance, risk parity, Black-Litterman.

Mean-variance objective (lambda = risk tolerance):
    minimize 0.5 * w^T Sigma w - lambda * mu^T w
with an optional ``mu^T w >= target`` constraint, applied only when the
target is attainable within the weight bounds.

Risk parity objective:
    minimize sum((RC_i - 1/n)^2),  RC_i = w_i * (Sigma w)_i / (w^T Sigma w)

Black-Litterman feeds the posterior returns and covariance to the
mean-variance objective.
"""

from __future__ import annotations

import numpy as np
import structlog

from vpp_analytics.core.enums import OptimizationMethod
from vpp_analytics.portfolio.black_litterman import BlackLitterman, BlackLittermanConfig, parse_views
from vpp_analytics.portfolio.problem import (
    OptimizationProblem,
    OptimizationStrategy,
    StrategyOutcome,
    attainable_return_range,
    run_slsqp,
)

logger = structlog.get_logger(__name__)


class MeanVarianceStrategy(OptimizationStrategy):
    """Markowitz mean-variance utility via SLSQP."""

    method = OptimizationMethod.MEAN_VARIANCE

    def solve(self, problem: OptimizationProblem) -> StrategyOutcome:
        return self.solve_with(problem, problem.expected_returns, problem.covariance)

    def solve_with(
        self,
        problem: OptimizationProblem,
        expected_returns: np.ndarray,
        covariance: np.ndarray,
    ) -> StrategyOutcome:
        """Solve for explicit (mu, Sigma), e.g. a Black-Litterman posterior."""
        mu = np.asarray(expected_returns, dtype=np.float64)
        sigma = np.asarray(covariance, dtype=np.float64)
        lam = problem.risk_tolerance

        def objective(w: np.ndarray) -> float:
            return 0.5 * float(w @ sigma @ w) - lam * float(mu @ w)

        def objective_jac(w: np.ndarray) -> np.ndarray:
            return sigma @ w - lam * mu

        constraints = []
        target = problem.target_return
        if target is not None:
            _, best_return = attainable_return_range(mu, problem.lower, problem.upper)
            if best_return >= target:
                constraints.append(
                    {"type": "ineq", "fun": lambda w: float(mu @ w) - target}
                )
            else:
                logger.warning(
                    "target_return_unattainable",
                    target_return=target,
                    max_attainable=round(best_return, 6),
                )

        return run_slsqp(
            problem,
            objective,
            problem.initial_weights(),
            jac=objective_jac,
            constraints=constraints,
            label=self.method.value,
        )


class RiskParityStrategy(OptimizationStrategy):
    """Equal risk contribution weights via SLSQP."""

    method = OptimizationMethod.RISK_PARITY

    def solve(self, problem: OptimizationProblem) -> StrategyOutcome:
        n = problem.n_assets
        sigma = problem.covariance
        if n <= 1 or np.allclose(sigma, 0.0):
            return StrategyOutcome(weights=problem.initial_weights())

        target_rc = 1.0 / n

        def objective(w: np.ndarray) -> float:
            sigma_w = sigma @ w
            port_var = w @ sigma_w
            if port_var < 1e-16:
                return 0.0
            rc = w * sigma_w / port_var
            return float(np.sum((rc - target_rc) ** 2))

        # Keep long-only weights off zero, where every contribution vanishes
        lower = problem.lower
        if lower >= 0.0:
            lower = max(lower, min(1e-4, 1.0 / n))

        return run_slsqp(
            problem,
            objective,
            problem.initial_weights(),
            lower=lower,
            label=self.method.value,
        )


class BlackLittermanStrategy(OptimizationStrategy):
    """Black-Litterman posterior fed to mean-variance."""

    method = OptimizationMethod.BLACK_LITTERMAN

    def __init__(self, config: BlackLittermanConfig | None = None) -> None:
        self.model = BlackLitterman(config)

    def solve(self, problem: OptimizationProblem) -> StrategyOutcome:
        n = problem.n_assets
        constraints = problem.constraints
        if constraints.market_weights is not None:
            market_weights = np.asarray(constraints.market_weights, dtype=np.float64)
        else:
            market_weights = np.full(n, 1.0 / n)

        views = parse_views(constraints.views, self.model.config.default_view_confidence)
        posterior_mu, posterior_sigma = self.model.posterior(
            views, problem.covariance, market_weights, problem.asset_ids
        )
        outcome = MeanVarianceStrategy().solve_with(problem, posterior_mu, posterior_sigma)
        outcome.details["posterior_returns"] = dict(
            zip(problem.asset_ids, posterior_mu.tolist())
        )
        return outcome

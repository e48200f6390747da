"""Minimum-CVaR allocation via the Rockafellar-Uryasev linear program.

Over S return scenarios r_s and tail confidence beta:

    minimize    zeta + 1 / ((1 - beta) * S) * sum_s u_s
    subject to  u_s >= -r_s^T w - zeta,  u_s >= 0
                sum(w) = 1,  lo <= w <= hi
                mu^T w >= target   (when attainable)

Scenarios come from ``PortfolioConstraints.return_scenarios`` or are drawn
from a seeded multivariate normal N(mu, Sigma).
"""

from __future__ import annotations

import numpy as np
import structlog
from scipy import sparse
from scipy.optimize import linprog

from vpp_analytics.core.enums import OptimizationMethod
from vpp_analytics.core.exceptions import InputValidationError
from vpp_analytics.portfolio.problem import (
    OptimizationProblem,
    OptimizationStrategy,
    StrategyOutcome,
    attainable_return_range,
)

logger = structlog.get_logger(__name__)


def simulate_scenarios(
    expected_returns: np.ndarray,
    covariance: np.ndarray,
    n_scenarios: int,
    seed: int | None,
) -> np.ndarray:
    """Draw (n_scenarios x n) returns from N(mu, Sigma)."""
    rng = np.random.default_rng(seed)
    return rng.multivariate_normal(
        expected_returns, covariance, size=n_scenarios, method="eigh"
    )


def scenario_cvar(weights: np.ndarray, scenarios: np.ndarray, confidence: float) -> float:
    """Empirical CVaR of portfolio losses over the scenarios."""
    losses = -(scenarios @ weights)
    var = float(np.quantile(losses, confidence))
    tail = losses[losses >= var]
    return float(tail.mean()) if len(tail) else var


class CVaRStrategy(OptimizationStrategy):
    """Rockafellar-Uryasev CVaR minimization solved with HiGHS."""

    method = OptimizationMethod.CONDITIONAL_VALUE_AT_RISK

    def solve(self, problem: OptimizationProblem) -> StrategyOutcome:
        constraints = problem.constraints
        n = problem.n_assets
        beta = constraints.cvar_confidence
        if not 0.0 < beta < 1.0:
            raise InputValidationError(f"cvar_confidence must be in (0, 1), got {beta}")

        if constraints.return_scenarios is not None:
            scenarios = np.asarray(constraints.return_scenarios, dtype=np.float64)
            if scenarios.ndim != 2 or scenarios.shape[1] != n:
                raise InputValidationError(
                    f"return_scenarios must be (S x {n}), got {scenarios.shape}"
                )
        else:
            scenarios = simulate_scenarios(
                problem.expected_returns,
                problem.covariance,
                constraints.n_scenarios,
                constraints.seed,
            )
        s = scenarios.shape[0]

        # Variables: [w (n), zeta (1), u (S)]
        c = np.concatenate([np.zeros(n), [1.0], np.full(s, 1.0 / ((1.0 - beta) * s))])
        a_ub = sparse.hstack(
            [
                sparse.csr_matrix(-scenarios),
                sparse.csr_matrix(-np.ones((s, 1))),
                -sparse.identity(s, format="csr"),
            ],
            format="csr",
        )
        b_ub = np.zeros(s)

        mu = problem.expected_returns
        target = problem.target_return
        if target is not None:
            _, best_return = attainable_return_range(mu, problem.lower, problem.upper)
            if best_return >= target:
                row = sparse.csr_matrix(np.concatenate([-mu, [0.0], np.zeros(s)]))
                a_ub = sparse.vstack([a_ub, row], format="csr")
                b_ub = np.append(b_ub, -target)
            else:
                logger.warning("target_return_unattainable", target_return=target)

        a_eq = sparse.csr_matrix(np.concatenate([np.ones(n), [0.0], np.zeros(s)]))
        bounds = [(problem.lower, problem.upper)] * n + [(None, None)] + [(0.0, None)] * s

        options: dict[str, float | int] = {"maxiter": problem.budget.max_iterations}
        remaining = problem.budget.remaining()
        if remaining is not None:
            options["time_limit"] = max(remaining, 1e-3)

        result = linprog(
            c,
            A_ub=a_ub,
            b_ub=b_ub,
            A_eq=a_eq,
            b_eq=[1.0],
            bounds=bounds,
            method="highs",
            options=options,
        )

        timed_out = "time limit" in str(result.message).lower() or problem.budget.expired()
        if result.x is None:
            logger.warning("cvar_lp_failed", status=result.status, message=str(result.message))
            weights = problem.initial_weights()
        else:
            weights = np.asarray(result.x[:n], dtype=np.float64)

        return StrategyOutcome(
            weights=weights,
            converged=result.status == 0,
            iterations=int(getattr(result, "nit", 0) or 0),
            timed_out=timed_out,
            details={
                "cvar": scenario_cvar(weights, scenarios, beta),
                "n_scenarios": s,
                "confidence": beta,
            },
        )

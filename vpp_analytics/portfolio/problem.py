"""Shared building blocks for portfolio weight-generation strategies.

- PortfolioConstraints: caller-supplied bounds and method options
- OptimizationProblem: validated inputs handed to a strategy
- SearchBudget: iteration / wall-clock budget for iterative solvers
- project_weights: Euclidean projection onto {sum(w) = 1, lo <= w <= hi}

This module is pure computation -- no collaborator access.
"""

from __future__ import annotations

import abc
import time
import warnings
from dataclasses import dataclass, field, replace
from typing import Any, Callable, ClassVar, Mapping

import numpy as np
import structlog
from scipy.optimize import minimize

from vpp_analytics.core.enums import OptimizationMethod
from vpp_analytics.core.exceptions import ConvergenceWarning, InputValidationError

logger = structlog.get_logger(__name__)

_BOUND_EPS = 1e-12


# ---------------------------------------------------------------------------
# Constraints
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class PortfolioConstraints:
    """Weight bounds and method-specific options.

    Attributes:
        min_weight: Minimum weight per asset.
        max_weight: Maximum weight per asset.
        allow_short: If False, a negative min_weight is raised to 0.0.
        target_return: Optional minimum portfolio return.
        views: Black-Litterman asset views.
        market_weights: Black-Litterman market weights (equal when omitted).
        cvar_confidence: Tail confidence for the CVaR method.
        return_scenarios: (S x n) return scenarios for the CVaR method.
        n_scenarios: Simulated scenarios when none are supplied.
        seed: Seed for scenario simulation.
    """

    min_weight: float = 0.0
    max_weight: float = 1.0
    allow_short: bool = False
    target_return: float | None = None
    views: tuple[Any, ...] = ()
    market_weights: tuple[float, ...] | None = None
    cvar_confidence: float = 0.95
    return_scenarios: Any = field(default=None, compare=False)
    n_scenarios: int = 2000
    seed: int | None = 42

    @classmethod
    def from_mapping(
        cls,
        data: Mapping[str, Any] | None,
        defaults: PortfolioConstraints | None = None,
    ) -> PortfolioConstraints:
        """Build constraints from a plain dict, ignoring unknown keys.

        Keys absent from *data* take their value from *defaults* when given.
        """
        base = defaults or cls()
        if not data:
            return base
        known = {f for f in cls.__dataclass_fields__}
        kwargs = {k: v for k, v in data.items() if k in known}
        if "views" in kwargs:
            kwargs["views"] = tuple(kwargs["views"] or ())
        if kwargs.get("market_weights") is not None:
            kwargs["market_weights"] = tuple(float(x) for x in kwargs["market_weights"])
        return replace(base, **kwargs)

    @property
    def bounds(self) -> tuple[float, float]:
        lower = self.min_weight if self.allow_short else max(self.min_weight, 0.0)
        return float(lower), float(self.max_weight)


def check_feasible_bounds(n: int, lower: float, upper: float) -> None:
    """Raise unless ``n * lower <= 1 <= n * upper`` and ``lower <= upper``."""
    if lower > upper:
        raise InputValidationError(f"min_weight {lower} exceeds max_weight {upper}")
    if n * lower > 1.0 + _BOUND_EPS or n * upper < 1.0 - _BOUND_EPS:
        raise InputValidationError(
            f"weight bounds [{lower}, {upper}] cannot sum to 1 across {n} assets"
        )


def project_weights(v: np.ndarray, lower: float, upper: float) -> np.ndarray:
    """Euclidean projection of *v* onto the capped simplex.

    Finds tau such that ``sum(clip(v - tau, lower, upper)) == 1`` by
    bisection; the sum is non-increasing in tau.
    """
    v = np.asarray(v, dtype=np.float64).copy()
    n = len(v)
    check_feasible_bounds(n, lower, upper)
    v[~np.isfinite(v)] = 0.0

    lo_tau = float(v.min()) - upper
    hi_tau = float(v.max()) - lower
    for _ in range(200):
        tau = 0.5 * (lo_tau + hi_tau)
        if np.clip(v - tau, lower, upper).sum() > 1.0:
            lo_tau = tau
        else:
            hi_tau = tau
    w = np.clip(v - 0.5 * (lo_tau + hi_tau), lower, upper)

    # Spread the bisection residual over the weights not pinned at a bound
    residual = 1.0 - w.sum()
    free = (w > lower + _BOUND_EPS) & (w < upper - _BOUND_EPS)
    if free.any():
        w[free] += residual / free.sum()
    return w


def attainable_return_range(
    expected_returns: np.ndarray, lower: float, upper: float
) -> tuple[float, float]:
    """Lowest and highest portfolio return reachable within the bounds."""
    mu = np.asarray(expected_returns, dtype=np.float64)

    def _greedy(order: np.ndarray) -> float:
        w = np.full(len(mu), lower)
        remaining = 1.0 - w.sum()
        for i in order:
            add = min(upper - lower, remaining)
            w[i] += add
            remaining -= add
            if remaining <= 0:
                break
        return float(mu @ w)

    return _greedy(np.argsort(mu)), _greedy(np.argsort(-mu))


# ---------------------------------------------------------------------------
# Budget
# ---------------------------------------------------------------------------
class BudgetExhausted(Exception):
    """Raised inside a wrapped objective once the wall-clock budget is spent."""


@dataclass
class SearchBudget:
    """Iteration and wall-clock limits shared by iterative solvers.

    Attributes:
        max_iterations: Solver iteration cap.
        tolerance: Convergence tolerance on the weights.
        timeout_seconds: Wall-clock limit; None disables it.
    """

    max_iterations: int = 1000
    tolerance: float = 1e-4
    timeout_seconds: float | None = None
    started: float = field(default_factory=time.monotonic)
    evaluations: int = 0
    last_x: np.ndarray | None = None

    @property
    def ftol(self) -> float:
        """SLSQP function tolerance; objectives are quadratic in the weights."""
        return self.tolerance**2

    def remaining(self) -> float | None:
        if self.timeout_seconds is None:
            return None
        return max(self.timeout_seconds - (time.monotonic() - self.started), 0.0)

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0.0

    def track(self, fn: Callable[[np.ndarray], float]) -> Callable[[np.ndarray], float]:
        """Wrap an objective so each call is counted and checked against the clock."""

        def wrapped(x: np.ndarray) -> float:
            if self.expired():
                raise BudgetExhausted
            self.evaluations += 1
            self.last_x = np.array(x, dtype=np.float64, copy=True)
            return fn(x)

        return wrapped


# ---------------------------------------------------------------------------
# Problem / outcome
# ---------------------------------------------------------------------------
@dataclass
class OptimizationProblem:
    """Validated optimizer inputs handed to a strategy."""

    asset_ids: list[str]
    expected_returns: np.ndarray
    covariance: np.ndarray
    constraints: PortfolioConstraints
    lower: float
    upper: float
    risk_tolerance: float
    target_return: float | None
    budget: SearchBudget

    @property
    def n_assets(self) -> int:
        return len(self.asset_ids)

    def initial_weights(self) -> np.ndarray:
        return project_weights(np.full(self.n_assets, 1.0 / self.n_assets), self.lower, self.upper)


@dataclass
class StrategyOutcome:
    """Raw strategy output before projection and scoring."""

    weights: np.ndarray
    converged: bool = True
    iterations: int = 0
    timed_out: bool = False
    details: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Strategy base
# ---------------------------------------------------------------------------
class OptimizationStrategy(abc.ABC):
    """A weight-generation method registered under an OptimizationMethod."""

    method: ClassVar[OptimizationMethod]

    @abc.abstractmethod
    def solve(self, problem: OptimizationProblem) -> StrategyOutcome:
        """Compute raw weights for *problem*."""


def run_slsqp(
    problem: OptimizationProblem,
    objective: Callable[[np.ndarray], float],
    x0: np.ndarray,
    jac: Callable[[np.ndarray], np.ndarray] | None = None,
    constraints: list[dict[str, Any]] | None = None,
    lower: float | None = None,
    upper: float | None = None,
    label: str = "slsqp",
) -> StrategyOutcome:
    """Minimize *objective* under ``sum(w) = 1`` and box bounds via SLSQP.

    Runs inside the problem's SearchBudget: on timeout the last evaluated
    point is returned with ``timed_out=True``; on non-convergence the
    solver's final point is returned with ``converged=False``.
    """
    budget = problem.budget
    lo = problem.lower if lower is None else lower
    hi = problem.upper if upper is None else upper
    cons = [{"type": "eq", "fun": lambda w: float(np.sum(w)) - 1.0}]
    cons.extend(constraints or [])

    try:
        result = minimize(
            budget.track(objective),
            x0,
            method="SLSQP",
            jac=jac,
            bounds=[(lo, hi)] * problem.n_assets,
            constraints=cons,
            options={"ftol": budget.ftol, "maxiter": budget.max_iterations, "disp": False},
        )
    except BudgetExhausted:
        logger.warning(
            "optimization_timed_out",
            solver=label,
            evaluations=budget.evaluations,
            timeout_seconds=budget.timeout_seconds,
        )
        best = budget.last_x if budget.last_x is not None else x0
        return StrategyOutcome(
            weights=best, converged=False, iterations=budget.evaluations, timed_out=True
        )

    if not result.success:
        warnings.warn(
            f"{label} did not converge: {result.message}", ConvergenceWarning, stacklevel=2
        )
        logger.warning("optimization_not_converged", solver=label, message=str(result.message))

    return StrategyOutcome(
        weights=np.asarray(result.x, dtype=np.float64),
        converged=bool(result.success),
        iterations=int(getattr(result, "nit", 0) or 0),
    )

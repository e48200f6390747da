"""Portfolio optimization across VPP energy assets.

PortfolioOptimizer dispatches to a strategy registered per
OptimizationMethod, then projects the raw weights onto
``{sum(w) = 1, min_weight <= w <= max_weight}`` and scores the result:

- expected return  R = sum(w * mu)
- risk             sqrt(w^T Sigma w)
- Sharpe           (R - rf) / risk, None when risk is zero

Also provides efficient_frontier() and estimate_inputs() (sample mean plus
Ledoit-Wolf shrunk covariance from asset return histories).

This module is pure computation -- no collaborator access.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

import numpy as np
import pandas as pd
import structlog
from scipy.optimize import minimize
from sklearn.covariance import LedoitWolf

from vpp_analytics.core.config import Settings
from vpp_analytics.core.enums import OptimizationMethod
from vpp_analytics.core.exceptions import (
    InputValidationError,
    InsufficientDataError,
    UnsupportedMethodError,
)
from vpp_analytics.portfolio.cvar import CVaRStrategy
from vpp_analytics.portfolio.hrp import HierarchicalRiskParityStrategy
from vpp_analytics.portfolio.problem import (
    OptimizationProblem,
    OptimizationStrategy,
    PortfolioConstraints,
    SearchBudget,
    attainable_return_range,
    check_feasible_bounds,
    project_weights,
)
from vpp_analytics.portfolio.strategies import (
    BlackLittermanStrategy,
    MeanVarianceStrategy,
    RiskParityStrategy,
)

logger = structlog.get_logger(__name__)

RISK_EPS = 1e-12

STRATEGIES: dict[OptimizationMethod, type[OptimizationStrategy]] = {
    cls.method: cls
    for cls in (
        MeanVarianceStrategy,
        RiskParityStrategy,
        BlackLittermanStrategy,
        HierarchicalRiskParityStrategy,
        CVaRStrategy,
    )
}


def register_strategy(cls: type[OptimizationStrategy]) -> type[OptimizationStrategy]:
    """Register (or replace) the strategy for ``cls.method``."""
    STRATEGIES[cls.method] = cls
    return cls


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class PortfolioAsset:
    """An energy asset of a VPP portfolio.

    Attributes:
        id: Asset identifier.
        expected_return: Expected period return, if known.
        weight: Allocation; only ever set from optimizer output.
        volatility: Return standard deviation, if known.
        returns: Historical period returns, oldest first.
    """

    id: str
    expected_return: float | None = None
    weight: float | None = None
    volatility: float | None = None
    returns: tuple[float, ...] = ()

    @classmethod
    def from_record(cls, record: PortfolioAsset | Mapping[str, Any] | str) -> PortfolioAsset:
        if isinstance(record, PortfolioAsset):
            return record
        if isinstance(record, str):
            return cls(id=record)
        try:
            asset_id = str(record["id"])
        except (KeyError, TypeError) as exc:
            raise InputValidationError(f"asset record without id: {record!r}") from exc
        er = record.get("expected_return")
        vol = record.get("volatility")
        return cls(
            id=asset_id,
            expected_return=None if er is None else float(er),
            volatility=None if vol is None else float(vol),
            returns=tuple(float(x) for x in record.get("returns") or ()),
        )


@dataclass
class OptimizationResult:
    """Output of one optimization run."""

    method: OptimizationMethod
    asset_ids: list[str]
    weights: list[float]
    assets: list[PortfolioAsset]
    expected_return: float
    risk: float
    sharpe_ratio: float | None
    diversification_ratio: float | None
    effective_n: float
    converged: bool
    timed_out: bool
    iterations: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def sharpe_defined(self) -> bool:
        return self.sharpe_ratio is not None

    @property
    def weight_map(self) -> dict[str, float]:
        return dict(zip(self.asset_ids, self.weights))


@dataclass(frozen=True)
class FrontierPoint:
    """One point of the efficient frontier."""

    target_return: float
    risk: float
    weights: tuple[float, ...]


# ---------------------------------------------------------------------------
# Validation / estimation
# ---------------------------------------------------------------------------
def validate_inputs(
    n_assets: int, expected_returns: Any, risk_matrix: Any
) -> tuple[np.ndarray, np.ndarray]:
    """Coerce and validate (mu, Sigma) for *n_assets* assets."""
    if n_assets == 0:
        raise InputValidationError("assets must not be empty")
    mu = np.asarray(expected_returns, dtype=np.float64).reshape(-1)
    sigma = np.asarray(risk_matrix, dtype=np.float64)
    if mu.shape != (n_assets,):
        raise InputValidationError(
            f"expected_returns has {mu.size} entries for {n_assets} assets"
        )
    if sigma.shape != (n_assets, n_assets):
        raise InputValidationError(
            f"risk_matrix must be {n_assets}x{n_assets}, got {sigma.shape}"
        )
    if not (np.all(np.isfinite(mu)) and np.all(np.isfinite(sigma))):
        raise InputValidationError("expected_returns and risk_matrix must be finite")
    if not np.allclose(sigma, sigma.T, rtol=1e-8, atol=1e-10):
        raise InputValidationError("risk_matrix must be symmetric")
    return mu, sigma


def estimate_inputs(
    assets: Sequence[PortfolioAsset | Mapping[str, Any]],
) -> tuple[np.ndarray, np.ndarray]:
    """Estimate (mu, Sigma) from asset records.

    With return histories on every asset: mean return (unless an explicit
    expected_return is given) and Ledoit-Wolf covariance over the common
    most recent window. Otherwise every asset needs expected_return and
    volatility, and the covariance is diagonal.

    Raises:
        InsufficientDataError: When neither source of inputs is complete.
    """
    parsed = [PortfolioAsset.from_record(a) for a in assets]
    if not parsed:
        raise InputValidationError("assets must not be empty")

    if all(len(a.returns) >= 2 for a in parsed):
        window = min(len(a.returns) for a in parsed)
        frame = pd.DataFrame({a.id: list(a.returns[-window:]) for a in parsed})
        frame = frame.apply(pd.to_numeric, errors="coerce").dropna()
        if len(frame) < 2:
            raise InsufficientDataError("fewer than 2 aligned return observations")
        means = frame.mean().to_numpy()
        mu = np.array(
            [a.expected_return if a.expected_return is not None else m for a, m in zip(parsed, means)],
            dtype=np.float64,
        )
        sigma = LedoitWolf().fit(frame.to_numpy()).covariance_
        logger.info("inputs_estimated", source="returns", n_assets=len(parsed), n_obs=len(frame))
        return mu, sigma

    if all(a.expected_return is not None and a.volatility is not None for a in parsed):
        mu = np.array([a.expected_return for a in parsed], dtype=np.float64)
        sigma = np.diag([a.volatility**2 for a in parsed])
        logger.info("inputs_estimated", source="volatility", n_assets=len(parsed))
        return mu, sigma

    raise InsufficientDataError(
        "every asset needs a return history or expected_return and volatility"
    )


def parse_method(method: OptimizationMethod | str) -> OptimizationMethod:
    try:
        return OptimizationMethod(method)
    except ValueError as exc:
        raise UnsupportedMethodError(f"Unsupported optimization method '{method}'") from exc


# ---------------------------------------------------------------------------
# PortfolioOptimizer
# ---------------------------------------------------------------------------
class PortfolioOptimizer:
    """Strategy-dispatching portfolio optimizer.

    Args:
        risk_free_rate: Rate used in the Sharpe ratio.
        risk_tolerance: Default lambda of the mean-variance objective.
        max_iterations: Iteration cap for iterative strategies.
        convergence_tolerance: Convergence tolerance on the weights.
        timeout_seconds: Default wall-clock limit per run; None disables it.
        frontier_points: Default number of efficient frontier points.
        default_constraints: Base for constraints given as a mapping or
            omitted (CVaR confidence, scenario count and seed).
    """

    def __init__(
        self,
        risk_free_rate: float = 0.02,
        risk_tolerance: float = 0.1,
        max_iterations: int = 1000,
        convergence_tolerance: float = 1e-4,
        timeout_seconds: float | None = 30.0,
        frontier_points: int = 20,
        default_constraints: PortfolioConstraints | None = None,
    ) -> None:
        self.risk_free_rate = risk_free_rate
        self.risk_tolerance = risk_tolerance
        self.max_iterations = max_iterations
        self.convergence_tolerance = convergence_tolerance
        self.timeout_seconds = timeout_seconds
        self.frontier_points = frontier_points
        self.default_constraints = default_constraints or PortfolioConstraints()

    @classmethod
    def from_settings(cls, config: Settings) -> PortfolioOptimizer:
        po = config.portfolio_optimization
        return cls(
            risk_free_rate=po.risk_free_rate,
            risk_tolerance=po.risk_tolerance,
            max_iterations=po.max_iterations,
            convergence_tolerance=po.convergence_tolerance,
            timeout_seconds=po.timeout_seconds,
            frontier_points=po.frontier_points,
            default_constraints=PortfolioConstraints(
                cvar_confidence=po.cvar_confidence,
                n_scenarios=po.cvar_scenarios,
                seed=po.random_seed,
            ),
        )

    def optimize(
        self,
        method: OptimizationMethod | str,
        assets: Sequence[PortfolioAsset | Mapping[str, Any] | str],
        expected_returns: Any = None,
        risk_matrix: Any = None,
        target_return: float | None = None,
        risk_tolerance: float | None = None,
        constraints: PortfolioConstraints | Mapping[str, Any] | None = None,
        timeout: float | None = None,
    ) -> OptimizationResult:
        """Compute portfolio weights with *method*.

        Args:
            method: One of the registered OptimizationMethod values.
            assets: Assets (objects, records or bare ids).
            expected_returns: (n,) expected returns; estimated when None.
            risk_matrix: (n x n) covariance; estimated when None.
            target_return: Minimum portfolio return (overrides constraints).
            risk_tolerance: Mean-variance lambda; optimizer default when None.
            constraints: Bounds and method options.
            timeout: Wall-clock limit; optimizer default when None.

        Raises:
            UnsupportedMethodError: Unknown *method*.
            InputValidationError: Malformed inputs or infeasible bounds.
        """
        opt_method = parse_method(method)
        parsed = [PortfolioAsset.from_record(a) for a in assets]
        if expected_returns is None or risk_matrix is None:
            est_mu, est_sigma = estimate_inputs(parsed)
            expected_returns = est_mu if expected_returns is None else expected_returns
            risk_matrix = est_sigma if risk_matrix is None else risk_matrix
        mu, sigma = validate_inputs(len(parsed), expected_returns, risk_matrix)

        if constraints is None or isinstance(constraints, Mapping):
            constraints = PortfolioConstraints.from_mapping(
                constraints, self.default_constraints
            )
        lower, upper = constraints.bounds
        check_feasible_bounds(len(parsed), lower, upper)

        problem = OptimizationProblem(
            asset_ids=[a.id for a in parsed],
            expected_returns=mu,
            covariance=sigma,
            constraints=constraints,
            lower=lower,
            upper=upper,
            risk_tolerance=self.risk_tolerance if risk_tolerance is None else risk_tolerance,
            target_return=target_return if target_return is not None else constraints.target_return,
            budget=SearchBudget(
                max_iterations=self.max_iterations,
                tolerance=self.convergence_tolerance,
                timeout_seconds=self.timeout_seconds if timeout is None else timeout,
            ),
        )

        outcome = STRATEGIES[opt_method]().solve(problem)
        weights = project_weights(outcome.weights, lower, upper)
        result = self._score(opt_method, parsed, weights, mu, sigma)
        result.converged = outcome.converged
        result.timed_out = outcome.timed_out
        result.iterations = outcome.iterations
        result.details = outcome.details

        logger.info(
            "portfolio_optimized",
            method=opt_method.value,
            n_assets=len(parsed),
            expected_return=round(result.expected_return, 6),
            risk=round(result.risk, 6),
            converged=result.converged,
            timed_out=result.timed_out,
        )
        return result

    def _score(
        self,
        method: OptimizationMethod,
        assets: list[PortfolioAsset],
        weights: np.ndarray,
        mu: np.ndarray,
        sigma: np.ndarray,
    ) -> OptimizationResult:
        expected_return = float(weights @ mu)
        risk = float(np.sqrt(max(float(weights @ sigma @ weights), 0.0)))
        if risk < RISK_EPS:
            sharpe = None
            diversification = None
        else:
            sharpe = (expected_return - self.risk_free_rate) / risk
            vols = np.sqrt(np.clip(np.diag(sigma), 0.0, None))
            diversification = float(weights @ vols) / risk

        return OptimizationResult(
            method=method,
            asset_ids=[a.id for a in assets],
            weights=[float(w) for w in weights],
            assets=[dataclasses.replace(a, weight=float(w)) for a, w in zip(assets, weights)],
            expected_return=expected_return,
            risk=risk,
            sharpe_ratio=sharpe,
            diversification_ratio=diversification,
            effective_n=float(1.0 / np.sum(weights**2)),
            converged=True,
            timed_out=False,
            iterations=0,
        )

    def efficient_frontier(
        self,
        expected_returns: Any,
        risk_matrix: Any,
        n_points: int | None = None,
        constraints: PortfolioConstraints | Mapping[str, Any] | None = None,
    ) -> list[FrontierPoint]:
        """Minimum-risk portfolios for evenly spaced attainable target returns.

        Targets whose SLSQP solve fails are omitted.
        """
        mu = np.asarray(expected_returns, dtype=np.float64).reshape(-1)
        mu, sigma = validate_inputs(len(mu), mu, risk_matrix)
        if constraints is None or isinstance(constraints, Mapping):
            constraints = PortfolioConstraints.from_mapping(
                constraints, self.default_constraints
            )
        lower, upper = constraints.bounds
        check_feasible_bounds(len(mu), lower, upper)

        n_points = n_points or self.frontier_points
        if n_points < 2:
            raise InputValidationError("n_points must be at least 2")
        low, high = attainable_return_range(mu, lower, upper)
        targets = np.linspace(low, high, n_points)

        n = len(mu)
        x0 = project_weights(np.full(n, 1.0 / n), lower, upper)
        points: list[FrontierPoint] = []
        for target in targets:
            result = minimize(
                lambda w: float(w @ sigma @ w),
                x0,
                method="SLSQP",
                jac=lambda w: 2.0 * sigma @ w,
                bounds=[(lower, upper)] * n,
                constraints=[
                    {"type": "eq", "fun": lambda w: float(np.sum(w)) - 1.0},
                    {"type": "eq", "fun": lambda w, t=target: float(mu @ w) - t},
                ],
                options={"ftol": 1e-12, "maxiter": self.max_iterations, "disp": False},
            )
            if not result.success:
                logger.debug("frontier_point_failed", target_return=float(target))
                continue
            w = project_weights(result.x, lower, upper)
            points.append(
                FrontierPoint(
                    target_return=float(target),
                    risk=float(np.sqrt(max(float(w @ sigma @ w), 0.0))),
                    weights=tuple(float(x) for x in w),
                )
            )

        logger.info("efficient_frontier_computed", n_requested=n_points, n_points=len(points))
        return points

    @staticmethod
    def methods() -> Iterable[OptimizationMethod]:
        return tuple(STRATEGIES)

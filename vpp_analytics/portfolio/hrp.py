"""Hierarchical risk parity (Lopez de Prado, 2016).

1. Correlation distance d_ij = sqrt(0.5 * (1 - rho_ij)).
2. Single-linkage clustering and quasi-diagonal leaf order.
3. Recursive bisection: split each cluster in two and allocate between the
   halves inversely to their inverse-variance portfolio variance.
"""

from __future__ import annotations

import numpy as np
from scipy.cluster.hierarchy import leaves_list, linkage
from scipy.spatial.distance import squareform

from vpp_analytics.core.enums import OptimizationMethod
from vpp_analytics.portfolio.problem import (
    OptimizationProblem,
    OptimizationStrategy,
    StrategyOutcome,
)

_VAR_FLOOR = 1e-12


def correlation_distance(covariance: np.ndarray) -> np.ndarray:
    """Distance matrix derived from the correlation implied by *covariance*."""
    std = np.sqrt(np.clip(np.diag(covariance), _VAR_FLOOR, None))
    corr = covariance / np.outer(std, std)
    corr = np.clip(corr, -1.0, 1.0)
    np.fill_diagonal(corr, 1.0)
    return np.sqrt(0.5 * (1.0 - corr))


def quasi_diagonal_order(covariance: np.ndarray) -> list[int]:
    """Leaf order of the single-linkage tree over the correlation distance."""
    n = covariance.shape[0]
    if n <= 2:
        return list(range(n))
    dist = correlation_distance(covariance)
    tree = linkage(squareform(dist, checks=False), method="single")
    return [int(i) for i in leaves_list(tree)]


def _cluster_variance(covariance: np.ndarray, items: list[int]) -> float:
    sub = covariance[np.ix_(items, items)]
    ivp = 1.0 / np.clip(np.diag(sub), _VAR_FLOOR, None)
    ivp /= ivp.sum()
    return float(ivp @ sub @ ivp)


def hrp_weights(covariance: np.ndarray) -> np.ndarray:
    """Long-only HRP weights summing to 1."""
    covariance = np.asarray(covariance, dtype=np.float64)
    n = covariance.shape[0]
    if n == 1:
        return np.ones(1)

    weights = np.ones(n)
    clusters = [quasi_diagonal_order(covariance)]
    while clusters:
        next_clusters = []
        for cluster in clusters:
            if len(cluster) <= 1:
                continue
            half = len(cluster) // 2
            left, right = cluster[:half], cluster[half:]
            var_left = _cluster_variance(covariance, left)
            var_right = _cluster_variance(covariance, right)
            total = var_left + var_right
            alpha = 0.5 if total <= 0 else 1.0 - var_left / total
            weights[left] *= alpha
            weights[right] *= 1.0 - alpha
            next_clusters.extend([left, right])
        clusters = next_clusters
    return weights / weights.sum()


class HierarchicalRiskParityStrategy(OptimizationStrategy):
    """Closed-form HRP allocation; a single pass, no iterative solver."""

    method = OptimizationMethod.HIERARCHICAL_RISK_PARITY

    def solve(self, problem: OptimizationProblem) -> StrategyOutcome:
        weights = hrp_weights(problem.covariance)
        return StrategyOutcome(
            weights=weights,
            iterations=1,
            details={"order": [problem.asset_ids[i] for i in quasi_diagonal_order(problem.covariance)]},
        )

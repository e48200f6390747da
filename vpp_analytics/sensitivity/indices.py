"""Sensitivity index estimators and bootstrap confidence intervals.

Every estimator works on per-row arrays so the analyzer can bootstrap by
resampling rows (base design points) with replacement.
"""

from __future__ import annotations

from typing import Callable

import numpy as np


def _safe_ratio(num: float, den: float) -> float:
    if den <= 0 or not np.isfinite(den):
        return 0.0
    return float(num / den)


def correlation_ratio(x: np.ndarray, y: np.ndarray, n_bins: int = 10) -> float:
    """First-order index Var(E[Y | X]) / Var(Y) from equal-count bins of X."""
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    n = len(y)
    var_y = float(np.var(y))
    if n < 2 or var_y <= 0:
        return 0.0
    bins = max(1, min(n_bins, n // 2))
    order = np.argsort(x, kind="stable")
    groups = np.array_split(y[order], bins)
    means = np.array([g.mean() for g in groups])
    sizes = np.array([len(g) for g in groups], dtype=np.float64)
    between = float(np.sum(sizes * (means - y.mean()) ** 2) / n)
    return min(max(_safe_ratio(between, var_y), 0.0), 1.0)


def sobol_first_order(y_a: np.ndarray, y_b: np.ndarray, y_ab: np.ndarray) -> float:
    """Saltelli (2010) first-order estimator, clipped at 0.

    S_i = mean(f(B) * (f(AB_i) - f(A))) / Var([f(A), f(B)])
    """
    var = float(np.var(np.concatenate([y_a, y_b])))
    s = _safe_ratio(float(np.mean(y_b * (y_ab - y_a))), var)
    return max(s, 0.0)


def morris_statistics(effects: np.ndarray) -> tuple[float, float, float]:
    """(mu, mu_star, sigma) of the elementary effects of one factor."""
    effects = np.asarray(effects, dtype=np.float64)
    if len(effects) == 0:
        return 0.0, 0.0, 0.0
    sigma = float(np.std(effects, ddof=1)) if len(effects) > 1 else 0.0
    return float(np.mean(effects)), float(np.mean(np.abs(effects))), sigma


def normalise(raw: np.ndarray) -> np.ndarray:
    """Scale non-negative raw measures so they sum to 1 (zeros when all zero)."""
    raw = np.clip(np.asarray(raw, dtype=np.float64), 0.0, None)
    total = raw.sum()
    if total <= 0 or not np.isfinite(total):
        return np.zeros_like(raw)
    return raw / total


def bootstrap_interval(
    statistic: Callable[[np.ndarray], float],
    n_rows: int,
    n_resamples: int,
    confidence: float,
    rng: np.random.Generator,
) -> tuple[float, float]:
    """Percentile bootstrap interval of *statistic* over resampled row indices."""
    if n_rows < 2 or n_resamples < 1:
        value = statistic(np.arange(n_rows))
        return value, value
    draws = np.empty(n_resamples)
    for b in range(n_resamples):
        draws[b] = statistic(rng.integers(0, n_rows, size=n_rows))
    alpha = 1.0 - confidence
    lower, upper = np.quantile(draws, [alpha / 2.0, 1.0 - alpha / 2.0])
    return float(lower), float(upper)

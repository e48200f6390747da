"""Parameter specifications and sampling designs for sensitivity analysis.

All designs are first built in the unit hypercube and then mapped to
parameter space through each parameter's inverse CDF, so every sample
respects the parameter's bounds and distribution:

- uniform: U(lower, upper)
- normal: N(nominal, (upper - lower) / 6) truncated to [lower, upper]
- triangular: mode at ``nominal`` (midpoint when omitted)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence

import numpy as np
from scipy import stats
from scipy.stats import qmc

from vpp_analytics.core.exceptions import InputValidationError

DISTRIBUTIONS = ("uniform", "normal", "triangular")

ParameterSample = dict[str, float]


@dataclass(frozen=True)
class ParameterSpec:
    """An uncertain model input.

    Attributes:
        name: Parameter name passed to the valuation model.
        lower: Lower bound.
        upper: Upper bound (strictly greater than lower).
        distribution: uniform, normal or triangular.
        nominal: Mean (normal) or mode (triangular); midpoint when None.
    """

    name: str
    lower: float
    upper: float
    distribution: str = "uniform"
    nominal: float | None = None

    def __post_init__(self) -> None:
        if not (np.isfinite(self.lower) and np.isfinite(self.upper)):
            raise InputValidationError(f"bounds of '{self.name}' must be finite")
        if self.lower >= self.upper:
            raise InputValidationError(
                f"parameter '{self.name}' needs lower < upper, got [{self.lower}, {self.upper}]"
            )
        if self.distribution not in DISTRIBUTIONS:
            raise InputValidationError(
                f"parameter '{self.name}' has unknown distribution '{self.distribution}'"
            )
        if self.nominal is not None and not self.lower <= self.nominal <= self.upper:
            raise InputValidationError(f"nominal of '{self.name}' lies outside its bounds")

    @classmethod
    def from_mapping(cls, data: ParameterSpec | Mapping[str, Any]) -> ParameterSpec:
        if isinstance(data, ParameterSpec):
            return data
        try:
            return cls(
                name=str(data["name"]),
                lower=float(data["lower"]),
                upper=float(data["upper"]),
                distribution=str(data.get("distribution", "uniform")),
                nominal=None if data.get("nominal") is None else float(data["nominal"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InputValidationError(f"Malformed parameter spec {data!r}") from exc

    @property
    def width(self) -> float:
        return self.upper - self.lower

    @property
    def center(self) -> float:
        return self.nominal if self.nominal is not None else 0.5 * (self.lower + self.upper)

    def ppf(self, u: np.ndarray) -> np.ndarray:
        """Map unit-interval values to parameter values."""
        u = np.clip(np.asarray(u, dtype=np.float64), 0.0, 1.0)
        if self.distribution == "uniform":
            return self.lower + u * self.width
        if self.distribution == "normal":
            scale = self.width / 6.0
            a = (self.lower - self.center) / scale
            b = (self.upper - self.center) / scale
            values = stats.truncnorm.ppf(u, a, b, loc=self.center, scale=scale)
        else:
            c = (self.center - self.lower) / self.width
            values = stats.triang.ppf(u, c, loc=self.lower, scale=self.width)
        return np.clip(values, self.lower, self.upper)


def parse_parameters(
    parameters: Sequence[ParameterSpec | Mapping[str, Any]],
) -> list[ParameterSpec]:
    specs = [ParameterSpec.from_mapping(p) for p in parameters or []]
    if not specs:
        raise InputValidationError("at least one parameter is required")
    names = [s.name for s in specs]
    if len(set(names)) != len(names):
        raise InputValidationError(f"duplicate parameter names in {names}")
    return specs


def to_parameter_space(unit: np.ndarray, specs: Sequence[ParameterSpec]) -> np.ndarray:
    """Map an (N x k) unit-cube design to parameter values column by column."""
    unit = np.atleast_2d(unit)
    return np.column_stack([spec.ppf(unit[:, j]) for j, spec in enumerate(specs)])


def as_sample(row: np.ndarray, specs: Sequence[ParameterSpec]) -> ParameterSample:
    return {spec.name: float(v) for spec, v in zip(specs, row)}


# ---------------------------------------------------------------------------
# Designs
# ---------------------------------------------------------------------------
def latin_hypercube(n: int, d: int, rng: np.random.Generator) -> np.ndarray:
    """(n x d) Latin hypercube sample in [0, 1)."""
    sampler = qmc.LatinHypercube(d=d, seed=rng)
    return sampler.random(n)


def saltelli_matrices(
    n: int, k: int, rng: np.random.Generator
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """A, B and the k radial matrices AB_i from one (n x 2k) Latin hypercube.

    Returns:
        (A, B, AB) with AB of shape (k, n, k); AB[i] is A with column i
        taken from B.
    """
    base = latin_hypercube(n, 2 * k, rng)
    a, b = base[:, :k], base[:, k:]
    ab = np.repeat(a[np.newaxis, :, :], k, axis=0)
    for i in range(k):
        ab[i, :, i] = b[:, i]
    return a, b, ab


def morris_trajectories(
    n: int, k: int, levels: int, rng: np.random.Generator
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """One-at-a-time Morris trajectories on a *levels*-point grid.

    Each trajectory starts at a random grid point and moves every factor
    once, in random order, by +/- delta with delta = p / (2 (p - 1)).

    Returns:
        (points, order, steps): points (n x k+1 x k) in the unit cube,
        order (n x k) factor moved at each step, steps (n x k) signed
        unit-space step taken at each step.
    """
    if levels < 2:
        raise InputValidationError("morris levels must be at least 2")
    delta = levels / (2.0 * (levels - 1))
    grid = np.arange(levels) / (levels - 1)
    start_grid = grid[grid <= 1.0 - delta + 1e-12]

    points = np.empty((n, k + 1, k))
    order = np.empty((n, k), dtype=int)
    steps = np.empty((n, k))
    for t in range(n):
        x = rng.choice(start_grid, size=k)
        points[t, 0] = x
        perm = rng.permutation(k)
        for j, factor in enumerate(perm):
            x = x.copy()
            step = delta if rng.random() < 0.5 else -delta
            if not 0.0 <= x[factor] + step <= 1.0 + 1e-12:
                step = -step
            x[factor] = min(max(x[factor] + step, 0.0), 1.0)
            points[t, j + 1] = x
            order[t, j] = factor
            steps[t, j] = step
    return points, order, steps

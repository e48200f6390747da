"""Sensitivity analysis of VPP valuation outputs to uncertain inputs.

Designs per analysis type (N = sample_size base rows, k = parameters):
- global_sensitivity: Latin hypercube, N runs, binned correlation ratio
- variance_based: Saltelli radial design, N(k+2) runs, first-order Sobol
- morris_method: N trajectories on a p-level grid, N(k+1) runs, mu*/sum(mu*)
- local_sensitivity: N LHS base points plus forward differences, N(k+1) runs

Model runs are grouped per base row. Each run is bounded by the remaining
time budget: coroutine models are cancelled at the deadline, synchronous
models run in a worker thread whose late result is discarded. When the
budget runs out the analysis keeps only the completed rows and returns
``timed_out=True``; with fewer than two completed rows the result carries
no indices. Every index carries a percentile bootstrap confidence interval
obtained by resampling rows.

Results are deterministic for an explicit seed.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence

import numpy as np
import pandas as pd
import structlog

from vpp_analytics.core.config import Settings
from vpp_analytics.core.enums import SensitivityAnalysisType
from vpp_analytics.core.exceptions import (
    AnalysisTimeoutError,
    InputValidationError,
    UnsupportedMethodError,
)
from vpp_analytics.core.interfaces import ValuationModel, resolve
from vpp_analytics.sensitivity.indices import (
    bootstrap_interval,
    correlation_ratio,
    morris_statistics,
    normalise,
    sobol_first_order,
)
from vpp_analytics.sensitivity.sampling import (
    ParameterSpec,
    as_sample,
    latin_hypercube,
    morris_trajectories,
    parse_parameters,
    saltelli_matrices,
    to_parameter_space,
)

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class SensitivityIndex:
    """Influence of one parameter on one output metric."""

    parameter: str
    output_metric: str
    index: float
    confidence_interval: tuple[float, float]
    confidence_level: float
    method: SensitivityAnalysisType
    details: dict[str, float] = field(default_factory=dict, compare=False)


@dataclass
class SensitivityResult:
    """All indices of one analysis plus run bookkeeping.

    Attributes:
        samples_drawn: Base design rows drawn (always sample_size).
        samples_evaluated: Base rows whose model runs completed.
        model_runs: Model invocations actually performed.
        seed: Seed that reproduces this result.
        timed_out: True when the time budget cut the run short.
        converged: True when every drawn row was evaluated.
        top_influencers: Parameters ranked by index, per output metric.
    """

    vpp_id: str
    analysis_type: SensitivityAnalysisType
    indices: list[SensitivityIndex]
    samples_drawn: int
    samples_evaluated: int
    model_runs: int
    seed: int
    timed_out: bool
    converged: bool
    top_influencers: dict[str, list[str]]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def index_for(self, parameter: str, output_metric: str) -> SensitivityIndex | None:
        for idx in self.indices:
            if idx.parameter == parameter and idx.output_metric == output_metric:
                return idx
        return None

    def to_frame(self) -> pd.DataFrame:
        """Indices as a (parameter x output_metric) table."""
        frame = pd.DataFrame(
            [
                {"parameter": i.parameter, "output_metric": i.output_metric, "index": i.index}
                for i in self.indices
            ]
        )
        if frame.empty:
            return frame
        return frame.pivot(index="parameter", columns="output_metric", values="index")


@dataclass
class _Design:
    """Parameter-space design: rows (N x points_per_row x k) plus metadata."""

    rows: np.ndarray
    meta: dict[str, np.ndarray] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# SensitivityAnalyzer
# ---------------------------------------------------------------------------
class SensitivityAnalyzer:
    """Runs a valuation model over a sampling design and computes indices.

    Args:
        model: Valuation model invoked once per design point.
        bootstrap_resamples: Resamples per confidence interval.
        morris_levels: Grid levels p of the Morris design.
        n_bins: Bins of the correlation-ratio estimator.
        finite_difference_step: Local step as a fraction of each range.
        timeout_seconds: Default time budget; None disables it.
    """

    def __init__(
        self,
        model: ValuationModel,
        bootstrap_resamples: int = 200,
        morris_levels: int = 4,
        n_bins: int = 10,
        finite_difference_step: float = 1e-3,
        timeout_seconds: float | None = 60.0,
        default_type: SensitivityAnalysisType = SensitivityAnalysisType.GLOBAL,
        default_sample_size: int = 1000,
        default_confidence_level: float = 0.95,
        default_output_metrics: Sequence[str] | None = None,
    ) -> None:
        self.model = model
        self.bootstrap_resamples = bootstrap_resamples
        self.morris_levels = morris_levels
        self.n_bins = n_bins
        self.finite_difference_step = finite_difference_step
        self.timeout_seconds = timeout_seconds
        self.default_type = default_type
        self.default_sample_size = default_sample_size
        self.default_confidence_level = default_confidence_level
        self.default_output_metrics = list(default_output_metrics or ["profit", "risk", "efficiency"])

    @classmethod
    def from_settings(cls, config: Settings, model: ValuationModel) -> SensitivityAnalyzer:
        sa = config.sensitivity_analysis
        return cls(
            model,
            bootstrap_resamples=sa.bootstrap_resamples,
            morris_levels=sa.morris_levels,
            n_bins=sa.n_bins,
            finite_difference_step=sa.finite_difference_step,
            timeout_seconds=sa.timeout_seconds,
            default_type=sa.default_type,
            default_sample_size=sa.sample_size,
            default_confidence_level=sa.confidence_level,
            default_output_metrics=sa.default_output_metrics,
        )

    async def analyze(
        self,
        vpp_id: str,
        analysis_type: SensitivityAnalysisType | str | None = None,
        parameters: Sequence[ParameterSpec | Mapping[str, Any]] = (),
        output_metrics: Sequence[str] | None = None,
        sample_size: int | None = None,
        seed: int | None = None,
        confidence_level: float | None = None,
        timeout: float | None = None,
    ) -> SensitivityResult:
        """Attribute the variability of *output_metrics* to *parameters*.

        Raises:
            UnsupportedMethodError: Unknown analysis type.
            InputValidationError: Invalid parameters, sizes or metrics.
        """
        atype = self._parse_type(analysis_type)
        specs = parse_parameters(parameters)
        metrics = list(output_metrics) if output_metrics is not None else self.default_output_metrics
        if not metrics:
            raise InputValidationError("at least one output metric is required")
        n = self.default_sample_size if sample_size is None else sample_size
        if not isinstance(n, (int, np.integer)) or n < 2:
            raise InputValidationError(f"sample_size must be an integer >= 2, got {n!r}")
        level = self.default_confidence_level if confidence_level is None else confidence_level
        if not 0.0 < level < 1.0:
            raise InputValidationError(f"confidence_level must be in (0, 1), got {level}")

        if seed is None:
            seed = int(np.random.SeedSequence().entropy % (2**32))
        design_seq, bootstrap_seq = np.random.SeedSequence(seed).spawn(2)
        design = self._build_design(atype, specs, int(n), np.random.default_rng(design_seq))

        budget = self.timeout_seconds if timeout is None else timeout
        deadline = None if budget is None else time.monotonic() + budget
        outputs, runs = await self._run_rows(vpp_id, specs, design.rows, metrics, deadline)
        completed = len(outputs)
        timed_out = completed < len(design.rows)

        indices: list[SensitivityIndex] = []
        if completed >= 2:
            y = np.asarray(outputs, dtype=np.float64)
            indices = self._compute_indices(
                atype,
                specs,
                metrics,
                design,
                y,
                level,
                np.random.default_rng(bootstrap_seq),
            )

        top: dict[str, list[str]] = {}
        for metric in metrics:
            ranked = sorted(
                (i for i in indices if i.output_metric == metric),
                key=lambda i: i.index,
                reverse=True,
            )
            top[metric] = [i.parameter for i in ranked]

        result = SensitivityResult(
            vpp_id=vpp_id,
            analysis_type=atype,
            indices=indices,
            samples_drawn=len(design.rows),
            samples_evaluated=completed,
            model_runs=runs,
            seed=seed,
            timed_out=timed_out,
            converged=not timed_out,
            top_influencers=top,
        )
        logger.info(
            "sensitivity_analysis_completed",
            vpp_id=vpp_id,
            analysis_type=atype.value,
            n_parameters=len(specs),
            model_runs=result.model_runs,
            timed_out=timed_out,
        )
        return result

    # ------------------------------------------------------------------
    # Design
    # ------------------------------------------------------------------
    def _parse_type(self, analysis_type: Any) -> SensitivityAnalysisType:
        if analysis_type is None:
            return self.default_type
        try:
            return SensitivityAnalysisType(analysis_type)
        except ValueError as exc:
            raise UnsupportedMethodError(
                f"Unsupported sensitivity analysis type '{analysis_type}'"
            ) from exc

    def _build_design(
        self,
        atype: SensitivityAnalysisType,
        specs: list[ParameterSpec],
        n: int,
        rng: np.random.Generator,
    ) -> _Design:
        k = len(specs)
        if atype == SensitivityAnalysisType.GLOBAL:
            x = to_parameter_space(latin_hypercube(n, k, rng), specs)
            return _Design(rows=x[:, np.newaxis, :])

        if atype == SensitivityAnalysisType.VARIANCE_BASED:
            a, b, ab = saltelli_matrices(n, k, rng)
            pa = to_parameter_space(a, specs)
            pb = to_parameter_space(b, specs)
            pab = np.stack([to_parameter_space(ab[i], specs) for i in range(k)], axis=1)
            rows = np.concatenate([pa[:, np.newaxis], pb[:, np.newaxis], pab], axis=1)
            return _Design(rows=rows)

        if atype == SensitivityAnalysisType.MORRIS_METHOD:
            points, order, steps = morris_trajectories(n, k, self.morris_levels, rng)
            rows = to_parameter_space(points.reshape(-1, k), specs).reshape(n, k + 1, k)
            return _Design(rows=rows, meta={"order": order, "steps": steps})

        # Local: base point plus one perturbed point per parameter
        x = to_parameter_space(latin_hypercube(n, k, rng), specs)
        widths = np.array([s.width for s in specs])
        uppers = np.array([s.upper for s in specs])
        h = self.finite_difference_step * widths
        signed = np.where(x + h <= uppers, h, -h)
        rows = np.repeat(x[:, np.newaxis, :], k + 1, axis=1)
        for i in range(k):
            rows[:, i + 1, i] += signed[:, i]
        return _Design(rows=rows, meta={"steps": signed, "widths": widths})

    async def _run_rows(
        self,
        vpp_id: str,
        specs: list[ParameterSpec],
        rows: np.ndarray,
        metrics: list[str],
        deadline: float | None,
    ) -> tuple[list[list[list[float]]], int]:
        """Evaluate whole rows until done or out of time; returns (outputs, runs)."""
        outputs: list[list[list[float]]] = []
        runs = 0
        try:
            for row in rows:
                row_out = []
                for point in row:
                    values = await self._evaluate(
                        vpp_id, as_sample(point, specs), metrics, deadline
                    )
                    runs += 1
                    row_out.append([_metric_value(values, m) for m in metrics])
                outputs.append(row_out)
        except AnalysisTimeoutError as exc:
            logger.warning(
                "sensitivity_analysis_timed_out",
                vpp_id=vpp_id,
                completed_rows=len(outputs),
                total_rows=len(rows),
                error=str(exc),
            )
        return outputs, runs

    async def _evaluate(
        self,
        vpp_id: str,
        sample: dict[str, float],
        metrics: list[str],
        deadline: float | None,
    ) -> Any:
        """One model run bounded by *deadline*.

        Raises:
            AnalysisTimeoutError: The budget was spent before or during the run.
        """
        remaining = None
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise AnalysisTimeoutError("time budget exhausted")

        if inspect.iscoroutinefunction(self.model.run):
            call = self.model.run(vpp_id, sample, metrics)
        else:
            call = asyncio.to_thread(self.model.run, vpp_id, sample, metrics)
        try:
            values = await asyncio.wait_for(call, remaining)
        except asyncio.TimeoutError as exc:
            raise AnalysisTimeoutError(
                f"model run exceeded the remaining {remaining:.3f}s budget"
            ) from exc
        return await resolve(values)

    # ------------------------------------------------------------------
    # Indices
    # ------------------------------------------------------------------
    def _compute_indices(
        self,
        atype: SensitivityAnalysisType,
        specs: list[ParameterSpec],
        metrics: list[str],
        design: _Design,
        y: np.ndarray,
        level: float,
        rng: np.random.Generator,
    ) -> list[SensitivityIndex]:
        n_rows = y.shape[0]
        x = design.rows[:n_rows]
        k = len(specs)
        indices: list[SensitivityIndex] = []

        for j, metric in enumerate(metrics):
            estimator, details = self._estimator(atype, design, x, y[:, :, j], n_rows, k)
            point = estimator(np.arange(n_rows))
            for i, spec in enumerate(specs):
                ci = bootstrap_interval(
                    lambda rows, i=i: float(estimator(rows)[i]),
                    n_rows,
                    self.bootstrap_resamples,
                    level,
                    rng,
                )
                indices.append(
                    SensitivityIndex(
                        parameter=spec.name,
                        output_metric=metric,
                        index=float(point[i]),
                        confidence_interval=ci,
                        confidence_level=level,
                        method=atype,
                        details={name: float(values[i]) for name, values in details.items()},
                    )
                )
        return indices

    def _estimator(
        self,
        atype: SensitivityAnalysisType,
        design: _Design,
        x: np.ndarray,
        y: np.ndarray,
        n_rows: int,
        k: int,
    ) -> tuple[Callable[[np.ndarray], np.ndarray], dict[str, np.ndarray]]:
        """Vector estimator over a row selection, plus full-sample details.

        *y* is (rows x points_per_row) for a single output metric.
        """
        if atype == SensitivityAnalysisType.GLOBAL:
            xs, ys = x[:, 0, :], y[:, 0]

            def global_est(rows: np.ndarray) -> np.ndarray:
                return np.array(
                    [correlation_ratio(xs[rows, i], ys[rows], self.n_bins) for i in range(k)]
                )

            return global_est, {}

        if atype == SensitivityAnalysisType.VARIANCE_BASED:

            def sobol_est(rows: np.ndarray) -> np.ndarray:
                ya, yb = y[rows, 0], y[rows, 1]
                return np.array([sobol_first_order(ya, yb, y[rows, 2 + i]) for i in range(k)])

            return sobol_est, {}

        if atype == SensitivityAnalysisType.MORRIS_METHOD:
            order = design.meta["order"][:n_rows]
            steps = design.meta["steps"][:n_rows]
            effects = np.empty((n_rows, k))
            for t in range(n_rows):
                for s in range(k):
                    effects[t, order[t, s]] = (y[t, s + 1] - y[t, s]) / steps[t, s]

            def morris_est(rows: np.ndarray) -> np.ndarray:
                mu_star = np.mean(np.abs(effects[rows]), axis=0)
                return normalise(mu_star)

            stats = np.array([morris_statistics(effects[:, i]) for i in range(k)])
            return morris_est, {"mu": stats[:, 0], "mu_star": stats[:, 1], "sigma": stats[:, 2]}

        steps = design.meta["steps"][:n_rows]
        widths = design.meta["widths"]
        derivs = (y[:, 1:] - y[:, [0]]) / steps * widths

        def local_est(rows: np.ndarray) -> np.ndarray:
            return normalise(np.mean(np.abs(derivs[rows]), axis=0))

        return local_est, {"mean_abs_scaled_derivative": np.mean(np.abs(derivs), axis=0)}


def _metric_value(values: Any, metric: str) -> float:
    try:
        value = float(values[metric])
    except (KeyError, TypeError, ValueError) as exc:
        raise InputValidationError(f"model output lacks numeric metric '{metric}'") from exc
    if not np.isfinite(value):
        raise InputValidationError(f"model output for '{metric}' is not finite")
    return value

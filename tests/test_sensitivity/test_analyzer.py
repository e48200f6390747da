"""Tests for SensitivityAnalyzer.

The reference model is additive, Y = 2a + b with a, b ~ U(0, 1), so the
first-order variance shares are 0.8 and 0.2 and the normalised
elementary-effect / derivative shares are 2/3 and 1/3.

Covers:
- variance_based and global_sensitivity recover the variance shares
- morris_method and local_sensitivity recover the effect shares exactly
- run counts per design
- seeded determinism and seed reporting
- timeout: partial results, empty result when nothing completes,
  slow model runs cut off at the deadline
- validation: analysis type, parameters, sample size, model output
"""

from __future__ import annotations

import asyncio
import time
from unittest.mock import patch

import pytest

from vpp_analytics.core.enums import SensitivityAnalysisType
from vpp_analytics.core.exceptions import (
    InputValidationError,
    UnsupportedMethodError,
)
from vpp_analytics.core.memory import CallableValuationModel
from vpp_analytics.sensitivity.analyzer import SensitivityAnalyzer

PARAMETERS = [
    {"name": "a", "lower": 0.0, "upper": 1.0},
    {"name": "b", "lower": 0.0, "upper": 1.0},
]


def additive(sample):
    y = 2.0 * sample["a"] + sample["b"]
    return {"profit": y, "risk": -y, "efficiency": 0.5 * y}


class AsyncAdditiveModel:
    """Coroutine-based model, to exercise awaitable model runs."""

    def __init__(self) -> None:
        self.calls = 0

    async def run(self, vpp_id, sample, output_metrics):
        self.calls += 1
        values = additive(sample)
        return {m: values[m] for m in output_metrics}


@pytest.fixture
def model() -> CallableValuationModel:
    return CallableValuationModel(additive)


@pytest.fixture
def analyzer(model) -> SensitivityAnalyzer:
    return SensitivityAnalyzer(model, bootstrap_resamples=50, timeout_seconds=None)


# ---------------------------------------------------------------------------
# Index recovery
# ---------------------------------------------------------------------------
class TestIndexRecovery:
    """Each design recovers the known influence of a and b."""

    @pytest.mark.asyncio
    async def test_variance_based(self, analyzer, model):
        result = await analyzer.analyze(
            "vpp-1", "variance_based", PARAMETERS, ["profit"], sample_size=1000, seed=42
        )
        assert result.index_for("a", "profit").index == pytest.approx(0.8, abs=0.1)
        assert result.index_for("b", "profit").index == pytest.approx(0.2, abs=0.1)
        assert result.model_runs == 1000 * (2 + 2)
        assert model.calls == result.model_runs
        assert result.top_influencers["profit"] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_global(self, analyzer):
        result = await analyzer.analyze(
            "vpp-1", "global_sensitivity", PARAMETERS, ["profit"], sample_size=1000, seed=42
        )
        assert result.index_for("a", "profit").index == pytest.approx(0.8, abs=0.1)
        assert result.index_for("b", "profit").index == pytest.approx(0.2, abs=0.1)
        assert result.model_runs == 1000

    @pytest.mark.asyncio
    async def test_morris(self, analyzer):
        result = await analyzer.analyze(
            "vpp-1", "morris_method", PARAMETERS, ["profit", "risk"], sample_size=20, seed=1
        )
        for metric in ("profit", "risk"):
            assert result.index_for("a", metric).index == pytest.approx(2 / 3)
            assert result.index_for("b", metric).index == pytest.approx(1 / 3)
        details = result.index_for("a", "risk").details
        assert details["mu"] == pytest.approx(-2.0)
        assert details["mu_star"] == pytest.approx(2.0)
        assert result.model_runs == 20 * 3

    @pytest.mark.asyncio
    async def test_local(self, analyzer):
        result = await analyzer.analyze(
            "vpp-1", "local_sensitivity", PARAMETERS, ["efficiency"], sample_size=10, seed=3
        )
        assert result.index_for("a", "efficiency").index == pytest.approx(2 / 3, abs=1e-6)
        assert result.index_for("b", "efficiency").index == pytest.approx(1 / 3, abs=1e-6)
        assert result.model_runs == 10 * 3

    @pytest.mark.asyncio
    async def test_confidence_interval_brackets_index(self, analyzer):
        result = await analyzer.analyze(
            "vpp-1", "variance_based", PARAMETERS, ["profit"], sample_size=500, seed=5,
            confidence_level=0.9,
        )
        for idx in result.indices:
            lower, upper = idx.confidence_interval
            assert lower <= upper
            assert idx.confidence_level == 0.9
            assert idx.method == SensitivityAnalysisType.VARIANCE_BASED

    @pytest.mark.asyncio
    async def test_async_model_and_defaults(self):
        model = AsyncAdditiveModel()
        analyzer = SensitivityAnalyzer(
            model, bootstrap_resamples=10, timeout_seconds=None, default_sample_size=50
        )
        result = await analyzer.analyze("vpp-1", parameters=PARAMETERS, seed=0)
        assert result.analysis_type == SensitivityAnalysisType.GLOBAL
        assert set(result.top_influencers) == {"profit", "risk", "efficiency"}
        assert len(result.indices) == 2 * 3
        assert model.calls == 50
        frame = result.to_frame()
        assert frame.shape == (2, 3)


# ---------------------------------------------------------------------------
# Reproducibility
# ---------------------------------------------------------------------------
class TestReproducibility:
    """Seeded runs are deterministic; unseeded runs report their seed."""

    @pytest.mark.asyncio
    async def test_same_seed_same_result(self, analyzer):
        kwargs = dict(output_metrics=["profit"], sample_size=200, seed=11)
        first = await analyzer.analyze("vpp-1", "variance_based", PARAMETERS, **kwargs)
        second = await analyzer.analyze("vpp-1", "variance_based", PARAMETERS, **kwargs)
        assert first.indices == second.indices

    @pytest.mark.asyncio
    async def test_reported_seed_reproduces(self, analyzer):
        first = await analyzer.analyze(
            "vpp-1", "global_sensitivity", PARAMETERS, ["profit"], sample_size=100
        )
        assert isinstance(first.seed, int)
        second = await analyzer.analyze(
            "vpp-1", "global_sensitivity", PARAMETERS, ["profit"], sample_size=100, seed=first.seed
        )
        assert first.indices == second.indices


# ---------------------------------------------------------------------------
# Timeout
# ---------------------------------------------------------------------------
class TestTimeout:
    """Time budget handling."""

    @pytest.mark.asyncio
    async def test_partial_result(self):
        clock = {"t": 0.0}

        def slow(sample):
            clock["t"] += 1.0
            return additive(sample)

        analyzer = SensitivityAnalyzer(CallableValuationModel(slow), bootstrap_resamples=10)
        with patch("vpp_analytics.sensitivity.analyzer.time") as fake_time:
            fake_time.monotonic.side_effect = lambda: clock["t"]
            result = await analyzer.analyze(
                "vpp-1", "global_sensitivity", PARAMETERS, ["profit"],
                sample_size=50, seed=0, timeout=5.5,
            )
        assert result.timed_out
        assert not result.converged
        assert result.samples_drawn == 50
        assert result.samples_evaluated == 6
        assert result.model_runs == 6

    @pytest.mark.asyncio
    async def test_nothing_completed(self, analyzer, model):
        result = await analyzer.analyze(
            "vpp-1", "global_sensitivity", PARAMETERS, ["profit"],
            sample_size=10, seed=1, timeout=0.0,
        )
        assert result.timed_out
        assert not result.converged
        assert result.indices == []
        assert result.top_influencers == {"profit": []}
        assert result.samples_evaluated == 0
        assert result.model_runs == 0
        assert model.calls == 0

    @pytest.mark.asyncio
    async def test_slow_async_run_cancelled(self):
        class SleepyModel:
            def __init__(self) -> None:
                self.cancelled = False

            async def run(self, vpp_id, sample, output_metrics):
                try:
                    await asyncio.sleep(2.0)
                except asyncio.CancelledError:
                    self.cancelled = True
                    raise
                return additive(sample)

        model = SleepyModel()
        analyzer = SensitivityAnalyzer(model, bootstrap_resamples=10)
        started = time.monotonic()
        result = await analyzer.analyze(
            "vpp-1", "global_sensitivity", PARAMETERS, ["profit"],
            sample_size=3, seed=1, timeout=0.2,
        )
        assert time.monotonic() - started < 1.0
        assert result.timed_out
        assert result.samples_evaluated == 0
        assert model.cancelled

    @pytest.mark.asyncio
    async def test_slow_sync_run_leaves_loop_free(self):
        def blocking(sample):
            time.sleep(1.0)
            return additive(sample)

        analyzer = SensitivityAnalyzer(CallableValuationModel(blocking), bootstrap_resamples=10)
        ticks = []

        async def heartbeat():
            for _ in range(5):
                ticks.append(time.monotonic())
                await asyncio.sleep(0.01)

        started = time.monotonic()
        result, _ = await asyncio.gather(
            analyzer.analyze(
                "vpp-1", "global_sensitivity", PARAMETERS, ["profit"],
                sample_size=3, seed=1, timeout=0.2,
            ),
            heartbeat(),
        )
        assert time.monotonic() - started < 0.9
        assert result.timed_out
        assert result.indices == []
        # The event loop kept running while the model blocked its thread
        assert len(ticks) == 5
        assert ticks[-1] - started < 0.5


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
class TestValidation:
    """Input validation errors."""

    @pytest.mark.asyncio
    async def test_unknown_type(self, analyzer):
        with pytest.raises(UnsupportedMethodError):
            await analyzer.analyze("vpp-1", "fourier", PARAMETERS)

    @pytest.mark.asyncio
    async def test_no_parameters(self, analyzer):
        with pytest.raises(InputValidationError):
            await analyzer.analyze("vpp-1", "global_sensitivity", [])

    @pytest.mark.asyncio
    @pytest.mark.parametrize("size", [0, 1, 2.5])
    async def test_bad_sample_size(self, analyzer, size):
        with pytest.raises(InputValidationError):
            await analyzer.analyze("vpp-1", "global_sensitivity", PARAMETERS, sample_size=size)

    @pytest.mark.asyncio
    async def test_bad_confidence_level(self, analyzer):
        with pytest.raises(InputValidationError):
            await analyzer.analyze(
                "vpp-1", "global_sensitivity", PARAMETERS, sample_size=10, confidence_level=1.0
            )

    @pytest.mark.asyncio
    async def test_missing_model_metric(self, analyzer):
        with pytest.raises(InputValidationError):
            await analyzer.analyze(
                "vpp-1", "global_sensitivity", PARAMETERS, ["revenue"], sample_size=10, seed=0
            )

    def test_from_settings(self, analytics_settings, model):
        analyzer = SensitivityAnalyzer.from_settings(analytics_settings, model)
        assert analyzer.bootstrap_resamples == 50
        assert analyzer.default_type == SensitivityAnalysisType.GLOBAL
        assert analyzer.default_sample_size == 1000

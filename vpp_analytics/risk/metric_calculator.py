"""Per-risk-type metric computation from historical collaborator series.

Market risk uses historical simulation over the VPP's price series:
- period returns r_i = (p_{i-1} - p_i) / p_i on a newest-first series
- VaR(95%): absolute return at index floor(n * 0.05) of the sorted returns
- CVaR(95%): absolute mean of all returns at or below that index
- volatility: population standard deviation of returns (not annualized)

Other risk types delegate to the pure scorers in ``vpp_analytics.risk.scorers``.

Degradation rules: fewer than ``min_history_points`` prices yields a
zero-valued metric flagged INSUFFICIENT; an unreachable collaborator yields a
zero-valued metric flagged UNAVAILABLE. Neither case raises, so the
monitoring loop keeps running on partial data.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

import numpy as np
import pandas as pd
import structlog

from vpp_analytics.core.enums import DataQuality, RiskType
from vpp_analytics.core.exceptions import InputValidationError
from vpp_analytics.core.interfaces import HistoricalDataSource
from vpp_analytics.core.retry import TRANSIENT_ERRORS, call_collaborator
from vpp_analytics.risk.scorers import SCORERS

logger = structlog.get_logger(__name__)

MIN_HISTORY_POINTS = 30
VAR_CONFIDENCE = 0.95
MARKET_FIELDS = ("var", "cvar", "volatility")


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class RiskMetric:
    """Metric snapshot for one risk type of one VPP.

    Attributes:
        risk_type: Category the metric belongs to.
        values: ``{var, cvar, volatility}`` for market risk, ``{score}`` otherwise.
        computed_at: When the metric was computed.
        data_quality: OK, INSUFFICIENT or UNAVAILABLE.
        n_observations: Number of usable observations behind the metric.
    """

    risk_type: RiskType
    values: dict[str, float]
    computed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    data_quality: DataQuality = DataQuality.OK
    n_observations: int = 0

    @property
    def var(self) -> float:
        return self.values.get("var", 0.0)

    @property
    def cvar(self) -> float:
        return self.values.get("cvar", 0.0)

    @property
    def volatility(self) -> float:
        return self.values.get("volatility", 0.0)

    @property
    def score(self) -> float:
        return self.values.get("score", 0.0)

    @classmethod
    def zero(
        cls,
        risk_type: RiskType,
        data_quality: DataQuality,
        n_observations: int = 0,
    ) -> RiskMetric:
        """Zero-valued metric used when data is missing or degraded."""
        fields = MARKET_FIELDS if risk_type == RiskType.MARKET else ("score",)
        return cls(
            risk_type=risk_type,
            values={name: 0.0 for name in fields},
            data_quality=data_quality,
            n_observations=n_observations,
        )


# ---------------------------------------------------------------------------
# Pure computation functions
# ---------------------------------------------------------------------------
def clean_series(records: Iterable[Any], value_key: str, positive: bool = False) -> np.ndarray:
    """Extract a finite numeric array from collaborator records.

    Order is preserved (newest first). Non-numeric and non-finite values are
    dropped; with ``positive=True`` non-positive values are dropped too.
    """
    frame = pd.DataFrame(list(records or []))
    if frame.empty or value_key not in frame.columns:
        return np.empty(0, dtype=np.float64)
    values = pd.to_numeric(frame[value_key], errors="coerce").to_numpy(dtype=np.float64)
    mask = np.isfinite(values)
    if positive:
        mask &= values > 0
    return values[mask]


def compute_returns(prices: Sequence[float]) -> np.ndarray:
    """Simple period returns for a newest-first price series."""
    p = np.asarray(prices, dtype=np.float64)
    if len(p) < 2:
        return np.empty(0, dtype=np.float64)
    return (p[:-1] - p[1:]) / p[1:]


def compute_historical_var(
    returns: np.ndarray, confidence: float = VAR_CONFIDENCE
) -> tuple[float, float]:
    """Historical-simulation VaR and CVaR, both as absolute values.

    Args:
        returns: 1-D array of period returns (any order).
        confidence: Confidence level; the tail index is floor(n * (1 - confidence)).

    Returns:
        (var, cvar). (0.0, 0.0) for an empty series.
    """
    n = len(returns)
    if n == 0:
        return 0.0, 0.0
    ordered = np.sort(np.asarray(returns, dtype=np.float64))
    idx = min(int(math.floor(n * (1.0 - confidence) + 1e-9)), n - 1)
    var = abs(float(ordered[idx]))
    cvar = abs(float(ordered[: idx + 1].mean()))
    return var, cvar


def compute_market_risk(
    prices: Sequence[float], min_points: int = MIN_HISTORY_POINTS
) -> tuple[dict[str, float], DataQuality]:
    """VaR/CVaR/volatility for a newest-first price series.

    Returns:
        (values, data_quality). Values are all zero when fewer than
        *min_points* prices are supplied.
    """
    if len(prices) < min_points:
        return {name: 0.0 for name in MARKET_FIELDS}, DataQuality.INSUFFICIENT

    returns = compute_returns(prices)
    var, cvar = compute_historical_var(returns, VAR_CONFIDENCE)
    volatility = float(np.std(returns)) if len(returns) else 0.0
    return {"var": var, "cvar": cvar, "volatility": volatility}, DataQuality.OK


def compute_category_score(risk_type: RiskType, values: np.ndarray) -> float:
    """Score a non-market risk type from its cleaned signal array."""
    scorer = SCORERS.get(risk_type)
    if scorer is None:
        raise InputValidationError(f"No scorer registered for risk type '{risk_type}'")
    return scorer(values)


def parse_risk_types(risk_types: Iterable[RiskType | str] | None) -> list[RiskType]:
    """Normalise requested risk types; ``None`` means all of them."""
    if risk_types is None:
        return list(RiskType)
    parsed: list[RiskType] = []
    for rt in risk_types:
        try:
            parsed.append(RiskType(rt))
        except ValueError as exc:
            raise InputValidationError(f"Unknown risk type '{rt}'") from exc
    return parsed


# ---------------------------------------------------------------------------
# RiskMetricCalculator
# ---------------------------------------------------------------------------
class RiskMetricCalculator:
    """Computes RiskMetric snapshots for a VPP from its historical series.

    Args:
        data_source: Historical data collaborator.
        min_history_points: Minimum prices required for market risk.
        price_history_limit: Most recent prices requested from the source.
        retry_attempts: Attempts per collaborator read before degrading.
        retry_wait_seconds: Initial retry backoff.
    """

    def __init__(
        self,
        data_source: HistoricalDataSource,
        min_history_points: int = MIN_HISTORY_POINTS,
        price_history_limit: int = 100,
        retry_attempts: int = 3,
        retry_wait_seconds: float = 0.1,
    ) -> None:
        self.data_source = data_source
        self.min_history_points = min_history_points
        self.price_history_limit = price_history_limit
        self.retry_attempts = retry_attempts
        self.retry_wait_seconds = retry_wait_seconds

    async def calculate(
        self,
        vpp_id: str,
        risk_types: Iterable[RiskType | str] | None = None,
    ) -> dict[RiskType, RiskMetric]:
        """Compute one metric per requested risk type.

        Args:
            vpp_id: VPP identifier.
            risk_types: Risk types to compute; all types when None.

        Returns:
            Mapping of RiskType -> RiskMetric, in request order.
        """
        metrics: dict[RiskType, RiskMetric] = {}
        for risk_type in parse_risk_types(risk_types):
            if risk_type == RiskType.MARKET:
                metrics[risk_type] = await self._market_metric(vpp_id)
            else:
                metrics[risk_type] = await self._category_metric(vpp_id, risk_type)

        degraded = [
            rt.value for rt, m in metrics.items() if m.data_quality != DataQuality.OK
        ]
        logger.info(
            "risk_metrics_calculated",
            vpp_id=vpp_id,
            n_metrics=len(metrics),
            degraded=degraded,
        )
        return metrics

    async def _market_metric(self, vpp_id: str) -> RiskMetric:
        try:
            records = await call_collaborator(
                self.data_source.get_price_series,
                vpp_id,
                self.price_history_limit,
                attempts=self.retry_attempts,
                wait_seconds=self.retry_wait_seconds,
            )
        except TRANSIENT_ERRORS as exc:
            logger.warning(
                "risk_metric_unavailable",
                vpp_id=vpp_id,
                risk_type=RiskType.MARKET.value,
                error=str(exc),
            )
            return RiskMetric.zero(RiskType.MARKET, DataQuality.UNAVAILABLE)

        prices = clean_series(records, "price", positive=True)
        values, quality = compute_market_risk(prices, self.min_history_points)
        if quality == DataQuality.INSUFFICIENT:
            logger.warning(
                "market_risk_insufficient_history",
                vpp_id=vpp_id,
                n_obs=len(prices),
                min_required=self.min_history_points,
            )
        return RiskMetric(
            risk_type=RiskType.MARKET,
            values=values,
            data_quality=quality,
            n_observations=len(prices),
        )

    async def _category_metric(self, vpp_id: str, risk_type: RiskType) -> RiskMetric:
        try:
            records = await call_collaborator(
                self.data_source.get_signal_series,
                vpp_id,
                risk_type,
                self.price_history_limit,
                attempts=self.retry_attempts,
                wait_seconds=self.retry_wait_seconds,
            )
        except TRANSIENT_ERRORS as exc:
            logger.warning(
                "risk_metric_unavailable",
                vpp_id=vpp_id,
                risk_type=risk_type.value,
                error=str(exc),
            )
            return RiskMetric.zero(risk_type, DataQuality.UNAVAILABLE)

        values = clean_series(records, "value")
        if len(values) == 0:
            return RiskMetric.zero(risk_type, DataQuality.INSUFFICIENT)

        return RiskMetric(
            risk_type=risk_type,
            values={"score": compute_category_score(risk_type, values)},
            data_quality=DataQuality.OK,
            n_observations=len(values),
        )

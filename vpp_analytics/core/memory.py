"""In-memory collaborator implementations.

Reference implementations of every protocol in ``interfaces`` backed by
plain dicts. Used by the test-suite and by applications embedding the
analytics core without a database.
"""

from __future__ import annotations

import copy
from typing import Any, Callable, Mapping, Sequence

from vpp_analytics.core.enums import RiskType
from vpp_analytics.core.exceptions import CollaboratorUnavailableError


class InMemoryDataSource:
    """Historical series, assets, baselines and active VPPs held in memory.

    A VPP listed in ``unavailable`` raises CollaboratorUnavailableError on
    every read, mimicking an unreachable upstream.
    """

    def __init__(self) -> None:
        self.price_series: dict[str, list[dict[str, Any]]] = {}
        self.signal_series: dict[tuple[str, RiskType], list[dict[str, Any]]] = {}
        self.assets: dict[str, list[dict[str, Any]]] = {}
        self.baselines: dict[str, dict[str, float]] = {}
        self.active: list[str] = []
        self.unavailable: set[str] = set()

    def _check(self, vpp_id: str) -> None:
        if vpp_id in self.unavailable:
            raise CollaboratorUnavailableError(f"data source unavailable for {vpp_id}")

    async def get_price_series(self, vpp_id: str, limit: int = 100) -> list[dict[str, Any]]:
        self._check(vpp_id)
        return copy.deepcopy(self.price_series.get(vpp_id, [])[:limit])

    async def get_signal_series(
        self, vpp_id: str, risk_type: RiskType, limit: int = 100
    ) -> list[dict[str, Any]]:
        self._check(vpp_id)
        return copy.deepcopy(self.signal_series.get((vpp_id, RiskType(risk_type)), [])[:limit])

    async def list_active_vpps(self) -> list[str]:
        return list(self.active)

    async def get_portfolio_assets(self, vpp_id: str) -> list[dict[str, Any]]:
        self._check(vpp_id)
        return copy.deepcopy(self.assets.get(vpp_id, []))

    async def get_baseline_state(self, vpp_id: str) -> dict[str, float]:
        self._check(vpp_id)
        if vpp_id not in self.baselines:
            raise CollaboratorUnavailableError(f"no baseline state for {vpp_id}")
        return self.baselines[vpp_id]


class InMemoryPersistence:
    """Append-only alert log plus a single persisted config document."""

    def __init__(self, config: Mapping[str, Any] | None = None) -> None:
        self.alerts: list[Any] = []
        self.config: dict[str, Any] | None = dict(config) if config else None

    async def save_alert(self, alert: Any) -> None:
        self.alerts.append(alert)

    async def save_config(self, config: Mapping[str, Any]) -> None:
        self.config = copy.deepcopy(dict(config))

    async def load_config(self) -> dict[str, Any] | None:
        return copy.deepcopy(self.config)


class CallableValuationModel:
    """Wraps a plain function ``f(sample) -> {metric: value}`` as a model."""

    def __init__(self, fn: Callable[[Mapping[str, float]], Mapping[str, float]]) -> None:
        self._fn = fn
        self.calls = 0

    def run(
        self,
        vpp_id: str,
        sample: Mapping[str, float],
        output_metrics: Sequence[str],
    ) -> dict[str, float]:
        self.calls += 1
        values = self._fn(sample)
        return {metric: values[metric] for metric in output_metrics if metric in values}

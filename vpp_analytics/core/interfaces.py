"""Collaborator protocols consumed by the analytics core.

The core never assumes the internal shape of its collaborators beyond these
signatures. Every method may be implemented either as a coroutine or as a
plain function; callers go through ``resolve()`` which awaits the result only
when it is awaitable.

Series are lists of mappings ordered newest first:
- price series: ``{"price": float, "timestamp": ...}``
- signal series: ``{"value": float, "timestamp": ...}``
"""

from __future__ import annotations

import inspect
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from vpp_analytics.core.enums import RiskType


@runtime_checkable
class HistoricalDataSource(Protocol):
    """Historical series for market prices and per-category risk signals."""

    def get_price_series(self, vpp_id: str, limit: int) -> Any:
        """Return ``[{price, timestamp}]`` newest first."""
        ...

    def get_signal_series(self, vpp_id: str, risk_type: RiskType, limit: int) -> Any:
        """Return ``[{value, timestamp}]`` newest first for a non-market risk."""
        ...


@runtime_checkable
class ActiveVppSource(Protocol):
    """Enumerates the VPPs the monitoring loop should evaluate."""

    def list_active_vpps(self) -> Any:
        """Return a sequence of VPP identifiers."""
        ...


@runtime_checkable
class PortfolioSource(Protocol):
    """Energy assets that make up a VPP portfolio."""

    def get_portfolio_assets(self, vpp_id: str) -> Any:
        """Return ``[{id, expected_return?, volatility?, returns?}]``."""
        ...


@runtime_checkable
class BaselineStateSource(Protocol):
    """Current financial/operational state of a VPP."""

    def get_baseline_state(self, vpp_id: str) -> Any:
        """Return ``{revenue, profit, risk, liquidity}``."""
        ...


@runtime_checkable
class ValuationModel(Protocol):
    """Valuation/simulation model run once per sensitivity sample."""

    def run(
        self,
        vpp_id: str,
        sample: Mapping[str, float],
        output_metrics: Sequence[str],
    ) -> Any:
        """Return ``{metric: value}`` for every requested output metric."""
        ...


@runtime_checkable
class PersistenceSink(Protocol):
    """Append-only alert storage plus configuration persistence."""

    def save_alert(self, alert: Any) -> Any:
        ...

    def save_config(self, config: Mapping[str, Any]) -> Any:
        ...

    def load_config(self) -> Any:
        """Return persisted overrides as a nested dict (or None)."""
        ...


async def resolve(value: Any) -> Any:
    """Await *value* if it is awaitable, otherwise return it unchanged."""
    if inspect.isawaitable(value):
        return await value
    return value

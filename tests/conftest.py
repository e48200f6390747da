"""Root pytest configuration and shared fixtures.

Provides common test fixtures used across all test modules:
- price_records / signal_records: builders for newest-first collaborator series
- data_source: InMemoryDataSource populated with one healthy VPP
- persistence: InMemoryPersistence
- notifier: EventNotifier
- analytics_settings: Settings with fast collaborator retries
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import numpy as np
import pytest

from vpp_analytics.core.config import Settings
from vpp_analytics.core.enums import RiskType
from vpp_analytics.core.memory import InMemoryDataSource, InMemoryPersistence
from vpp_analytics.monitoring.notifier import EventNotifier

_T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def make_price_records(prices_oldest_first: list[float]) -> list[dict[str, Any]]:
    """Wrap prices into newest-first ``{price, timestamp}`` records."""
    n = len(prices_oldest_first)
    records = [
        {"price": p, "timestamp": (_T0 + timedelta(hours=i)).isoformat()}
        for i, p in enumerate(prices_oldest_first)
    ]
    assert len(records) == n
    return list(reversed(records))


def make_signal_records(values_newest_first: list[float]) -> list[dict[str, Any]]:
    return [
        {"value": v, "timestamp": (_T0 - timedelta(hours=i)).isoformat()}
        for i, v in enumerate(values_newest_first)
    ]


def falling_prices(n: int = 100, start: float = 100.0) -> list[float]:
    """Oldest-first prices falling 2%-4.7% every period."""
    prices = [start]
    for i in range(n - 1):
        drop = 0.02 + 0.03 * ((i * 7) % 10) / 10.0
        prices.append(prices[-1] * (1.0 - drop))
    return prices


def noisy_prices(n: int = 100, seed: int = 7) -> list[float]:
    """Oldest-first random-walk prices with ~1% period volatility."""
    rng = np.random.default_rng(seed)
    returns = rng.normal(0.0, 0.01, size=n - 1)
    return list(100.0 * np.cumprod(np.concatenate([[1.0], 1.0 + returns])))


@pytest.fixture
def price_records() -> Callable[[list[float]], list[dict[str, Any]]]:
    return make_price_records


@pytest.fixture
def signal_records() -> Callable[[list[float]], list[dict[str, Any]]]:
    return make_signal_records


@pytest.fixture
def data_source() -> InMemoryDataSource:
    """One calm VPP ("vpp-1") with every series and a baseline state."""
    source = InMemoryDataSource()
    source.active = ["vpp-1"]
    source.price_series["vpp-1"] = make_price_records(noisy_prices())
    for risk_type in RiskType:
        if risk_type == RiskType.MARKET:
            continue
        source.signal_series[("vpp-1", risk_type)] = make_signal_records([0.1] * 20)
    source.signal_series[("vpp-1", RiskType.LIQUIDITY)] = make_signal_records([2.0] * 20)
    source.signal_series[("vpp-1", RiskType.REGULATORY)] = make_signal_records([1.0] * 20)
    source.baselines["vpp-1"] = {
        "revenue": 1000.0,
        "profit": 200.0,
        "risk": 0.3,
        "liquidity": 500.0,
    }
    source.assets["vpp-1"] = [
        {"id": "solar", "expected_return": 0.08, "volatility": 0.20},
        {"id": "wind", "expected_return": 0.10, "volatility": 0.25},
        {"id": "battery", "expected_return": 0.06, "volatility": 0.10},
    ]
    return source


@pytest.fixture
def persistence() -> InMemoryPersistence:
    return InMemoryPersistence()


@pytest.fixture
def notifier() -> EventNotifier:
    return EventNotifier()


@pytest.fixture
def analytics_settings() -> Settings:
    """Default settings with collaborator retries that do not sleep."""
    return Settings().merged(
        {
            "risk_monitoring": {
                "collaborator_retry_attempts": 2,
                "collaborator_retry_wait_seconds": 0.0,
            },
            "sensitivity_analysis": {"bootstrap_resamples": 50},
        }
    )

"""Pydantic-settings configuration for the VPP analytics core.

Loads defaults for every analytics component, overridable from the
environment (``VPP_ANALYTICS_`` prefix, ``__`` for nested keys) or a .env
file. Persisted overrides returned by a persistence sink's ``load_config``
are deep-merged on top via ``Settings.merged()``.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from vpp_analytics.core.enums import (
    OptimizationMethod,
    RiskLevel,
    RiskType,
    SensitivityAnalysisType,
    StressScenarioType,
)


def _default_thresholds() -> dict[RiskType, float]:
    return {
        RiskType.MARKET: 0.7,
        RiskType.CREDIT: 0.8,
        RiskType.OPERATIONAL: 0.75,
        RiskType.LIQUIDITY: 0.8,
        RiskType.REGULATORY: 0.9,
        RiskType.WEATHER: 0.7,
        RiskType.TECHNICAL: 0.8,
    }


def _default_severities() -> dict[StressScenarioType, float]:
    return {
        StressScenarioType.MARKET_CRASH: 0.3,  # 30% price drop
        StressScenarioType.EXTREME_WEATHER: 0.5,  # 50% capacity loss
        StressScenarioType.REGULATORY_CHANGE: 0.2,  # 20% cost increase
        StressScenarioType.TECHNICAL_FAILURE: 0.4,  # 40% equipment outage
        StressScenarioType.LIQUIDITY_CRISIS: 0.6,  # 60% liquidity drop
        StressScenarioType.CYBER_ATTACK: 0.3,  # 30% systems compromised
    }


def _default_recovery_days() -> dict[StressScenarioType, int]:
    return {
        StressScenarioType.MARKET_CRASH: 90,
        StressScenarioType.EXTREME_WEATHER: 7,
        StressScenarioType.REGULATORY_CHANGE: 180,
        StressScenarioType.TECHNICAL_FAILURE: 14,
        StressScenarioType.LIQUIDITY_CRISIS: 30,
        StressScenarioType.CYBER_ATTACK: 21,
    }


class RiskMonitoringSettings(BaseModel):
    """Periodic risk monitoring loop and assessment thresholds."""

    monitoring_interval_seconds: float = 300.0
    alert_thresholds: dict[RiskType, float] = Field(default_factory=_default_thresholds)
    default_threshold: float = 0.8
    min_history_points: int = 30
    price_history_limit: int = 100
    critical_ratio: float = 1.2
    high_ratio: float = 1.0
    medium_ratio: float = 0.7
    max_concurrency: int = 4
    trend_stable_band: float = 0.05
    trend_alerts_enabled: bool = False
    trend_alert_change_rate: float = 0.1
    alert_min_level: RiskLevel = RiskLevel.HIGH
    muted_risk_types: list[RiskType] = Field(default_factory=list)
    collaborator_retry_attempts: int = 3
    collaborator_retry_wait_seconds: float = 0.1

    @field_validator("alert_thresholds")
    @classmethod
    def _positive_thresholds(cls, v: dict[RiskType, float]) -> dict[RiskType, float]:
        for risk_type, threshold in v.items():
            if threshold <= 0:
                raise ValueError(f"threshold for {risk_type} must be positive")
        return v


class PortfolioOptimizationSettings(BaseModel):
    """Defaults for the portfolio optimizer."""

    default_method: OptimizationMethod = OptimizationMethod.MEAN_VARIANCE
    risk_free_rate: float = 0.02
    target_return: float = 0.1
    risk_tolerance: float = 0.1
    max_iterations: int = 1000
    convergence_tolerance: float = 1e-4
    timeout_seconds: float = 30.0
    cvar_confidence: float = 0.95
    cvar_scenarios: int = 2000
    random_seed: int = 42
    frontier_points: int = 20


class SensitivityAnalysisSettings(BaseModel):
    """Defaults for the sensitivity analyzer."""

    default_type: SensitivityAnalysisType = SensitivityAnalysisType.GLOBAL
    sample_size: int = 1000
    confidence_level: float = 0.95
    bootstrap_resamples: int = 200
    morris_levels: int = 4
    n_bins: int = 10
    finite_difference_step: float = 1e-3
    timeout_seconds: float = 60.0
    default_output_metrics: list[str] = Field(
        default_factory=lambda: ["profit", "risk", "efficiency"]
    )


class StressTestSettings(BaseModel):
    """Scenario table and horizon defaults for stress testing."""

    default_scenarios: list[StressScenarioType] = Field(
        default_factory=lambda: [
            StressScenarioType.MARKET_CRASH,
            StressScenarioType.EXTREME_WEATHER,
        ]
    )
    scenario_severity: dict[StressScenarioType, float] = Field(
        default_factory=_default_severities
    )
    recovery_time_estimates: dict[StressScenarioType, int] = Field(
        default_factory=_default_recovery_days
    )
    default_time_horizon_days: int = 30


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="VPP_ANALYTICS_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Project
    project_name: str = "VPP Advanced Analytics"
    debug: bool = False
    log_json: bool = False
    start_monitoring_on_init: bool = True
    cache_ttl_seconds: float = 300.0

    risk_monitoring: RiskMonitoringSettings = Field(default_factory=RiskMonitoringSettings)
    portfolio_optimization: PortfolioOptimizationSettings = Field(
        default_factory=PortfolioOptimizationSettings
    )
    sensitivity_analysis: SensitivityAnalysisSettings = Field(
        default_factory=SensitivityAnalysisSettings
    )
    stress_test: StressTestSettings = Field(default_factory=StressTestSettings)

    def merged(self, overrides: dict[str, Any] | None) -> Settings:
        """Return a new Settings with *overrides* deep-merged on top.

        Unknown keys are ignored; nested sections are merged key by key so a
        partial override (e.g. a single threshold) keeps the other defaults.
        """
        if not overrides:
            return self
        data = _deep_merge(self.model_dump(mode="json"), overrides)
        return type(self).model_validate(data)

    def to_persisted(self) -> dict[str, Any]:
        """JSON-compatible payload for a persistence sink's ``save_config``."""
        return self.model_dump(
            mode="json",
            include={
                "risk_monitoring",
                "portfolio_optimization",
                "sensitivity_analysis",
                "stress_test",
                "cache_ttl_seconds",
            },
        )


def _deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


# Singleton instance
settings = Settings()

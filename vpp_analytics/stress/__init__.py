"""Stress testing package -- named adverse scenarios applied to VPP baselines."""

from vpp_analytics.stress.stress_engine import (
    DEFAULT_PROFILES,
    BaselineState,
    ShockProfile,
    StressScenario,
    StressTestEngine,
    StressTestReport,
    StressTestResult,
)

__all__ = [
    "BaselineState",
    "DEFAULT_PROFILES",
    "ShockProfile",
    "StressScenario",
    "StressTestEngine",
    "StressTestReport",
    "StressTestResult",
]

"""Sensitivity analysis package -- sampling designs, estimators, analyzer."""

from vpp_analytics.sensitivity.analyzer import (
    SensitivityAnalyzer,
    SensitivityIndex,
    SensitivityResult,
)
from vpp_analytics.sensitivity.sampling import ParameterSample, ParameterSpec

__all__ = [
    "ParameterSample",
    "ParameterSpec",
    "SensitivityAnalyzer",
    "SensitivityIndex",
    "SensitivityResult",
]

"""Portfolio optimization package.

Provides:
- PortfolioOptimizer: method-registry optimizer with weight projection.
- Strategies: mean-variance, risk parity, Black-Litterman, HRP, CVaR.
- efficient_frontier / estimate_inputs helpers.
"""

from vpp_analytics.portfolio.black_litterman import (
    AssetView,
    BlackLitterman,
    BlackLittermanConfig,
)
from vpp_analytics.portfolio.optimizer import (
    STRATEGIES,
    FrontierPoint,
    OptimizationResult,
    PortfolioAsset,
    PortfolioOptimizer,
    estimate_inputs,
    register_strategy,
)
from vpp_analytics.portfolio.problem import PortfolioConstraints, project_weights

__all__ = [
    "AssetView",
    "BlackLitterman",
    "BlackLittermanConfig",
    "FrontierPoint",
    "OptimizationResult",
    "PortfolioAsset",
    "PortfolioConstraints",
    "PortfolioOptimizer",
    "STRATEGIES",
    "estimate_inputs",
    "project_weights",
    "register_strategy",
]

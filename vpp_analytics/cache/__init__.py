"""Cache package for the VPP analytics core.

Exports:
- ``AnalyticsCache`` -- in-process TTL cache with last-write-wins semantics
- ``AnalyticsCaches`` -- the risk/optimization/sensitivity/stress families
"""

from vpp_analytics.cache.analytics_cache import AnalyticsCache, AnalyticsCaches

__all__ = ["AnalyticsCache", "AnalyticsCaches"]

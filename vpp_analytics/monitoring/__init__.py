"""Monitoring package -- event notification and the periodic risk loop.

Provides:
- EventNotifier: publish/subscribe for risk_alert and lifecycle events
- RiskMonitoringScheduler (``vpp_analytics.monitoring.scheduler``): periodic
  per-VPP monitoring loop
"""

from vpp_analytics.monitoring.notifier import EventNotifier

__all__ = ["EventNotifier"]

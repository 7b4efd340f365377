"""
Heartbeat task registration for the background jobs.
"""

from ..core.config import get_audit_interval, get_refresh_interval
from ..core.heartbeat import register_task
from ..service import DiscoveryService

IMPRESSION_ROLLOVER_INTERVAL_SEC = 3600


def register_discovery_tasks(service: DiscoveryService, refresh_interval: int = None,
                             audit_interval: int = None):
    """Register refresh, audit and impression rollover with the heartbeat."""
    register_task("relevance_refresh", refresh_interval or get_refresh_interval(), service.run_refresh_cycle)
    register_task("fairness_audit", audit_interval or get_audit_interval(), service.run_audit)
    register_task("impression_rollover", IMPRESSION_ROLLOVER_INTERVAL_SEC, service.rollover_impressions)

"""
Portfolio-side coordination: broker status polling, cached read views and
the refresh-then-invalidate sync cycle.
"""

from .brokers import BrokerStatusAggregator, BrokerStatusPoller
from .sync import PortfolioSyncOrchestrator, SyncFailed
from .views import PortfolioViews

__all__ = [
    "BrokerStatusAggregator",
    "BrokerStatusPoller",
    "PortfolioSyncOrchestrator",
    "PortfolioViews",
    "SyncFailed",
]

"""
Services
Trust management and integrations with the proxy and remote devices
"""

from app.services.gateway import DeviceGateway
from app.services.group_resolver import GroupCapacityResolver
from app.services.health_table import DeviceHealthTable
from app.services.journal import JobJournal
from app.services.reachability import ReachabilityMonitor
from app.services.reconciler import TrustReconciler
from app.services.teardown import TeardownOrchestrator

__all__ = [
    "DeviceGateway",
    "GroupCapacityResolver",
    "DeviceHealthTable",
    "JobJournal",
    "ReachabilityMonitor",
    "TrustReconciler",
    "TeardownOrchestrator",
]

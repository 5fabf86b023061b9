"""Canvas graph state, optimistic sync protocol and dashboards."""

from graphive.graph.dashboards import DashboardService
from graphive.graph.notifications import Notification, NotificationCenter, NotificationLevel
from graphive.graph.state import GraphSnapshot
from graphive.graph.store import DeleteMode, GraphStore

__all__ = [
    "DashboardService",
    "DeleteMode",
    "GraphSnapshot",
    "GraphStore",
    "Notification",
    "NotificationCenter",
    "NotificationLevel",
]

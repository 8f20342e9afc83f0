"""
Real-time consistency: change events, view caches and the notification router.
"""

from pos_core.realtime.router import ChangeNotificationRouter
from pos_core.realtime.types import ChangeEvent, ChangeKind, ConnectionState, Notification, Severity
from pos_core.realtime.views import VIEW_DEPENDENCIES, ViewRegistry, Views

__all__ = [
    "ChangeNotificationRouter",
    "ChangeEvent",
    "ChangeKind",
    "ConnectionState",
    "Notification",
    "Severity",
    "VIEW_DEPENDENCIES",
    "ViewRegistry",
    "Views",
]

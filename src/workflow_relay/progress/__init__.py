"""
Progress relay for long-running webhook workflows.

Routes engine callbacks to browser progress streams over server-sent events,
and provides the client-side projection that renders them.
"""

from .events import EventType, IngestResult, InvalidRequest, ProgressUpdate
from .projection import ProgressView, apply_event, dismiss, initial_view
from .relay import ProgressRelay, RelayStats, Subscription
from .server import RelayServer, create_app

__all__ = [
    "EventType",
    "IngestResult",
    "InvalidRequest",
    "ProgressUpdate",
    "ProgressView",
    "apply_event",
    "dismiss",
    "initial_view",
    "ProgressRelay",
    "RelayStats",
    "Subscription",
    "RelayServer",
    "create_app",
]

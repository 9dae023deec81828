"""Order sync package."""

from vatpilot.tools.sync.single_flight import SingleFlight
from vatpilot.tools.sync.sync_tool import (
    NotConnectedError,
    SyncError,
    SyncPhase,
    SyncResult,
    SyncTool,
    SyncToolLogger,
)

__all__ = [
    "NotConnectedError",
    "SingleFlight",
    "SyncError",
    "SyncPhase",
    "SyncResult",
    "SyncTool",
    "SyncToolLogger",
]

"""
Sync module.

Contains the session state machine, page fetch retry, batch pipeline and controller.
"""
from brokersync.sync.controller import CancellationToken, SyncController, SyncResult
from brokersync.sync.progress import ProgressChannel, ProgressEvent
from brokersync.sync.session import SyncSession, SyncStatus

__all__ = [
    "CancellationToken",
    "ProgressChannel",
    "ProgressEvent",
    "SyncController",
    "SyncResult",
    "SyncSession",
    "SyncStatus",
]

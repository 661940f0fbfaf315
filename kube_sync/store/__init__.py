"""The store module.

This module holds the status and the history of sync results of every
Application, keyed by Application id, with listeners for changes.
"""

from .in_memory import InMemoryStore
from .result import ResourceFailure, SyncOutcome, SyncResult
from .status import SyncStatus, StatusInfo
from .store import Store, StoreEvent

__all__ = [
    "InMemoryStore",
    "ResourceFailure",
    "StatusInfo",
    "Store",
    "StoreEvent",
    "SyncOutcome",
    "SyncResult",
    "SyncStatus",
]

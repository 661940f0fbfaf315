"""The reconciler module.

This module runs one reconciliation cycle for an Application: fetch the
desired state, observe the live state, compute the diff, apply it and report
a SyncResult.
"""

from .backoff import Backoff
from .reconciler import CancelToken, Reconciler

__all__ = [
    "Backoff",
    "CancelToken",
    "Reconciler",
]

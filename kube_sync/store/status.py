"""Sync status information for an Application."""

from dataclasses import dataclass
from enum import StrEnum

from mashumaro import DataClassDictMixin
from mashumaro.config import BaseConfig

from kube_sync.exceptions import InvalidTransitionError


class SyncStatus(StrEnum):
    """Sync status of an Application."""

    UNKNOWN = "Unknown"
    OUT_OF_SYNC = "OutOfSync"
    SYNCING = "Syncing"
    SYNCED = "Synced"
    ERROR = "Error"
    DELETED = "Deleted"


# Allowed status changes. Entering Error (fetch failure) and Deleted is
# allowed from any state other than Deleted and is handled separately.
TRANSITIONS: dict[SyncStatus, set[SyncStatus]] = {
    SyncStatus.UNKNOWN: {SyncStatus.OUT_OF_SYNC, SyncStatus.SYNCED},
    SyncStatus.OUT_OF_SYNC: {SyncStatus.SYNCING},
    SyncStatus.SYNCING: {
        SyncStatus.SYNCED,
        SyncStatus.ERROR,
        SyncStatus.OUT_OF_SYNC,
    },
    SyncStatus.SYNCED: {SyncStatus.OUT_OF_SYNC},
    SyncStatus.ERROR: {SyncStatus.OUT_OF_SYNC, SyncStatus.SYNCED},
    SyncStatus.DELETED: set(),
}


def check_transition(current: SyncStatus, new: SyncStatus) -> None:
    """Raise InvalidTransitionError if the status change is not allowed."""
    if current == SyncStatus.DELETED:
        raise InvalidTransitionError(f"Application is deleted, cannot move to {new}")
    if new in (SyncStatus.ERROR, SyncStatus.DELETED):
        return
    if new == current and new != SyncStatus.SYNCING:
        return
    if new not in TRANSITIONS[current]:
        raise InvalidTransitionError(f"Invalid status transition {current} -> {new}")


@dataclass
class StatusInfo(DataClassDictMixin):
    """Sync status and the last diagnostic of an Application."""

    status: SyncStatus = SyncStatus.UNKNOWN
    message: str | None = None
    revision: str | None = None
    """The revision last successfully synced."""

    failures: int = 0
    """Number of consecutive failed cycles."""

    next_retry: float | None = None
    """Seconds until the next retry after a failure."""

    def __str__(self) -> str:
        """Return a string representation of the status."""
        if self.message:
            return f"{self.status}: {self.message}"
        return str(self.status)

    class Config(BaseConfig):
        omit_none = True

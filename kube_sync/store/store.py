"""Store module for holding Application status and sync history."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from typing import Any

from kube_sync.manifest import Application, NamedResource

from .result import SyncResult
from .status import StatusInfo, SyncStatus


class StoreEvent(str, Enum):
    """Enum for store events."""

    APPLICATION_ADDED = "application_added"
    APPLICATION_DELETED = "application_deleted"
    STATUS_UPDATED = "status_updated"
    RESULT_RECORDED = "result_recorded"


class Store(ABC):
    """Abstract base class for the per-Application record store with listener support.

    Records are only ever read and written by key, so the reconciliation loops
    of different Applications share no state through the store.
    """

    @abstractmethod
    def add_application(self, app: Application) -> None:
        """Add or replace an Application declaration."""

    @abstractmethod
    def get_application(self, app_id: NamedResource) -> Application | None:
        """Retrieve an Application by id."""

    @abstractmethod
    def list_applications(self) -> list[Application]:
        """List all Applications, including deleted ones still being cleaned up."""

    @abstractmethod
    def delete_application(self, app_id: NamedResource) -> None:
        """Mark the Application deleted and drop its declaration."""

    @abstractmethod
    def update_status(
        self,
        app_id: NamedResource,
        status: SyncStatus,
        message: str | None = None,
        **kwargs: Any,
    ) -> StatusInfo:
        """Move the Application to a new status, validating the transition."""

    @abstractmethod
    def get_status(self, app_id: NamedResource) -> StatusInfo:
        """Retrieve the status of an Application, Unknown if never reconciled."""

    @abstractmethod
    def record_result(self, app_id: NamedResource, result: SyncResult) -> None:
        """Append a SyncResult to the Application history."""

    @abstractmethod
    def latest_result(self, app_id: NamedResource) -> SyncResult | None:
        """Return the most recent SyncResult, without blocking."""

    @abstractmethod
    def history(self, app_id: NamedResource) -> list[SyncResult]:
        """Return retained SyncResults, oldest first."""

    @abstractmethod
    def add_listener(
        self, event: StoreEvent, callback: Callable[..., None]
    ) -> Callable[[], None]:
        """Register a callback for a store event, returning a remover."""

    @abstractmethod
    async def watch_synced(self, app_id: NamedResource) -> StatusInfo:
        """Wait for the Application to reach Synced.

        Raises SyncFailedError if the Application moves to Error.
        """

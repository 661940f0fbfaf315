"""Module for in memory Application store."""

import asyncio
from collections import defaultdict, deque
from collections.abc import Callable
import dataclasses
import logging
from typing import Any, DefaultDict

from kube_sync.exceptions import ObjectNotFoundError, SyncFailedError
from kube_sync.manifest import Application, NamedResource

from .result import SyncResult
from .status import StatusInfo, SyncStatus, check_transition
from .store import Store, StoreEvent

_LOGGER = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 10


class InMemoryStore(Store):
    """In-memory implementation of the Store interface.

    Stores Application declarations, status and a bounded history of sync
    results keyed by Application id. Supports event listeners for changes.
    """

    def __init__(self, history_limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        """Initialize the InMemoryStore."""
        self._history_limit = history_limit
        self._applications: dict[NamedResource, Application] = {}
        self._status: dict[NamedResource, StatusInfo] = {}
        self._history: DefaultDict[NamedResource, deque[SyncResult]] = defaultdict(
            lambda: deque(maxlen=self._history_limit)
        )
        self._listeners: DefaultDict[StoreEvent, list[Callable[..., None]]] = (
            defaultdict(list)
        )

    def add_application(self, app: Application) -> None:
        """Add or replace an Application declaration."""
        app_id = app.app_id
        if (existing := self._applications.get(app_id)) is not None:
            if existing == app:
                _LOGGER.debug("Application %s unchanged, skipping", app_id)
                return
            _LOGGER.debug("Updating existing Application %s in store", app_id)
        elif self.get_status(app_id).status == SyncStatus.DELETED:
            # A deleted Application that is declared again starts over
            self._status.pop(app_id)
            self._history.pop(app_id, None)
        self._applications[app_id] = app
        self._fire_event(StoreEvent.APPLICATION_ADDED, app_id, app)

    def get_application(self, app_id: NamedResource) -> Application | None:
        """Retrieve an Application by id."""
        return self._applications.get(app_id)

    def list_applications(self) -> list[Application]:
        """List all Applications in the order they were added."""
        return list(self._applications.values())

    def delete_application(self, app_id: NamedResource) -> None:
        """Mark the Application deleted and drop its declaration."""
        if self._applications.pop(app_id, None) is None:
            raise ObjectNotFoundError(f"Application {app_id.namespaced_name} not found")
        self.update_status(app_id, SyncStatus.DELETED)
        self._fire_event(StoreEvent.APPLICATION_DELETED, app_id)

    def update_status(
        self,
        app_id: NamedResource,
        status: SyncStatus,
        message: str | None = None,
        **kwargs: Any,
    ) -> StatusInfo:
        """Move the Application to a new status, validating the transition.

        Extra keyword arguments update the other StatusInfo fields; fields
        not specified keep their current value.
        """
        current = self.get_status(app_id)
        check_transition(current.status, status)
        info = dataclasses.replace(current, status=status, message=message, **kwargs)
        if status == SyncStatus.ERROR:
            _LOGGER.error(
                "Application %s status %s with error: %s",
                app_id.namespaced_name,
                status,
                message,
            )
        else:
            _LOGGER.debug(
                "Updating status for Application %s to %s (%s)",
                app_id.namespaced_name,
                status,
                message,
            )
        self._status[app_id] = info
        self._fire_event(StoreEvent.STATUS_UPDATED, app_id, info)
        return info

    def get_status(self, app_id: NamedResource) -> StatusInfo:
        """Retrieve the status of an Application, Unknown if never reconciled."""
        return self._status.get(app_id) or StatusInfo()

    def record_result(self, app_id: NamedResource, result: SyncResult) -> None:
        """Append a SyncResult to the Application history."""
        self._history[app_id].append(result)
        self._fire_event(StoreEvent.RESULT_RECORDED, app_id, result)

    def latest_result(self, app_id: NamedResource) -> SyncResult | None:
        """Return the most recent SyncResult, without blocking."""
        if history := self._history.get(app_id):
            return history[-1]
        return None

    def history(self, app_id: NamedResource) -> list[SyncResult]:
        """Return retained SyncResults, oldest first."""
        return list(self._history.get(app_id, []))

    def add_listener(
        self, event: StoreEvent, callback: Callable[..., None]
    ) -> Callable[[], None]:
        """Register a callback for a store event, returning a remover."""

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        self._listeners[event].append(callback)
        return remove

    def _fire_event(self, event: StoreEvent, *args: Any) -> None:
        for cb in list(self._listeners[event]):
            try:
                cb(*args)
            except Exception:
                _LOGGER.exception("Store listener callback failed for event %s", event)

    async def watch_synced(self, app_id: NamedResource) -> StatusInfo:
        """Wait for the Application to reach Synced.

        If the Application is already Synced, returns its StatusInfo
        immediately. Raises SyncFailedError if it is or becomes Error.
        """
        current = self.get_status(app_id)
        if current.status == SyncStatus.SYNCED:
            return current
        if current.status == SyncStatus.ERROR:
            raise SyncFailedError(app_id.namespaced_name, current.message)

        future: asyncio.Future[StatusInfo] = asyncio.get_running_loop().create_future()

        def callback(fired_app_id: NamedResource, info: StatusInfo) -> None:
            if fired_app_id != app_id or future.done():
                return
            if info.status == SyncStatus.SYNCED:
                future.set_result(info)
            elif info.status in (SyncStatus.ERROR, SyncStatus.DELETED):
                future.set_exception(
                    SyncFailedError(app_id.namespaced_name, info.message or info.status)
                )

        remove_listener = self.add_listener(StoreEvent.STATUS_UPDATED, callback)
        try:
            return await future
        except asyncio.CancelledError:
            _LOGGER.debug("watch_synced for %s cancelled.", app_id)
            raise
        finally:
            remove_listener()

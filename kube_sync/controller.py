"""Controller running one perpetual reconciliation loop per Application.

Each Application gets a background task that reconciles it, then waits for
the next trigger: the poll interval (or the backoff delay after a failure), a
webhook announcing a new revision, a forced sync, or a change to one of its
live objects reported by the cluster. A per-Application lock is held for a
whole cycle so that no two cycles of the same Application ever overlap.

This example reconciles Applications until interrupted:
```python
from kube_sync.controller import Controller

async with Controller() as controller:
    for app in await read_applications(Path("apps/")):
        controller.add_application(app)
    await asyncio.Event().wait()
```
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
import logging
from pathlib import Path
from types import TracebackType
from typing import Any, Self

from .cluster import ClusterClient, ClusterEvent
from .cluster.kubernetes import KubernetesCluster
from .config import ControllerConfig
from .exceptions import InvalidTransitionError, ObjectNotFoundError
from .manifest import Application, ApplicationDestination, NamedResource, owner_of
from .reconciler import Backoff, CancelToken, Reconciler
from .source import GitCache
from .store import InMemoryStore, StatusInfo, Store, SyncOutcome, SyncResult
from .task import TaskService, get_task_service

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "Controller",
]

ClusterFactory = Callable[[ApplicationDestination], ClusterClient]


def kubernetes_cluster(destination: ApplicationDestination) -> ClusterClient:
    """Return a Kubernetes client for the destination."""
    return KubernetesCluster(context=destination.context)


def _normalize_url(url: str) -> str:
    url = url.rstrip("/")
    if url.endswith(".git"):
        url = url[:-4]
    return url.lower()


@dataclass
class _AppState:
    """Per-Application loop state, owned by the loop of that Application."""

    app: Application
    backoff: Backoff
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    trigger: asyncio.Event = field(default_factory=asyncio.Event)
    token: CancelToken | None = None
    deleted: bool = False


class Controller:
    """Reconciles a set of Applications concurrently."""

    def __init__(
        self,
        store: Store | None = None,
        config: ControllerConfig | None = None,
        cluster_factory: ClusterFactory | None = None,
        task_service: TaskService | None = None,
    ) -> None:
        """Initialize Controller."""
        self._config = config or ControllerConfig()
        self._store = store or InMemoryStore(history_limit=self._config.history_limit)
        self._cluster_factory = cluster_factory or kubernetes_cluster
        self._task_service = task_service or get_task_service()
        self._cache = GitCache(
            Path(self._config.cache_dir) if self._config.cache_dir else None
        )
        self._apps: dict[NamedResource, _AppState] = {}
        self._owners: dict[str, NamedResource] = {}
        self._reconcilers: dict[str, Reconciler] = {}
        self._clusters: dict[int, ClusterClient] = {}
        self._remove_listeners: list[Callable[[], None]] = []

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()

    @property
    def store(self) -> Store:
        """Return the store of Application status and history."""
        return self._store

    def _reconciler(self, app: Application) -> Reconciler:
        """Return the Reconciler for the destination cluster of the Application."""
        key = app.destination.cluster_key
        if (reconciler := self._reconcilers.get(key)) is None:
            cluster = self._cluster_factory(app.destination)
            reconciler = Reconciler(cluster, self._store, self._config, self._cache)
            self._reconcilers[key] = reconciler
            # A factory may return one shared client for every destination
            if id(cluster) not in self._clusters:
                self._clusters[id(cluster)] = cluster
                self._remove_listeners.append(cluster.add_listener(self._on_change))
        return reconciler

    def _on_change(self, event: ClusterEvent, obj: dict[str, Any]) -> None:
        """Trigger a cycle when an owned object changes outside of a cycle."""
        if (owner := owner_of(obj)) is None:
            return
        if (app_id := self._owners.get(owner)) is None:
            return
        if (state := self._apps.get(app_id)) is None or state.lock.locked():
            return
        _LOGGER.info(
            "%s: live object %s/%s %s, reconciling",
            app_id.namespaced_name,
            obj.get("kind"),
            (obj.get("metadata") or {}).get("name"),
            event.lower(),
        )
        state.trigger.set()

    def _interval(self, app: Application) -> float:
        return float(self._config.poll_interval or app.sync_policy.interval)

    def add_application(self, app: Application) -> None:
        """Start reconciling the Application, or update its declaration."""
        app_id = app.app_id
        self._store.add_application(app)
        if (state := self._apps.get(app_id)) is not None:
            if state.app != app:
                _LOGGER.info("%s: declaration changed", app_id.namespaced_name)
                state.app = app
                state.trigger.set()
            return
        state = _AppState(
            app=app,
            backoff=Backoff(
                base_delay=self._config.backoff_base_delay,
                max_delay=self._config.backoff_max_delay,
                jitter_factor=self._config.backoff_jitter_factor,
            ),
        )
        self._apps[app_id] = state
        self._owners[app.owner_id] = app_id
        self._reconciler(app)
        self._task_service.create_background_task(
            self._run(app_id), name=f"reconcile:{app_id.namespaced_name}"
        )

    def _state(self, app_id: NamedResource) -> _AppState:
        if (state := self._apps.get(app_id)) is None:
            raise ObjectNotFoundError(f"Application {app_id.namespaced_name} not found")
        return state

    async def _sync(self, state: _AppState) -> SyncResult | None:
        """Run one cycle while holding the Application lock."""
        async with state.lock:
            if state.deleted:
                return None
            state.token = CancelToken()
            try:
                return await self._reconciler(state.app).reconcile(
                    state.app, state.token, state.backoff
                )
            finally:
                state.token = None

    def _next_delay(self, state: _AppState, result: SyncResult | None) -> float:
        if result is not None and result.outcome == SyncOutcome.ERROR:
            status = self._store.get_status(state.app.app_id)
            if status.next_retry is not None:
                return status.next_retry
        return self._interval(state.app)

    async def _run(self, app_id: NamedResource) -> None:
        """Reconcile the Application until it is deleted."""
        state = self._apps[app_id]
        _LOGGER.debug("Starting reconciliation loop for %s", app_id)
        while not state.deleted:
            state.trigger.clear()
            result: SyncResult | None = None
            try:
                result = await self._sync(state)
                delay = self._next_delay(state, result)
            except InvalidTransitionError as err:
                _LOGGER.debug("Stopping loop for %s: %s", app_id, err)
                return
            except Exception:
                _LOGGER.exception("Unexpected error reconciling %s", app_id)
                delay = state.backoff.failure()
            if state.deleted:
                break
            _LOGGER.debug("%s: next cycle in %0.1fs", app_id, delay)
            try:
                async with asyncio.timeout(delay):
                    await state.trigger.wait()
            except TimeoutError:
                pass
        _LOGGER.debug("Stopped reconciliation loop for %s", app_id)

    def list_applications(self) -> list[Application]:
        """Return every Application being reconciled."""
        return [state.app for state in self._apps.values()]

    def get_application(self, app_id: NamedResource) -> Application:
        """Return the Application, raising ObjectNotFoundError if unknown."""
        return self._state(app_id).app

    def status(self, app_id: NamedResource) -> StatusInfo:
        """Return the current status of the Application."""
        self._state(app_id)
        return self._store.get_status(app_id)

    def latest_result(self, app_id: NamedResource) -> SyncResult | None:
        """Return the latest SyncResult of the Application, without blocking."""
        self._state(app_id)
        return self._store.latest_result(app_id)

    def history(self, app_id: NamedResource) -> list[SyncResult]:
        """Return the retained SyncResults of the Application, oldest first."""
        self._state(app_id)
        return self._store.history(app_id)

    async def force_sync(self, app_id: NamedResource) -> SyncResult:
        """Reconcile the Application now, bypassing the poll interval.

        Waits for any cycle in progress to finish first.
        """
        state = self._state(app_id)
        _LOGGER.info("%s: forced sync", app_id.namespaced_name)
        if (result := await self._sync(state)) is None:
            raise ObjectNotFoundError(f"Application {app_id.namespaced_name} deleted")
        return result

    def notify_revision(
        self, repo_url: str, revision: str | None = None
    ) -> list[NamedResource]:
        """Handle a webhook announcing a new revision of a repository.

        Every Application reading from the repository is triggered. A cycle
        in progress that is applying a different revision is cancelled and
        reported as superseded. Returns the ids of triggered Applications.
        """
        url = _normalize_url(repo_url)
        triggered: list[NamedResource] = []
        for app_id, state in self._apps.items():
            if _normalize_url(state.app.source.repo_url) != url:
                continue
            if (
                revision
                and (token := state.token) is not None
                and token.revision is not None
                and not token.revision.startswith(revision)
            ):
                token.cancel(f"new revision {revision} announced")
            state.trigger.set()
            triggered.append(app_id)
        _LOGGER.info(
            "Revision %s of %s triggered %d Application(s)",
            revision or "-",
            repo_url,
            len(triggered),
        )
        return triggered

    async def delete_application(
        self, app_id: NamedResource, cascade: bool = False
    ) -> None:
        """Stop reconciling the Application and mark it Deleted.

        A cycle in progress is cancelled: applies already started complete
        and no new ones start. With cascade, every live object owned by the
        Application is deleted as well.
        """
        state = self._state(app_id)
        state.deleted = True
        if state.token is not None:
            state.token.cancel("Application deleted")
        state.trigger.set()
        async with state.lock:
            pass
        await self._task_service.cancel_background_task(
            f"reconcile:{app_id.namespaced_name}"
        )
        del self._apps[app_id]
        self._owners.pop(state.app.owner_id, None)
        reconciler = self._reconciler(state.app)
        if cascade:
            result = await reconciler.prune_all(state.app)
            _LOGGER.info("%s: cascade delete %s", app_id.namespaced_name, result)
        reconciler.forget(state.app)
        source = state.app.source
        if not any(
            other.app.source.repo_url == source.repo_url
            and other.app.source.revision == source.revision
            for other in self._apps.values()
        ):
            self._cache.remove(source.repo_url, source.revision)
        self._store.delete_application(app_id)

    async def stop(self) -> None:
        """Stop every loop and release the cluster clients."""
        for state in self._apps.values():
            state.deleted = True
            if state.token is not None:
                state.token.cancel("controller stopped")
            state.trigger.set()
        for state in list(self._apps.values()):
            async with state.lock:
                pass
        await self._task_service.shutdown()
        for remove in self._remove_listeners:
            remove()
        self._remove_listeners.clear()
        for cluster in self._clusters.values():
            await cluster.close()
        self._clusters.clear()
        self._reconcilers.clear()

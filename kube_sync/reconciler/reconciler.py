"""One reconciliation cycle of an Application.

A cycle fetches the desired state from the Application source, observes the
owned live state in the target cluster, computes the ordered diff and applies
it tier by tier, then records a SyncResult. Status transitions are written to
the store as the cycle progresses:

    Unknown -> OutOfSync -> Syncing -> {Synced | Error}

Errors that block the cycle (fetch, render, diff, authentication) move the
Application to Error and keep the revision it was last synced at. Errors
applying one resource are recorded and the rest of the diff is still applied.
"""

import asyncio
from collections.abc import Iterable
import dataclasses
from datetime import datetime, timezone
import logging
from pathlib import Path
from time import perf_counter
from typing import Any

from kube_sync import kustomize
from kube_sync.cluster import ClusterClient, ResourceType
from kube_sync.config import ControllerConfig
from kube_sync.context import trace_context
from kube_sync.diff import (
    DiffAction,
    ResourceDiff,
    compute_diff,
    has_changes,
    merge,
    resource_id,
    tiers,
)
from kube_sync.exceptions import (
    AuthError,
    ConflictError,
    DiffError,
    FetchError,
    OwnershipConflictError,
    SyncException,
)
from kube_sync.manifest import (
    Application,
    DesiredState,
    LiveState,
    NamedResource,
    SyncPolicy,
    owner_of,
)
from kube_sync.source import GitAuth, GitCache, checkout
from kube_sync.store import (
    ResourceFailure,
    Store,
    SyncOutcome,
    SyncResult,
    SyncStatus,
)
from kube_sync.substitute import substitute_docs

from .backoff import Backoff

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "CancelToken",
    "Reconciler",
]

# Types that are always searched for owned objects, so that objects of a
# kind no longer declared are still found after a restart.
DEFAULT_INVENTORY = {
    ResourceType("v1", "Namespace"),
    ResourceType("v1", "ServiceAccount"),
    ResourceType("v1", "Secret"),
    ResourceType("v1", "ConfigMap"),
    ResourceType("v1", "PersistentVolumeClaim"),
    ResourceType("v1", "Service"),
    ResourceType("apps/v1", "DaemonSet"),
    ResourceType("apps/v1", "Deployment"),
    ResourceType("apps/v1", "StatefulSet"),
    ResourceType("batch/v1", "Job"),
    ResourceType("batch/v1", "CronJob"),
    ResourceType("networking.k8s.io/v1", "Ingress"),
}


class CancelToken:
    """Cancellation signal for one cycle.

    Cancelling lets applies that are in flight complete but no new apply is
    started and the cycle is reported as superseded.
    """

    def __init__(self) -> None:
        """Initialize CancelToken."""
        self._event = asyncio.Event()
        self.reason: str | None = None
        self.revision: str | None = None
        """The revision the cycle is applying, once resolved."""

    def cancel(self, reason: str) -> None:
        """Cancel the cycle, keeping the first reason given."""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        """Return True if the cycle was cancelled."""
        return self._event.is_set()

    async def wait(self) -> None:
        """Wait until the cycle is cancelled."""
        await self._event.wait()


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Reconciler:
    """Reconciles Applications into one target cluster."""

    def __init__(
        self,
        cluster: ClusterClient,
        store: Store,
        config: ControllerConfig | None = None,
        cache: GitCache | None = None,
    ) -> None:
        """Initialize Reconciler."""
        self._cluster = cluster
        self._store = store
        self._config = config or ControllerConfig()
        self._cache = cache or GitCache(
            Path(self._config.cache_dir) if self._config.cache_dir else None
        )
        self._pools: dict[str, asyncio.Semaphore] = {}
        self._inventory: dict[str, set[ResourceType]] = {}

    def _pool(self, app: Application) -> asyncio.Semaphore:
        """Return the worker pool bounding the cluster calls of one Application."""
        if (pool := self._pools.get(app.owner_id)) is None:
            pool = asyncio.Semaphore(self._config.max_concurrent_applies)
            self._pools[app.owner_id] = pool
        return pool

    @property
    def cluster(self) -> ClusterClient:
        """Return the target cluster client."""
        return self._cluster

    async def fetch_desired_state(self, app: Application) -> DesiredState:
        """Fetch and render the desired state of the Application.

        Raises FetchError when the revision or path cannot be found,
        RenderError when rendering fails and AuthError when the source
        rejects the credentials.
        """
        source = app.source
        auth = GitAuth.from_source(source)
        with trace_context(f"Fetch {source.repo_url}@{source.revision}"):
            async with checkout(
                source.repo_url, source.revision, self._cache, auth
            ) as artifact:
                root = Path(artifact.local_path).resolve()
                path = (root / source.path).resolve()
                if not path.is_relative_to(root):
                    raise FetchError(
                        f"Source path '{source.path}' is outside the repository"
                    )
                if not path.exists():
                    raise FetchError(
                        f"Source path '{source.path}' does not exist "
                        f"at {artifact.revision}"
                    )
                docs = await kustomize.render(
                    path,
                    source.render_mode,
                    target_namespace=app.destination.namespace,
                    kustomize_bin=self._config.kustomize_bin,
                )
        if source.substitute is not None:
            docs = substitute_docs(
                docs, source.substitute, strict=self._config.strict_substitution
            )
        return DesiredState(
            app_id=app.app_id,
            repo_url=source.repo_url,
            revision=source.revision,
            resolved_revision=artifact.revision,
            path=source.path,
            server=app.destination.server,
            namespace=app.destination.namespace,
            render_mode=source.render_mode,
            resources=docs,
        )

    def _types(self, owner: str, desired: DesiredState | None) -> set[ResourceType]:
        types = DEFAULT_INVENTORY | self._inventory.get(owner, set())
        if desired is not None:
            types |= {ResourceType.of(obj) for obj in desired.resources}
        return types

    async def observe_live_state(
        self, app: Application, desired: DesiredState | None = None
    ) -> LiveState:
        """Read the owned live objects and any object at a desired identity."""
        owner = app.owner_id
        if desired is not None:
            for obj in desired.resources:
                resource_id(obj, default_namespace=desired.namespace)
        types = self._types(owner, desired)
        live = LiveState(owner=owner)
        for obj in await self._cluster.list_owned(owner, types):
            live.resources[resource_id(obj)] = obj
        if desired is None:
            return live

        pool = self._pool(app)

        async def _get(obj: dict[str, Any]) -> None:
            rid = resource_id(obj, default_namespace=desired.namespace)
            if rid in live.resources:
                return
            async with pool:
                found = await self._cluster.get(obj["apiVersion"], rid)
            if found is not None:
                live.resources[rid] = found

        await asyncio.gather(*(_get(obj) for obj in desired.resources))
        return live

    def compute_diff(
        self, desired: DesiredState, live: LiveState
    ) -> list[ResourceDiff]:
        """Compute the ordered diff, raising DiffError for malformed manifests."""
        return compute_diff(desired, live)

    async def _update(self, app: Application, diff: ResourceDiff) -> None:
        """Merge the desired fields onto the live object, retrying on conflict."""
        desired = _desired(diff)
        live = diff.live
        for attempt in range(self._config.update_retries + 1):
            if live is None:
                await self._cluster.create(desired)
                return
            if (owner := owner_of(live)) and owner != app.owner_id:
                raise OwnershipConflictError(str(diff.resource), owner, app.owner_id)
            body = merge(live, desired)
            body["metadata"]["resourceVersion"] = live["metadata"].get(
                "resourceVersion"
            )
            try:
                await self._cluster.update(body)
                return
            except ConflictError as err:
                _LOGGER.debug(
                    "Conflict updating %s (attempt %d): %s",
                    diff.resource,
                    attempt,
                    err,
                )
                if attempt == self._config.update_retries:
                    raise
            live = await self._cluster.get(diff.api_version, diff.resource)

    async def _apply_one(
        self, app: Application, diff: ResourceDiff, token: CancelToken
    ) -> bool:
        """Apply one entry, returning False if it was not started."""
        async with self._pool(app):
            if token.cancelled:
                return False
            _LOGGER.info("%s: %s", app.namespaced_name, diff)
            if diff.conflict_owner:
                raise OwnershipConflictError(
                    str(diff.resource), diff.conflict_owner, app.owner_id
                )
            if diff.action == DiffAction.ADD:
                try:
                    await self._cluster.create(_desired(diff))
                except ConflictError:
                    # Created since the live state was observed
                    diff.live = await self._cluster.get(
                        diff.api_version, diff.resource
                    )
                    await self._update(app, diff)
            elif diff.action == DiffAction.UPDATE:
                await self._update(app, diff)
            elif diff.action == DiffAction.REMOVE:
                await self._cluster.delete(diff.api_version, diff.resource)
            return True

    async def apply(
        self,
        app: Application,
        diffs: list[ResourceDiff],
        revision: str | None = None,
        token: CancelToken | None = None,
    ) -> SyncResult:
        """Apply the diff tier by tier and return the result.

        Entries within a tier are applied concurrently through a bounded
        worker pool. A failure is recorded and the remaining entries are
        still applied, except that rejected credentials stop any further
        applies. Nothing is rolled back.
        """
        token = token or CancelToken()
        start = perf_counter()
        failures: list[ResourceFailure] = []
        pending = 0
        skipped_removes = 0
        auth_error: AuthError | None = None
        for tier in tiers(diffs):
            if tier[0].action == DiffAction.REMOVE and not app.sync_policy.prune:
                skipped_removes += len(tier)
                continue
            if token.cancelled or auth_error is not None:
                pending += len(tier)
                continue
            results = await asyncio.gather(
                *(self._apply_one(app, diff, token) for diff in tier),
                return_exceptions=True,
            )
            for diff, applied in zip(tier, results):
                if applied is False:
                    pending += 1
                elif isinstance(applied, Exception):
                    unexpected = not isinstance(applied, SyncException)
                    _LOGGER.warning(
                        "%s: failed to %s %s: %s",
                        app.namespaced_name,
                        diff.action.lower(),
                        diff.resource,
                        applied,
                        exc_info=applied if unexpected else None,
                    )
                    failures.append(
                        ResourceFailure(
                            resource=diff.resource,
                            action=diff.action,
                            error=str(applied) or type(applied).__name__,
                        )
                    )
                    if isinstance(applied, AuthError):
                        auth_error = applied
                elif isinstance(applied, BaseException):
                    raise applied

        superseded = token.cancelled and pending > 0
        if superseded:
            outcome = SyncOutcome.OUT_OF_SYNC
            message = f"Superseded: {token.reason}; {pending} change(s) not applied"
        elif failures:
            outcome = SyncOutcome.ERROR
            message = f"Failed to apply {len(failures)} resource(s): " + "; ".join(
                str(failure) for failure in failures
            )
            if auth_error is not None:
                message += (
                    "; stopped after credentials were rejected "
                    f"({pending} change(s) not applied)"
                )
        elif skipped_removes:
            outcome = SyncOutcome.OUT_OF_SYNC
            message = f"{skipped_removes} resource(s) not pruned, pruning is disabled"
        else:
            outcome = SyncOutcome.SYNCED
            message = f"Applied {sum(1 for _ in _changes(diffs))} change(s)"
        return SyncResult(
            timestamp=_now(),
            outcome=outcome,
            diffs=diffs,
            revision=revision,
            message=message,
            failures=failures,
            superseded=superseded,
            duration=perf_counter() - start,
        )

    def _record_inventory(self, owner: str, diffs: list[ResourceDiff]) -> None:
        types = self._inventory.setdefault(owner, set())
        for diff in diffs:
            if (obj := diff.desired or diff.live) and obj.get("apiVersion"):
                types.add(ResourceType(obj["apiVersion"], diff.resource.kind))

    def _fail(
        self,
        app: Application,
        err: Exception,
        start: float,
        revision: str | None,
        backoff: Backoff | None,
    ) -> SyncResult:
        """Record a cycle that was blocked by an error."""
        message = f"{type(err).__name__}: {err}"
        failures = self._store.get_status(app.app_id).failures + 1
        next_retry = backoff.failure() if backoff is not None else None
        self._store.update_status(
            app.app_id,
            SyncStatus.ERROR,
            message,
            failures=failures,
            next_retry=next_retry,
        )
        result = SyncResult(
            timestamp=_now(),
            outcome=SyncOutcome.ERROR,
            revision=revision,
            message=message,
            duration=perf_counter() - start,
        )
        self._store.record_result(app.app_id, result)
        return result

    async def reconcile(
        self,
        app: Application,
        token: CancelToken | None = None,
        backoff: Backoff | None = None,
    ) -> SyncResult:
        """Run one reconciliation cycle and record its result."""
        token = token or CancelToken()
        start = perf_counter()
        app_id = app.app_id
        revision: str | None = None
        with trace_context(f"Reconcile {app.namespaced_name}"):
            try:
                desired = await self.fetch_desired_state(app)
                revision = desired.resolved_revision
                token.revision = revision
                live = await self.observe_live_state(app, desired)
                diffs = self.compute_diff(desired, live)
            except SyncException as err:
                return self._fail(app, err, start, revision, backoff)
            except Exception as err:
                _LOGGER.exception("%s: unexpected error", app.namespaced_name)
                return self._fail(app, err, start, revision, backoff)

            current = self._store.get_status(app_id)
            if not has_changes(diffs) and current.status != SyncStatus.OUT_OF_SYNC:
                result = SyncResult(
                    timestamp=_now(),
                    outcome=SyncOutcome.SYNCED,
                    diffs=diffs,
                    revision=revision,
                    message=f"Synced at {revision}, no changes",
                    duration=perf_counter() - start,
                )
            else:
                changes = len(list(_changes(diffs)))
                self._store.update_status(
                    app_id, SyncStatus.OUT_OF_SYNC, f"{changes} change(s) at {revision}"
                )
                self._store.update_status(
                    app_id, SyncStatus.SYNCING, f"Applying {revision}"
                )
                with trace_context("Apply"):
                    result = await self.apply(
                        app, diffs, revision=revision, token=token
                    )
                result = dataclasses.replace(result, duration=perf_counter() - start)
            self._record_inventory(app.owner_id, diffs)

            if result.outcome == SyncOutcome.SYNCED:
                if backoff is not None:
                    backoff.reset()
                self._store.update_status(
                    app_id,
                    SyncStatus.SYNCED,
                    result.message,
                    revision=revision,
                    failures=0,
                    next_retry=None,
                )
            elif result.outcome == SyncOutcome.ERROR:
                self._store.update_status(
                    app_id,
                    SyncStatus.ERROR,
                    result.message,
                    failures=current.failures + 1,
                    next_retry=backoff.failure() if backoff is not None else None,
                )
            else:
                self._store.update_status(
                    app_id, SyncStatus.OUT_OF_SYNC, result.message
                )
            self._store.record_result(app_id, result)
            _LOGGER.info("%s: %s", app.namespaced_name, result)
            return result

    def status(self, app_id: NamedResource) -> SyncResult | None:
        """Return the latest SyncResult of the Application, without blocking."""
        return self._store.latest_result(app_id)

    async def prune_all(self, app: Application) -> SyncResult:
        """Delete every live object owned by the Application."""
        live = await self.observe_live_state(app)
        desired = DesiredState(
            app_id=app.app_id,
            repo_url=app.source.repo_url,
            revision=app.source.revision,
            resolved_revision="",
            path=app.source.path,
            server=app.destination.server,
            namespace=app.destination.namespace,
            render_mode=app.source.render_mode,
        )
        diffs = compute_diff(desired, live)
        _LOGGER.info(
            "Deleting %d resource(s) owned by %s", len(diffs), app.namespaced_name
        )
        result = await self.apply(
            dataclasses.replace(app, sync_policy=SyncPolicy(prune=True)), diffs
        )
        self._inventory.pop(app.owner_id, None)
        return result

    def forget(self, app: Application) -> None:
        """Drop the state kept for a deleted Application."""
        self._inventory.pop(app.owner_id, None)
        self._pools.pop(app.owner_id, None)


def _desired(diff: ResourceDiff) -> dict[str, Any]:
    if diff.desired is None:
        raise DiffError(f"No desired object to apply for {diff.resource}")
    return diff.desired


def _changes(diffs: Iterable[ResourceDiff]) -> Iterable[ResourceDiff]:
    return (diff for diff in diffs if diff.action != DiffAction.NOOP)


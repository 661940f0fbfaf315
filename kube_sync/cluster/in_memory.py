"""Module for an in memory target cluster.

This implements the full `ClusterClient` contract, including optimistic
concurrency on `metadata.resourceVersion` and change notification, and is used
by tests and for dry runs against an empty cluster.
"""

import copy
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
import itertools
import logging
from typing import Any
import uuid

from kube_sync.exceptions import (
    ApplyError,
    ConflictError,
    ObjectNotFoundError,
)
from kube_sync.manifest import (
    CLUSTER_SCOPED_KINDS,
    NAMESPACE_KIND,
    OWNER_LABEL,
    NamedResource,
)

from .client import ClusterClient, ClusterEvent, ClusterListener, ResourceType

_LOGGER = logging.getLogger(__name__)


def _resource_id(obj: dict[str, Any]) -> NamedResource:
    if not obj.get("apiVersion") or not obj.get("kind"):
        raise ApplyError(f"Object is missing apiVersion or kind: {obj}")
    metadata = obj.get("metadata") or {}
    if not (name := metadata.get("name")):
        raise ApplyError(f"Object {obj['kind']} is missing metadata.name")
    namespace = None
    if obj["kind"] not in CLUSTER_SCOPED_KINDS:
        namespace = metadata.get("namespace") or "default"
    return NamedResource(kind=obj["kind"], namespace=namespace, name=name)


def _spec(obj: dict[str, Any]) -> dict[str, Any]:
    """Return the fields that bump the generation when changed."""
    return {k: v for k, v in obj.items() if k not in ("metadata", "status")}


class InMemoryCluster(ClusterClient):
    """In-memory implementation of the ClusterClient interface.

    When `strict_namespaces` is set, namespaced objects may only be created
    in a Namespace that exists, as in a real cluster.
    """

    def __init__(self, strict_namespaces: bool = False) -> None:
        """Initialize the InMemoryCluster."""
        self._objects: dict[NamedResource, dict[str, Any]] = {}
        self._versions = itertools.count(1)
        self._listeners: list[ClusterListener] = []
        self._errors: dict[NamedResource, Exception] = {}
        self._strict_namespaces = strict_namespaces
        self.writes: list[tuple[str, NamedResource]] = []

    def set_error(self, resource_id: NamedResource, err: Exception | None) -> None:
        """Make every write to the resource fail with the error, or clear it."""
        if err is None:
            self._errors.pop(resource_id, None)
        else:
            self._errors[resource_id] = err

    def objects(self) -> list[dict[str, Any]]:
        """Return a copy of every live object."""
        return [copy.deepcopy(obj) for obj in self._objects.values()]

    def _check_error(self, resource_id: NamedResource) -> None:
        if (err := self._errors.get(resource_id)) is not None:
            raise err

    def _stamp(self, obj: dict[str, Any], existing: dict[str, Any] | None) -> None:
        """Set the server managed metadata fields."""
        metadata = obj.setdefault("metadata", {})
        metadata["resourceVersion"] = str(next(self._versions))
        if existing is None:
            metadata["uid"] = str(uuid.uuid4())
            metadata["creationTimestamp"] = datetime.now(timezone.utc).strftime(
                "%Y-%m-%dT%H:%M:%SZ"
            )
            metadata["generation"] = 1
            return
        existing_metadata = existing["metadata"]
        metadata["uid"] = existing_metadata["uid"]
        metadata["creationTimestamp"] = existing_metadata["creationTimestamp"]
        generation = existing_metadata["generation"]
        if _spec(obj) != _spec(existing):
            generation += 1
        metadata["generation"] = generation

    async def list_owned(
        self, owner: str, types: Iterable[ResourceType] | None = None
    ) -> list[dict[str, Any]]:
        """Return live objects labeled as owned by the owner id."""
        kinds = {t.kind for t in types} if types is not None else None
        return [
            copy.deepcopy(obj)
            for resource_id, obj in self._objects.items()
            if ((obj["metadata"].get("labels") or {}).get(OWNER_LABEL) == owner)
            and (kinds is None or resource_id.kind in kinds)
        ]

    async def get(
        self, api_version: str, resource: NamedResource
    ) -> dict[str, Any] | None:
        """Return the live object or None if it does not exist."""
        if (obj := self._objects.get(resource)) is None:
            return None
        return copy.deepcopy(obj)

    async def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Create the object, raising ConflictError if it already exists."""
        resource_id = _resource_id(obj)
        self._check_error(resource_id)
        if resource_id in self._objects:
            raise ConflictError(f"Object {resource_id} already exists")
        if (
            self._strict_namespaces
            and resource_id.namespace
            and NamedResource(NAMESPACE_KIND, None, resource_id.namespace)
            not in self._objects
        ):
            raise ApplyError(
                f"Namespace '{resource_id.namespace}' for {resource_id} not found"
            )
        stored = copy.deepcopy(obj)
        stored["metadata"].pop("resourceVersion", None)
        if resource_id.namespace:
            stored["metadata"]["namespace"] = resource_id.namespace
        self._stamp(stored, None)
        self._objects[resource_id] = stored
        self.writes.append(("create", resource_id))
        _LOGGER.debug("Created %s", resource_id)
        self._fire_event(ClusterEvent.ADDED, stored)
        return copy.deepcopy(stored)

    async def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace the object, checking the resourceVersion."""
        resource_id = _resource_id(obj)
        self._check_error(resource_id)
        if (existing := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"Object {resource_id} not found")
        version = obj["metadata"].get("resourceVersion")
        if version != existing["metadata"]["resourceVersion"]:
            raise ConflictError(
                f"Object {resource_id} was modified (resourceVersion {version} "
                f"is stale, current {existing['metadata']['resourceVersion']})"
            )
        stored = copy.deepcopy(obj)
        if resource_id.namespace:
            stored["metadata"]["namespace"] = resource_id.namespace
        self._stamp(stored, existing)
        self._objects[resource_id] = stored
        self.writes.append(("update", resource_id))
        _LOGGER.debug("Updated %s", resource_id)
        self._fire_event(ClusterEvent.MODIFIED, stored)
        return copy.deepcopy(stored)

    async def delete(self, api_version: str, resource: NamedResource) -> None:
        """Delete the object. Deleting a missing object is not an error."""
        self._check_error(resource)
        if (existing := self._objects.pop(resource, None)) is None:
            return
        if resource.kind == NAMESPACE_KIND:
            for resource_id in [
                rid for rid in self._objects if rid.namespace == resource.name
            ]:
                del self._objects[resource_id]
        self.writes.append(("delete", resource))
        _LOGGER.debug("Deleted %s", resource)
        self._fire_event(ClusterEvent.DELETED, existing)

    def add_listener(self, listener: ClusterListener) -> Callable[[], None]:
        """Register a listener for live object changes."""

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        self._listeners.append(listener)
        return remove

    def _fire_event(self, event: ClusterEvent, obj: dict[str, Any]) -> None:
        for cb in list(self._listeners):
            try:
                cb(event, copy.deepcopy(obj))
            except Exception:
                _LOGGER.exception(
                    "Cluster listener callback failed for event %s", event
                )

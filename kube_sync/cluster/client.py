"""Interface to a target cluster.

The cluster is a declarative resource API: objects are created, read, updated
and deleted by kind, namespace and name. Every object carries a
`metadata.resourceVersion` token and an update that sends a stale token is
rejected with a `ConflictError`, forcing the caller to re-read the object.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from kube_sync.manifest import NamedResource

__all__ = [
    "ClusterClient",
    "ClusterEvent",
    "ClusterListener",
    "ResourceType",
]


class ClusterEvent(StrEnum):
    """A change notification for a live object."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


ClusterListener = Callable[[ClusterEvent, dict[str, Any]], None]


@dataclass(frozen=True, order=True)
class ResourceType:
    """The apiVersion and kind of a group of objects."""

    api_version: str
    kind: str

    @classmethod
    def of(cls, obj: dict[str, Any]) -> "ResourceType":
        """Return the type of an object."""
        return cls(api_version=obj["apiVersion"], kind=obj["kind"])

    def __str__(self) -> str:
        return f"{self.api_version}/{self.kind}"


class ClusterClient(ABC):
    """Read and write objects in a target cluster."""

    @abstractmethod
    async def list_owned(
        self, owner: str, types: Iterable[ResourceType] | None = None
    ) -> list[dict[str, Any]]:
        """Return live objects labeled as owned by the owner id.

        Implementations that cannot enumerate every kind only search the
        specified types.
        """

    @abstractmethod
    async def get(
        self, api_version: str, resource: NamedResource
    ) -> dict[str, Any] | None:
        """Return the live object or None if it does not exist."""

    @abstractmethod
    async def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Create the object, raising ConflictError if it already exists."""

    @abstractmethod
    async def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace the object.

        The object must carry the `metadata.resourceVersion` it was read
        at; a stale version raises ConflictError.
        """

    @abstractmethod
    async def delete(self, api_version: str, resource: NamedResource) -> None:
        """Delete the object. Deleting a missing object is not an error."""

    def add_listener(self, listener: ClusterListener) -> Callable[[], None]:
        """Register a listener for live object changes.

        Clients without change notification never call the listener, so
        drift is only detected on the next poll. Returns a callable that
        removes the listener.
        """
        return lambda: None

    async def close(self) -> None:
        """Release any connection held by the client."""

"""Target cluster implementation using the Kubernetes dynamic client.

The Kubernetes client library is synchronous, so every call is issued in a
worker thread. Configuration is loaded from the in-cluster service account
when available and otherwise from the kubeconfig, optionally selecting a
context.
"""

import asyncio
from collections.abc import Callable, Iterable
import logging
from typing import Any

from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError
from urllib3.exceptions import HTTPError

from kube_sync.exceptions import (
    ApplyError,
    AuthError,
    ConflictError,
    ObjectNotFoundError,
    SyncException,
)
from kube_sync.manifest import CRD_KIND, OWNER_LABEL, NamedResource

from .client import ClusterClient, ResourceType

_LOGGER = logging.getLogger(__name__)


def _load_api_client(context: str | None) -> client.ApiClient:
    """Return an API client for the in-cluster config or the kubeconfig."""
    if context is None:
        try:
            config.load_incluster_config()
            _LOGGER.debug("Loaded in-cluster Kubernetes configuration")
            return client.ApiClient()
        except ConfigException:
            _LOGGER.debug("Not running in a cluster, falling back to kubeconfig")
    try:
        return config.new_client_from_config(context=context)
    except ConfigException as err:
        raise AuthError(f"Unable to load Kubernetes configuration: {err}") from err


def _translate(err: client.ApiException, action: str, name: str) -> SyncException:
    """Map an API error to the exception taxonomy."""
    message = f"Failed to {action} {name}: {err.status} {err.reason}"
    if err.status in (401, 403):
        return AuthError(message)
    if err.status == 404:
        return ObjectNotFoundError(message)
    if err.status == 409:
        return ConflictError(message)
    return ApplyError(message)


async def _call(action: str, name: str, func: Callable[..., Any], /, **kwargs: Any) -> Any:
    """Issue a blocking API call in a worker thread, translating its errors."""
    try:
        return await asyncio.to_thread(func, **kwargs)
    except client.ApiException as err:
        raise _translate(err, action, name) from err
    except (HTTPError, OSError) as err:
        raise ApplyError(
            f"Failed to {action} {name}: API server unreachable: {err}"
        ) from err


class KubernetesCluster(ClusterClient):
    """ClusterClient backed by a Kubernetes API server."""

    def __init__(self, context: str | None = None) -> None:
        """Initialize KubernetesCluster, connecting lazily."""
        self._context = context
        self._client: DynamicClient | None = None
        self._lock = asyncio.Lock()

    async def _dynamic(self) -> DynamicClient:
        async with self._lock:
            if self._client is None:
                api_client = await asyncio.to_thread(_load_api_client, self._context)
                self._client = await _call(
                    "discover", "API resources", DynamicClient, client=api_client
                )
            return self._client

    async def _lookup(self, api_version: str, kind: str) -> Any | None:
        """Return the API resource of a type, None if the server does not serve it."""
        dynamic = await self._dynamic()
        try:
            return await _call(
                "discover",
                f"{api_version}/{kind}",
                dynamic.resources.get,
                api_version=api_version,
                kind=kind,
            )
        except ResourceNotFoundError:
            return None

    async def _refresh_discovery(self) -> None:
        """Forget the cached API resources so new custom types are found."""
        dynamic = await self._dynamic()
        _LOGGER.debug("Refreshing API discovery")
        await _call("discover", "API resources", dynamic.resources.invalidate_cache)

    async def _resource(self, api_version: str, kind: str) -> Any:
        """Return the API resource of a type that is about to be written."""
        if (api_resource := await self._lookup(api_version, kind)) is not None:
            return api_resource
        # The definition may have been established since discovery ran
        await self._refresh_discovery()
        if (api_resource := await self._lookup(api_version, kind)) is None:
            raise ApplyError(f"Unknown resource type {api_version}/{kind}")
        return api_resource

    async def list_owned(
        self, owner: str, types: Iterable[ResourceType] | None = None
    ) -> list[dict[str, Any]]:
        """Return live objects labeled as owned by the owner id."""
        result: list[dict[str, Any]] = []
        for resource_type in sorted(set(types or [])):
            resource = await self._lookup(resource_type.api_version, resource_type.kind)
            if resource is None:
                _LOGGER.debug("Skipping unknown resource type %s", resource_type)
                continue
            response = await _call(
                "list",
                str(resource_type),
                resource.get,
                label_selector=f"{OWNER_LABEL}={owner}",
            )
            for item in response.to_dict().get("items", []):
                item.setdefault("apiVersion", resource_type.api_version)
                item.setdefault("kind", resource_type.kind)
                result.append(item)
        return result

    async def get(
        self, api_version: str, resource: NamedResource
    ) -> dict[str, Any] | None:
        """Return the live object or None if it does not exist.

        An object of a type the server does not serve yet does not exist.
        """
        if (api_resource := await self._lookup(api_version, resource.kind)) is None:
            return None
        try:
            response = await _call(
                "get",
                str(resource),
                api_resource.get,
                name=resource.name,
                namespace=resource.namespace,
            )
        except ObjectNotFoundError:
            return None
        return response.to_dict()  # type: ignore[no-any-return]

    async def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Create the object, raising ConflictError if it already exists."""
        api_resource = await self._resource(obj["apiVersion"], obj["kind"])
        response = await _call(
            "create",
            obj["metadata"]["name"],
            api_resource.create,
            body=obj,
            namespace=obj["metadata"].get("namespace"),
        )
        if obj["kind"] == CRD_KIND:
            await self._refresh_discovery()
        return response.to_dict()  # type: ignore[no-any-return]

    async def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace the object, checking the resourceVersion."""
        api_resource = await self._resource(obj["apiVersion"], obj["kind"])
        response = await _call(
            "update",
            obj["metadata"]["name"],
            api_resource.replace,
            body=obj,
            namespace=obj["metadata"].get("namespace"),
        )
        return response.to_dict()  # type: ignore[no-any-return]

    async def delete(self, api_version: str, resource: NamedResource) -> None:
        """Delete the object. Deleting a missing object is not an error."""
        if (api_resource := await self._lookup(api_version, resource.kind)) is None:
            return
        try:
            await _call(
                "delete",
                str(resource),
                api_resource.delete,
                name=resource.name,
                namespace=resource.namespace,
            )
        except ObjectNotFoundError:
            return

    async def close(self) -> None:
        """Close the API connection."""
        if self._client is not None:
            await asyncio.to_thread(self._client.client.close)
            self._client = None

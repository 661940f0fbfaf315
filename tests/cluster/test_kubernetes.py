"""Tests for the Kubernetes cluster client, with the API server mocked."""

from collections.abc import Generator
from typing import Any
from unittest.mock import MagicMock, patch

from kubernetes.client import ApiException
from kubernetes.dynamic.exceptions import ResourceNotFoundError
import pytest
from urllib3.exceptions import MaxRetryError

from kube_sync.cluster import ResourceType
from kube_sync.cluster.kubernetes import KubernetesCluster
from kube_sync.exceptions import ApplyError, AuthError, ConflictError
from kube_sync.manifest import CRD_KIND, OWNER_LABEL, NamedResource
from kube_sync.reconciler import Reconciler
from kube_sync.source import GitCache
from kube_sync.store import InMemoryStore, SyncOutcome

from ..conftest import SERVICE, GitRepo, make_app

SERVICE_ID = NamedResource("Service", "podinfo", "podinfo")


def _response(obj: dict[str, Any]) -> MagicMock:
    response = MagicMock()
    response.to_dict.return_value = obj
    return response


@pytest.fixture
def dynamic() -> Generator[MagicMock, None, None]:
    """Mock the dynamic client created for the API server."""
    with patch("kube_sync.cluster.kubernetes._load_api_client"), patch(
        "kube_sync.cluster.kubernetes.DynamicClient"
    ) as dynamic_cls:
        yield dynamic_cls.return_value


@pytest.fixture
def resource(dynamic: MagicMock) -> MagicMock:
    """Mock the API resource every type resolves to."""
    api_resource = MagicMock()
    dynamic.resources.get.return_value = api_resource
    return api_resource


async def test_get(resource: MagicMock) -> None:
    """Test reading an object and a missing object."""
    resource.get.return_value = _response(SERVICE)
    cluster = KubernetesCluster()
    assert await cluster.get("v1", SERVICE_ID) == SERVICE
    resource.get.assert_called_with(name="podinfo", namespace="podinfo")

    resource.get.side_effect = ApiException(status=404, reason="Not Found")
    assert await cluster.get("v1", SERVICE_ID) is None


async def test_list_owned(dynamic: MagicMock, resource: MagicMock) -> None:
    """Test listing owned objects skips types unknown to the server."""

    def get_resource(api_version: str, kind: str) -> MagicMock:
        if kind == "Widget":
            raise ResourceNotFoundError(f"No matches found for {kind}")
        return resource

    dynamic.resources.get.side_effect = get_resource
    resource.get.return_value = _response({"items": [{"metadata": {"name": "a"}}]})
    cluster = KubernetesCluster()
    objects = await cluster.list_owned(
        "kube-sync.podinfo",
        [ResourceType("v1", "Service"), ResourceType("example.com/v1", "Widget")],
    )
    assert objects == [
        {"apiVersion": "v1", "kind": "Service", "metadata": {"name": "a"}}
    ]
    resource.get.assert_called_once_with(
        label_selector=f"{OWNER_LABEL}=kube-sync.podinfo"
    )


async def test_create(resource: MagicMock) -> None:
    """Test creating an object in its namespace."""
    obj = {**SERVICE, "metadata": {"name": "podinfo", "namespace": "podinfo"}}
    resource.create.return_value = _response(obj)
    cluster = KubernetesCluster()
    assert await cluster.create(obj) == obj
    resource.create.assert_called_once_with(body=obj, namespace="podinfo")


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        (409, ConflictError),
        (403, AuthError),
        (422, ApplyError),
    ],
)
async def test_update_errors(
    resource: MagicMock, status: int, expected: type[Exception]
) -> None:
    """Test API errors are mapped to the exception types."""
    resource.replace.side_effect = ApiException(status=status, reason="Rejected")
    cluster = KubernetesCluster()
    with pytest.raises(expected, match=f"Failed to update podinfo: {status}"):
        await cluster.update(SERVICE)


async def test_delete(resource: MagicMock) -> None:
    """Test deleting a missing object is not an error."""
    resource.delete.side_effect = ApiException(status=404, reason="Not Found")
    cluster = KubernetesCluster()
    await cluster.delete("v1", SERVICE_ID)
    resource.delete.assert_called_once_with(name="podinfo", namespace="podinfo")


async def test_unknown_type(dynamic: MagicMock) -> None:
    """Test writing an object of a type unknown to the server."""
    dynamic.resources.get.side_effect = ResourceNotFoundError("No matches")
    cluster = KubernetesCluster()
    with pytest.raises(ApplyError, match="Unknown resource type"):
        await cluster.create({"apiVersion": "example.com/v1", "kind": "Widget"})


async def test_close(dynamic: MagicMock, resource: MagicMock) -> None:
    """Test closing the connection after it was opened."""
    resource.get.return_value = _response(SERVICE)
    cluster = KubernetesCluster(context="prod")
    await cluster.get("v1", SERVICE_ID)
    await cluster.close()
    dynamic.client.close.assert_called_once()


async def test_get_unknown_type(dynamic: MagicMock) -> None:
    """Test an object of a type the server does not serve yet is absent."""
    dynamic.resources.get.side_effect = ResourceNotFoundError("No matches")
    cluster = KubernetesCluster()
    widget = NamedResource("Widget", "podinfo", "w")
    assert await cluster.get("example.com/v1", widget) is None
    await cluster.delete("example.com/v1", widget)


async def test_create_definition_refreshes_discovery(
    dynamic: MagicMock, resource: MagicMock
) -> None:
    """Test a custom type can be written right after its definition."""
    served: set[str] = set()

    def get_resource(api_version: str, kind: str) -> MagicMock:
        if kind != CRD_KIND and kind not in served:
            raise ResourceNotFoundError(f"No matches found for {kind}")
        return resource

    dynamic.resources.get.side_effect = get_resource
    dynamic.resources.invalidate_cache.side_effect = lambda: served.add("Widget")
    crd = {
        "apiVersion": "apiextensions.k8s.io/v1",
        "kind": CRD_KIND,
        "metadata": {"name": "widgets.example.com"},
    }
    widget = {
        "apiVersion": "example.com/v1",
        "kind": "Widget",
        "metadata": {"name": "w", "namespace": "podinfo"},
    }
    resource.create.side_effect = lambda body, namespace: _response(body)
    cluster = KubernetesCluster()
    assert await cluster.create(crd) == crd
    dynamic.resources.invalidate_cache.assert_called_once()
    assert await cluster.create(widget) == widget


async def test_unknown_type_refreshes_once(dynamic: MagicMock) -> None:
    """Test a write of an unknown type refreshes discovery before failing."""
    dynamic.resources.get.side_effect = ResourceNotFoundError("No matches")
    cluster = KubernetesCluster()
    with pytest.raises(ApplyError, match="Unknown resource type"):
        await cluster.update({"apiVersion": "example.com/v1", "kind": "Widget"})
    dynamic.resources.invalidate_cache.assert_called_once()
    assert dynamic.resources.get.call_count == 2


@pytest.mark.parametrize(
    "error",
    [
        MaxRetryError(None, "/api/v1", "Connection refused"),
        ConnectionResetError("Connection reset by peer"),
    ],
)
async def test_transport_errors(resource: MagicMock, error: Exception) -> None:
    """Test an unreachable API server is reported as an apply error."""
    resource.create.side_effect = error
    cluster = KubernetesCluster()
    with pytest.raises(ApplyError, match="API server unreachable"):
        await cluster.create(SERVICE)


async def test_discovery_transport_error(dynamic: MagicMock) -> None:
    """Test a failure to reach the server during discovery."""
    dynamic.resources.get.side_effect = MaxRetryError(None, "/apis", "timed out")
    cluster = KubernetesCluster()
    with pytest.raises(ApplyError, match="Failed to discover"):
        await cluster.get("v1", SERVICE_ID)


async def test_reconcile_custom_resource(
    dynamic: MagicMock, git_repo: GitRepo, cache: GitCache
) -> None:
    """Test a definition and an object of its type converge in one cycle."""
    git_repo.commit(
        {
            "app/crd.yaml": {
                "apiVersion": "apiextensions.k8s.io/v1",
                "kind": CRD_KIND,
                "metadata": {"name": "widgets.example.com"},
            },
            "app/widget.yaml": {
                "apiVersion": "example.com/v1",
                "kind": "Widget",
                "metadata": {"name": "w"},
            },
        }
    )
    created: dict[tuple[str, str], dict[str, Any]] = {}
    not_served = {"Widget"}

    def invalidate_cache() -> None:
        if any(kind == CRD_KIND for kind, _ in created):
            not_served.clear()

    def get_resource(api_version: str, kind: str) -> MagicMock:
        if kind in not_served:
            raise ResourceNotFoundError(f"No matches found for {kind}")

        def get(
            name: str | None = None,
            namespace: str | None = None,
            label_selector: str | None = None,
        ) -> MagicMock:
            if label_selector is not None:
                return _response({"items": []})
            if (obj := created.get((kind, str(name)))) is None:
                raise ApiException(status=404, reason="Not Found")
            return _response(obj)

        def create(body: dict[str, Any], namespace: str | None = None) -> MagicMock:
            created[(kind, body["metadata"]["name"])] = body
            return _response(body)

        api_resource = MagicMock()
        api_resource.get.side_effect = get
        api_resource.create.side_effect = create
        return api_resource

    dynamic.resources.get.side_effect = get_resource
    dynamic.resources.invalidate_cache.side_effect = invalidate_cache
    store = InMemoryStore()
    reconciler = Reconciler(KubernetesCluster(), store, cache=cache)
    app = make_app(git_repo.url)
    store.add_application(app)

    result = await reconciler.reconcile(app)
    assert result.outcome == SyncOutcome.SYNCED, result.message
    assert list(created)[0] == (CRD_KIND, "widgets.example.com")
    assert ("Widget", "w") in created

    result = await reconciler.reconcile(app)
    assert result.outcome == SyncOutcome.SYNCED
    assert result.changes == []

"""Tests for the in-memory cluster."""

from typing import Any

import pytest

from kube_sync.cluster import ClusterEvent, InMemoryCluster, ResourceType
from kube_sync.exceptions import ApplyError, ConflictError, ObjectNotFoundError
from kube_sync.manifest import NamedResource, with_ownership

CONFIG_MAP_ID = NamedResource("ConfigMap", "podinfo", "settings")


def _config_map(value: str = "a", owner: str | None = "kube-sync.podinfo") -> Any:
    obj = {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": "settings", "namespace": "podinfo"},
        "data": {"key": value},
    }
    return with_ownership(obj, owner) if owner else obj


async def test_create_get_update_delete() -> None:
    """Test the lifecycle of an object."""
    cluster = InMemoryCluster()
    created = await cluster.create(_config_map())
    assert created["metadata"]["resourceVersion"] == "1"
    assert created["metadata"]["generation"] == 1
    assert created["metadata"]["uid"]

    live = await cluster.get("v1", CONFIG_MAP_ID)
    assert live == created

    live["data"]["key"] = "b"
    updated = await cluster.update(live)
    assert updated["metadata"]["resourceVersion"] == "2"
    assert updated["metadata"]["generation"] == 2
    assert updated["metadata"]["uid"] == created["metadata"]["uid"]

    await cluster.delete("v1", CONFIG_MAP_ID)
    assert await cluster.get("v1", CONFIG_MAP_ID) is None
    await cluster.delete("v1", CONFIG_MAP_ID)
    assert cluster.writes == [
        ("create", CONFIG_MAP_ID),
        ("update", CONFIG_MAP_ID),
        ("delete", CONFIG_MAP_ID),
    ]


async def test_create_existing() -> None:
    """Test creating an object that exists is a conflict."""
    cluster = InMemoryCluster()
    await cluster.create(_config_map())
    with pytest.raises(ConflictError, match="already exists"):
        await cluster.create(_config_map())


async def test_update_stale_version() -> None:
    """Test an update based on a stale read is a conflict."""
    cluster = InMemoryCluster()
    created = await cluster.create(_config_map())
    first = await cluster.get("v1", CONFIG_MAP_ID)
    assert first is not None
    first["data"]["key"] = "b"
    await cluster.update(first)
    created["data"]["key"] = "c"
    with pytest.raises(ConflictError, match="stale"):
        await cluster.update(created)


async def test_update_missing() -> None:
    """Test updating an object that does not exist."""
    cluster = InMemoryCluster()
    with pytest.raises(ObjectNotFoundError):
        await cluster.update(_config_map())


async def test_list_owned() -> None:
    """Test listing objects by owner and type."""
    cluster = InMemoryCluster()
    await cluster.create(_config_map())
    other = _config_map(owner="kube-sync.other")
    other["metadata"]["name"] = "other"
    await cluster.create(other)
    unlabeled = _config_map(owner=None)
    unlabeled["metadata"]["name"] = "unlabeled"
    await cluster.create(unlabeled)

    owned = await cluster.list_owned("kube-sync.podinfo")
    assert [obj["metadata"]["name"] for obj in owned] == ["settings"]
    assert await cluster.list_owned(
        "kube-sync.podinfo", [ResourceType("v1", "Secret")]
    ) == []


async def test_strict_namespaces() -> None:
    """Test namespaced objects require their Namespace in strict mode."""
    cluster = InMemoryCluster(strict_namespaces=True)
    with pytest.raises(ApplyError, match="Namespace 'podinfo'"):
        await cluster.create(_config_map())
    namespace = {
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {"name": "podinfo"},
    }
    await cluster.create(namespace)
    await cluster.create(_config_map())

    await cluster.delete("v1", NamedResource("Namespace", None, "podinfo"))
    assert cluster.objects() == []


async def test_listeners() -> None:
    """Test listeners are told about every change."""
    cluster = InMemoryCluster()
    events: list[tuple[ClusterEvent, str]] = []
    remove = cluster.add_listener(
        lambda event, obj: events.append((event, obj["data"]["key"]))
    )
    created = await cluster.create(_config_map())
    created["data"]["key"] = "b"
    await cluster.update(created)
    await cluster.delete("v1", CONFIG_MAP_ID)
    remove()
    await cluster.create(_config_map())
    assert events == [
        (ClusterEvent.ADDED, "a"),
        (ClusterEvent.MODIFIED, "b"),
        (ClusterEvent.DELETED, "b"),
    ]


async def test_injected_error() -> None:
    """Test an injected error fails every write to the object."""
    cluster = InMemoryCluster()
    cluster.set_error(CONFIG_MAP_ID, ApplyError("admission webhook denied"))
    with pytest.raises(ApplyError, match="admission webhook"):
        await cluster.create(_config_map())
    cluster.set_error(CONFIG_MAP_ID, None)
    await cluster.create(_config_map())

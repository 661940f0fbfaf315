"""Tests for the in-memory store."""

import asyncio
from datetime import datetime, timezone

import pytest

from kube_sync.exceptions import (
    InvalidTransitionError,
    ObjectNotFoundError,
    SyncFailedError,
)
from kube_sync.manifest import Application
from kube_sync.store import (
    InMemoryStore,
    StatusInfo,
    StoreEvent,
    SyncOutcome,
    SyncResult,
    SyncStatus,
)

from ..conftest import make_app


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore(history_limit=3)


@pytest.fixture
def app() -> Application:
    return make_app("https://github.com/example/podinfo")


def _result(message: str) -> SyncResult:
    return SyncResult(
        timestamp=datetime.now(timezone.utc),
        outcome=SyncOutcome.SYNCED,
        message=message,
    )


def test_add_and_get_application(store: InMemoryStore, app: Application) -> None:
    """Test adding and retrieving an Application."""
    events = []
    store.add_listener(StoreEvent.APPLICATION_ADDED, lambda *args: events.append(args))
    store.add_application(app)
    store.add_application(app)
    assert store.get_application(app.app_id) == app
    assert store.list_applications() == [app]
    assert events == [(app.app_id, app)]
    assert store.get_status(app.app_id) == StatusInfo()


def test_status_transitions(store: InMemoryStore, app: Application) -> None:
    """Test status changes through a successful cycle."""
    store.add_application(app)
    store.update_status(app.app_id, SyncStatus.OUT_OF_SYNC, "2 change(s)")
    store.update_status(app.app_id, SyncStatus.SYNCING)
    info = store.update_status(
        app.app_id, SyncStatus.SYNCED, "done", revision="abc123"
    )
    assert info == StatusInfo(
        status=SyncStatus.SYNCED, message="done", revision="abc123"
    )
    store.update_status(app.app_id, SyncStatus.ERROR, "fetch failed", failures=1)
    info = store.get_status(app.app_id)
    assert info.status == SyncStatus.ERROR
    assert info.revision == "abc123"
    assert info.failures == 1


def test_invalid_transition(store: InMemoryStore, app: Application) -> None:
    """Test a status change that skips Syncing is rejected."""
    store.add_application(app)
    store.update_status(app.app_id, SyncStatus.OUT_OF_SYNC)
    with pytest.raises(InvalidTransitionError):
        store.update_status(app.app_id, SyncStatus.SYNCED)


def test_history_is_bounded(store: InMemoryStore, app: Application) -> None:
    """Test only the most recent results are retained."""
    assert store.latest_result(app.app_id) is None
    assert store.history(app.app_id) == []
    for i in range(5):
        store.record_result(app.app_id, _result(f"cycle {i}"))
    assert [r.message for r in store.history(app.app_id)] == [
        "cycle 2",
        "cycle 3",
        "cycle 4",
    ]
    latest = store.latest_result(app.app_id)
    assert latest is not None
    assert latest.message == "cycle 4"


def test_delete_application(store: InMemoryStore, app: Application) -> None:
    """Test deleting an Application is terminal until it is declared again."""
    store.add_application(app)
    store.record_result(app.app_id, _result("cycle"))
    store.delete_application(app.app_id)
    assert store.get_application(app.app_id) is None
    assert store.get_status(app.app_id).status == SyncStatus.DELETED
    with pytest.raises(InvalidTransitionError):
        store.update_status(app.app_id, SyncStatus.OUT_OF_SYNC)
    with pytest.raises(ObjectNotFoundError):
        store.delete_application(app.app_id)

    store.add_application(app)
    assert store.get_status(app.app_id).status == SyncStatus.UNKNOWN
    assert store.history(app.app_id) == []


def test_listener_removal(store: InMemoryStore, app: Application) -> None:
    """Test a removed listener is no longer called."""
    events = []
    remove = store.add_listener(
        StoreEvent.STATUS_UPDATED, lambda *args: events.append(args)
    )
    store.update_status(app.app_id, SyncStatus.OUT_OF_SYNC)
    remove()
    store.update_status(app.app_id, SyncStatus.SYNCING)
    assert len(events) == 1


def test_failing_listener(store: InMemoryStore, app: Application) -> None:
    """Test a failing listener does not break the store."""

    def fail(*args: object) -> None:
        raise ValueError("boom")

    store.add_listener(StoreEvent.STATUS_UPDATED, fail)
    store.update_status(app.app_id, SyncStatus.OUT_OF_SYNC)
    assert store.get_status(app.app_id).status == SyncStatus.OUT_OF_SYNC


async def test_watch_synced(store: InMemoryStore, app: Application) -> None:
    """Test waiting for an Application to reach Synced."""
    store.add_application(app)
    task = asyncio.create_task(store.watch_synced(app.app_id))
    await asyncio.sleep(0)
    store.update_status(app.app_id, SyncStatus.OUT_OF_SYNC)
    store.update_status(app.app_id, SyncStatus.SYNCING)
    await asyncio.sleep(0)
    assert not task.done()
    store.update_status(app.app_id, SyncStatus.SYNCED, revision="abc123")
    info = await asyncio.wait_for(task, timeout=1)
    assert info.revision == "abc123"

    # Already synced returns immediately
    info = await store.watch_synced(app.app_id)
    assert info.status == SyncStatus.SYNCED


async def test_watch_synced_error(store: InMemoryStore, app: Application) -> None:
    """Test waiting for an Application that fails."""
    store.add_application(app)
    task = asyncio.create_task(store.watch_synced(app.app_id))
    await asyncio.sleep(0)
    store.update_status(app.app_id, SyncStatus.ERROR, "fetch failed")
    with pytest.raises(SyncFailedError, match="fetch failed"):
        await asyncio.wait_for(task, timeout=1)

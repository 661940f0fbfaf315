"""Tests for the kube-sync shell command."""

import asyncio
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from io import StringIO
from pathlib import Path

import pytest

from kube_sync.cluster import InMemoryCluster
from kube_sync.config import ControllerConfig
from kube_sync.controller import Controller
from kube_sync.task.service import TaskServiceImpl
from kube_sync.tool.shell.repl import SyncShell

from ..conftest import GitRepo, make_app


@dataclass
class ShellFixture:
    """A shell attached to a running controller with captured output."""

    shell: SyncShell
    stdout: StringIO
    stderr: StringIO
    cluster: InMemoryCluster

    async def onecmd(self, line: str) -> bool:
        """Run a command in a worker thread, as the shell action does."""
        return bool(await asyncio.to_thread(self.shell.onecmd, line))


@pytest.fixture
async def shell(
    git_repo: GitRepo, task_service: TaskServiceImpl, tmp_path: Path
) -> AsyncGenerator[ShellFixture, None]:
    """Return a shell for a controller reconciling one Application."""
    cluster = InMemoryCluster()
    config = ControllerConfig(cache_dir=str(tmp_path / "cache"))
    async with Controller(
        config=config,
        cluster_factory=lambda destination: cluster,
        task_service=task_service,
    ) as controller:
        app = make_app(git_repo.url, interval=3600)
        controller.add_application(app)
        await asyncio.wait_for(controller.store.watch_synced(app.app_id), 10)
        stdout = StringIO()
        stderr = StringIO()
        yield ShellFixture(
            SyncShell(controller, asyncio.get_running_loop(), stdout, stderr),
            stdout,
            stderr,
            cluster,
        )


@pytest.mark.parametrize(
    ("command", "expected"),
    [
        ("help", ["Documented commands", "apps", "describe", "notify"]),
        ("help sync", ["Reconcile an Application now"]),
        ("apps", ["NAME", "STATUS", "podinfo", "Synced"]),
        ("apps -o yaml", ["kind: Application", "name: podinfo"]),
        ("status podinfo", ["kube-sync/podinfo"]),
        ("status kube-sync/podinfo -o json", ['"status": "Synced"']),
        ("history podinfo", ["OUTCOME", "Synced"]),
        ("describe podinfo", ["Application", "Specification", "Latest Result"]),
        ("sync podinfo", ["kube-sync/podinfo: Synced"]),
        ("notify https://example.com/other.git", ["No Application reads from"]),
    ],
    ids=[
        "help",
        "help-sync",
        "apps",
        "apps-yaml",
        "status",
        "status-json",
        "history",
        "describe",
        "sync",
        "notify-unknown",
    ],
)
async def test_shell_commands(
    shell: ShellFixture, command: str, expected: list[str]
) -> None:
    """Test commands that inspect and drive the controller."""
    assert not await shell.onecmd(command)
    output = shell.stdout.getvalue()
    for text in expected:
        assert text in output
    assert shell.stderr.getvalue() == ""


async def test_notify(shell: ShellFixture, git_repo: GitRepo) -> None:
    """Test announcing a revision of the repository of an Application."""
    await shell.onecmd(f"notify {git_repo.url} {git_repo.head}")
    assert shell.stdout.getvalue() == "Triggered kube-sync/podinfo\n"


async def test_delete_cascade(shell: ShellFixture) -> None:
    """Test deleting an Application and its live objects."""
    await shell.onecmd("delete podinfo --cascade")
    assert shell.stdout.getvalue() == "Deleted kube-sync/podinfo\n"
    assert shell.cluster.objects() == []

    await shell.onecmd("apps")
    assert "No Applications found" in shell.stdout.getvalue()


@pytest.mark.parametrize(
    ("command", "expected"),
    [
        ("status missing", "Expected one Application named 'missing', found 0"),
        ("history other/podinfo", "Application other/podinfo not found"),
        ("notify", "Usage: notify <repo-url> [revision]"),
    ],
    ids=["unknown-name", "unknown-id", "usage"],
)
async def test_shell_errors(shell: ShellFixture, command: str, expected: str) -> None:
    """Test errors are reported on stderr without leaving the shell."""
    assert not await shell.onecmd(command)
    assert expected in shell.stderr.getvalue()


@pytest.mark.parametrize("command", ["exit", "quit"])
async def test_exit(shell: ShellFixture, command: str) -> None:
    """Test leaving the shell."""
    assert await shell.onecmd(command)
    assert shell.stdout.getvalue() == "Exiting kube-sync shell\n"

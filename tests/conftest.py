"""Test fixtures shared by kube-sync tests."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any

import git
import pytest
import yaml

from kube_sync.cluster import InMemoryCluster
from kube_sync.diff import resource_id
from kube_sync.manifest import (
    Application,
    ApplicationDestination,
    ApplicationSource,
    NamedResource,
    SyncPolicy,
)
from kube_sync.source import GitCache
from kube_sync.task.service import TaskServiceImpl

ACTOR = git.Actor("Test User", "test@example.com")

DEPLOYMENT = {
    "apiVersion": "apps/v1",
    "kind": "Deployment",
    "metadata": {"name": "podinfo", "labels": {"app": "podinfo"}},
    "spec": {
        "replicas": 2,
        "selector": {"matchLabels": {"app": "podinfo"}},
        "template": {
            "metadata": {"labels": {"app": "podinfo"}},
            "spec": {
                "containers": [
                    {"name": "podinfo", "image": "ghcr.io/stefanprodan/podinfo:6.5.4"}
                ]
            },
        },
    },
}

SERVICE = {
    "apiVersion": "v1",
    "kind": "Service",
    "metadata": {"name": "podinfo"},
    "spec": {
        "selector": {"app": "podinfo"},
        "ports": [{"name": "http", "port": 9898, "targetPort": 9898}],
    },
}


@dataclass
class GitRepo:
    """A local git repository used as an Application source."""

    repo: git.Repo
    path: Path

    @property
    def url(self) -> str:
        return str(self.path)

    @property
    def head(self) -> str:
        return self.repo.head.commit.hexsha

    def commit(self, files: dict[str, Any], message: str = "Update") -> str:
        """Write the files (YAML objects or text) and commit them."""
        for name, content in files.items():
            file_path = self.path / name
            file_path.parent.mkdir(parents=True, exist_ok=True)
            if content is None:
                file_path.unlink()
                self.repo.index.remove([name])
                continue
            if not isinstance(content, str):
                content = yaml.dump(content, sort_keys=False)
            file_path.write_text(content)
            self.repo.index.add([name])
        return self.repo.index.commit(
            message, author=ACTOR, committer=ACTOR
        ).hexsha


@pytest.fixture
def git_repo(tmp_path: Path) -> GitRepo:
    """Create a repository holding a Deployment and a Service under `app/`."""
    path = tmp_path / "repo"
    path.mkdir()
    repo = GitRepo(git.Repo.init(str(path)), path)
    repo.commit(
        {"app/deployment.yaml": DEPLOYMENT, "app/service.yaml": SERVICE},
        "Initial commit",
    )
    return repo


@pytest.fixture
def cache(tmp_path: Path) -> GitCache:
    """Create a cache of clones private to the test."""
    return GitCache(tmp_path / "cache")


@pytest.fixture
def task_service() -> TaskServiceImpl:
    """Create a task service private to the test."""
    return TaskServiceImpl()


def make_app(
    repo_url: str,
    name: str = "podinfo",
    path: str = "app",
    namespace: str = "podinfo",
    **kwargs: Any,
) -> Application:
    """Build an Application reading the path of the repository."""
    prune = kwargs.pop("prune", True)
    interval = kwargs.pop("interval", 180)
    return Application(
        name=name,
        namespace="kube-sync",
        source=ApplicationSource(repo_url=repo_url, path=path, **kwargs),
        destination=ApplicationDestination(namespace=namespace),
        sync_policy=SyncPolicy(interval=interval, prune=prune),
    )


class GatedCluster(InMemoryCluster):
    """An InMemoryCluster whose writes wait until the gate is opened."""

    def __init__(self, strict_namespaces: bool = False) -> None:
        super().__init__(strict_namespaces)
        self.gate = asyncio.Event()
        self.started: list[NamedResource] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def _gated(
        self, rid: NamedResource, write: Callable[[], Awaitable[Any]]
    ) -> Any:
        self.started.append(rid)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await self.gate.wait()
            return await write()
        finally:
            self.in_flight -= 1

    async def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        write = partial(super().create, obj)
        return await self._gated(resource_id(obj), write)  # type: ignore[no-any-return]

    async def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        write = partial(super().update, obj)
        return await self._gated(resource_id(obj), write)  # type: ignore[no-any-return]

    async def delete(self, api_version: str, resource: NamedResource) -> None:
        await self._gated(resource, partial(super().delete, api_version, resource))

    async def wait_started(self, count: int, timeout: float = 10.0) -> None:
        """Wait until the number of writes started reaches the count."""
        async with asyncio.timeout(timeout):
            while len(self.started) < count:
                await asyncio.sleep(0.01)

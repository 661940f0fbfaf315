"""Library for rendering the manifests at an Application source path.

Two rendering modes are supported. In `plain` mode the path is a directory of
YAML (or JSON) manifests that are read in file name order. In `kustomize`
mode the path is a kustomization, typically an overlay selecting a base, and
is rendered with `kustomize build`.

This example renders an overlay into a list of objects:
```python
from kube_sync import kustomize

objects = await kustomize.build(Path('/repo/overlays/prod')).objects()
for obj in objects:
    print(f"Found object {obj['apiVersion']} {obj['kind']}")
```
"""

import logging
from pathlib import Path
from typing import Any

import aiofiles
from aiofiles.ospath import isdir
import yaml

from .command import Command, format_path
from .exceptions import KustomizeException, RenderError
from .manifest import CLUSTER_SCOPED_KINDS, RenderMode

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "build",
    "read_plain",
    "render",
    "Kustomize",
]

KUSTOMIZE_BIN = "kustomize"
MANIFEST_SUFFIXES = (".yaml", ".yml", ".json")
KUSTOMIZATION_FILES = ("kustomization.yaml", "kustomization.yml", "Kustomization")


class Kustomize:
    """Library for issuing a kustomize build command."""

    def __init__(self, cmd: Command) -> None:
        """Initialize Kustomize."""
        self._cmd = cmd

    async def run(self) -> str:
        """Run the kustomize command and return the output as a string."""
        try:
            return await self._cmd.run()
        except KustomizeException as err:
            raise RenderError(f"Unable to render kustomization: {err}") from err

    async def objects(
        self, target_namespace: str | None = None
    ) -> list[dict[str, Any]]:
        """Run the kustomize command and return the result cluster objects as a list."""
        out = await self.run()
        return parse_docs(out, str(self._cmd), target_namespace=target_namespace)


def build(path: Path, kustomize_bin: str = KUSTOMIZE_BIN) -> Kustomize:
    """Build cluster artifacts from the kustomization in the specified path."""
    return Kustomize(
        Command([kustomize_bin, "build", str(path)], exc=KustomizeException)
    )


def parse_docs(
    content: str, source: str, target_namespace: str | None = None
) -> list[dict[str, Any]]:
    """Parse a multi-document YAML string into objects."""
    try:
        docs = [doc for doc in yaml.safe_load_all(content) if doc is not None]
    except yaml.YAMLError as err:
        raise RenderError(f"Unable to parse manifests from {source}: {err}") from err
    for doc in docs:
        if not isinstance(doc, dict):
            raise RenderError(f"Manifest in {source} is not a mapping: {doc!r}")
    if target_namespace is not None:
        docs = [update_namespace(doc, target_namespace) for doc in docs]
    return docs


async def read_plain(
    path: Path, target_namespace: str | None = None
) -> list[dict[str, Any]]:
    """Read a directory of manifests in file name order.

    Subdirectories are not traversed; an overlay layout should use
    `kustomize` mode instead.
    """
    files = sorted(
        child
        for child in path.iterdir()
        if child.is_file()
        and child.suffix in MANIFEST_SUFFIXES
        and child.name not in KUSTOMIZATION_FILES
    )
    docs: list[dict[str, Any]] = []
    for manifest_file in files:
        async with aiofiles.open(str(manifest_file)) as f:
            content = await f.read()
        docs.extend(
            parse_docs(
                content, format_path(manifest_file), target_namespace=target_namespace
            )
        )
    _LOGGER.debug("Read %d manifests from %s", len(docs), format_path(path))
    return docs


async def render(
    path: Path,
    mode: RenderMode,
    target_namespace: str | None = None,
    kustomize_bin: str = KUSTOMIZE_BIN,
) -> list[dict[str, Any]]:
    """Render the manifests at the path with the specified mode."""
    if not await isdir(path):
        raise RenderError(f"Source path is not a directory: {format_path(path)}")
    if mode == RenderMode.KUSTOMIZE:
        return await build(path, kustomize_bin=kustomize_bin).objects(
            target_namespace=target_namespace
        )
    return await read_plain(path, target_namespace=target_namespace)


def update_namespace(doc: dict[str, Any], namespace: str) -> dict[str, Any]:
    """Update the namespace of the specified document.

    Will only update the namespace if the doc appears to have a metadata/name
    and is of a namespaced kind.
    """
    if doc.get("kind") in CLUSTER_SCOPED_KINDS:
        return doc
    if (metadata := doc.get("metadata")) is not None and "name" in metadata:
        doc["metadata"]["namespace"] = namespace
    return doc

"""Library for common command line flags and Application selection."""

from argparse import ArgumentParser
import logging
import pathlib

from kube_sync.cluster import ClusterClient, InMemoryCluster
from kube_sync.controller import ClusterFactory, kubernetes_cluster
from kube_sync.exceptions import InputException
from kube_sync.manifest import (
    Application,
    ApplicationDestination,
    NamedResource,
    read_applications,
)

_LOGGER = logging.getLogger(__name__)


def add_selector_flags(args: ArgumentParser) -> None:
    """Add common Application selector flags to the arguments object."""
    args.add_argument(
        "--path",
        help="File or directory of Application declarations",
        type=pathlib.Path,
        default=pathlib.Path("."),
    )
    args.add_argument(
        "--app",
        "-a",
        help="Only select the Application with this name or namespace/name",
        action="append",
        default=None,
    )
    args.add_argument(
        "--config",
        help="Optional controller configuration file",
        type=pathlib.Path,
        default=None,
    )
    args.add_argument(
        "--in-memory",
        help="Reconcile into an empty in memory cluster instead of Kubernetes",
        action="store_true",
        default=False,
    )


def _matches(app: Application, selectors: list[str]) -> bool:
    for selector in selectors:
        if "/" in selector:
            if NamedResource.parse(selector) == app.app_id:
                return True
        elif selector == app.name:
            return True
    return False


async def select_applications(
    path: pathlib.Path, app: list[str] | None = None
) -> list[Application]:
    """Read the Application declarations and apply the --app selectors."""
    apps = await read_applications(path)
    if not app:
        return apps
    selected = [a for a in apps if _matches(a, app)]
    if not selected:
        raise InputException(f"No Application matching {', '.join(app)} in {path}")
    _LOGGER.debug("Selected %d of %d Applications", len(selected), len(apps))
    return selected


def cluster_factory(in_memory: bool) -> ClusterFactory:
    """Return the factory for target cluster clients."""
    if not in_memory:
        return kubernetes_cluster
    cluster = InMemoryCluster()

    def factory(destination: ApplicationDestination) -> ClusterClient:
        return cluster

    return factory

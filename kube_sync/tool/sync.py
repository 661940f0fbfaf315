"""Kube-sync sync action."""

import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
from typing import Any, cast

from kube_sync.cluster import ClusterClient
from kube_sync.config import load_config
from kube_sync.exceptions import SyncFailedError
from kube_sync.reconciler import Reconciler
from kube_sync.store import InMemoryStore, SyncOutcome, SyncResult

from . import selector
from .format import formatter

_LOGGER = logging.getLogger(__name__)


def result_row(app_name: str, result: SyncResult) -> dict[str, Any]:
    """Return the table row summarizing a SyncResult."""
    return {
        "application": app_name,
        "outcome": result.outcome,
        "revision": (result.revision or "")[:8],
        "changes": len(result.changes),
        "failures": len(result.failures),
        "message": result.message,
    }


class SyncAction:
    """Kube-sync sync action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "sync",
                help="Reconcile Applications once",
                description=(
                    "Run a single reconciliation cycle for each Application and "
                    "exit with an error if any of them failed"
                ),
            ),
        )
        selector.add_selector_flags(args)
        args.add_argument(
            "--output",
            "-o",
            choices=["yaml", "json"],
            default=None,
            help="Output format of the command",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        path,
        app,
        config,
        in_memory: bool,
        output: str | None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        apps = await selector.select_applications(path, app)
        controller_config = await load_config(config)
        factory = selector.cluster_factory(in_memory)
        store = InMemoryStore(history_limit=controller_config.history_limit)
        reconcilers: dict[str, Reconciler] = {}
        clusters: list[ClusterClient] = []
        results: list[tuple[str, SyncResult]] = []
        try:
            for a in apps:
                key = a.destination.cluster_key
                if (reconciler := reconcilers.get(key)) is None:
                    cluster = factory(a.destination)
                    clusters.append(cluster)
                    reconciler = Reconciler(cluster, store, controller_config)
                    reconcilers[key] = reconciler
                store.add_application(a)
                results.append((a.namespaced_name, await reconciler.reconcile(a)))
        finally:
            for cluster in clusters:
                await cluster.close()

        if output:
            formatter(output).print(
                [{"application": name, **result.to_dict()} for name, result in results]
            )
        else:
            formatter("table").print(
                [result_row(name, result) for name, result in results]
            )
        for name, result in results:
            if result.outcome == SyncOutcome.ERROR:
                raise SyncFailedError(name, result.message)

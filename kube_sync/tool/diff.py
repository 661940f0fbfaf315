"""Kube-sync diff action."""

import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import sys
from typing import Any, cast

from kube_sync import diff
from kube_sync.config import load_config
from kube_sync.reconciler import Reconciler
from kube_sync.store import InMemoryStore

from . import selector
from .format import formatter

_LOGGER = logging.getLogger(__name__)


class DiffAction:
    """Kube-sync diff action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "diff",
                help="Diff the desired state of Applications against the cluster",
                description=(
                    "Fetch and render each Application, then print the changes "
                    "a sync would make to the target cluster without making them"
                ),
            ),
        )
        selector.add_selector_flags(args)
        args.add_argument(
            "--output",
            "-o",
            choices=["diff", "yaml", "json"],
            default="diff",
            help="Output format of the command",
        )
        args.add_argument(
            "--unified",
            "-u",
            type=int,
            default=3,
            help="Number of lines of context in the unified diff",
        )
        args.add_argument(
            "--limit-bytes",
            type=int,
            default=10000,
            help="Truncate the diff of each Application after this many bytes",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        path,
        app,
        config,
        in_memory: bool,
        output: str,
        unified: int,
        limit_bytes: int,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        apps = await selector.select_applications(path, app)
        controller_config = await load_config(config)
        factory = selector.cluster_factory(in_memory)
        store = InMemoryStore()
        results: list[dict[str, Any]] = []
        for a in apps:
            cluster = factory(a.destination)
            try:
                reconciler = Reconciler(cluster, store, controller_config)
                desired = await reconciler.fetch_desired_state(a)
                live = await reconciler.observe_live_state(a, desired)
                diffs = reconciler.compute_diff(desired, live)
            finally:
                await cluster.close()
            _LOGGER.debug("%s: %d resource diffs", a.namespaced_name, len(diffs))
            if output != "diff":
                results.append(
                    {
                        "application": a.namespaced_name,
                        "revision": desired.resolved_revision,
                        "diffs": [
                            d.to_dict()
                            for d in diffs
                            if d.action != diff.DiffAction.NOOP
                        ],
                    }
                )
                continue
            if not diff.has_changes(diffs):
                print(f"# {a.namespaced_name}: in sync at {desired.resolved_revision}")
                continue
            print(f"# {a.namespaced_name}: changes at {desired.resolved_revision}")
            for line in diff.perform_unified_diff(
                diffs, n=unified, limit_bytes=limit_bytes
            ):
                sys.stdout.write(line)
        if output != "diff":
            formatter(output).print(results)

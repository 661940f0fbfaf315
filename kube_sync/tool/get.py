"""Kube-sync get action."""

import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
from typing import Any, cast

from kube_sync.cluster import InMemoryCluster
from kube_sync.config import load_config
from kube_sync.manifest import application_doc
from kube_sync.reconciler import Reconciler
from kube_sync.store import InMemoryStore

from . import selector
from .format import formatter


_LOGGER = logging.getLogger(__name__)


class GetApplicationAction:
    """Get details about Applications."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "applications",
                aliases=["apps", "app"],
                help="Get Application declarations",
                description="Print information about declared Applications",
            ),
        )
        selector.add_selector_flags(args)
        args.add_argument(
            "--output",
            "-o",
            choices=["wide", "yaml", "json"],
            default=None,
            help="Output format of the command",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        path,
        app,
        output: str | None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        apps = await selector.select_applications(path, app)
        if output in ("yaml", "json"):
            formatter(output).print([application_doc(a) for a in apps])
            return
        cols = ["namespace", "name", "repo", "revision", "path", "destination"]
        if output == "wide":
            cols.extend(["mode", "interval", "prune"])
        results: list[dict[str, Any]] = []
        for a in apps:
            results.append(
                {
                    "namespace": a.namespace,
                    "name": a.name,
                    "repo": a.source.repo_url,
                    "revision": a.source.revision,
                    "path": a.source.path,
                    "destination": a.destination.namespace,
                    "mode": a.source.render_mode,
                    "interval": a.sync_policy.interval,
                    "prune": a.sync_policy.prune,
                }
            )
        formatter("table", cols).print(results)


class GetResourcesAction:
    """Get the rendered desired resources of Applications."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "resources",
                aliases=["res"],
                help="Get the desired resources of Applications",
                description=(
                    "Fetch and render the source of each Application and print "
                    "the resulting desired resources"
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
        output: str | None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        apps = await selector.select_applications(path, app)
        reconciler = Reconciler(
            InMemoryCluster(), InMemoryStore(), await load_config(config)
        )
        docs: list[dict[str, Any]] = []
        results: list[dict[str, Any]] = []
        for a in apps:
            desired = await reconciler.fetch_desired_state(a)
            docs.extend(desired.resources)
            for obj in desired.resources:
                metadata = obj.get("metadata") or {}
                results.append(
                    {
                        "application": a.namespaced_name,
                        "revision": desired.resolved_revision[:8],
                        "kind": obj.get("kind"),
                        "namespace": metadata.get("namespace"),
                        "name": metadata.get("name"),
                    }
                )
        if output:
            formatter(output).print(docs)
            return
        formatter("table").print(results)


class GetAction:
    """Kube-sync get action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "get",
                help="Print information about Applications",
                description="Print information about Applications and their sources",
            ),
        )
        subcmds = args.add_subparsers(
            title="Available commands",
            required=True,
        )
        GetApplicationAction.register(subcmds)
        GetResourcesAction.register(subcmds)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        # No-op given subcommands are always the dispatch target

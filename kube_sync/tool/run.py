"""Kube-sync run action."""

import asyncio
import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
import signal
from typing import cast

from kube_sync.config import load_config
from kube_sync.controller import Controller

from . import selector

_LOGGER = logging.getLogger(__name__)


class RunAction:
    """Kube-sync run action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "run",
                help="Continuously reconcile Applications",
                description=(
                    "Run the controller, reconciling every Application on its "
                    "poll interval until interrupted"
                ),
            ),
        )
        selector.add_selector_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        path,
        app,
        config,
        in_memory: bool,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        apps = await selector.select_applications(path, app)
        controller_config = await load_config(config)
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        try:
            async with Controller(
                config=controller_config,
                cluster_factory=selector.cluster_factory(in_memory),
            ) as controller:
                for a in apps:
                    controller.add_application(a)
                _LOGGER.info("Reconciling %d Application(s)", len(apps))
                await stop.wait()
                _LOGGER.info("Shutting down")
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

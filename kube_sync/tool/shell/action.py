"""Kube-sync shell command implementation."""

import asyncio
import logging
from argparse import ArgumentParser, _SubParsersAction as SubParsersAction
from typing import cast

from kube_sync.config import load_config
from kube_sync.controller import Controller
from .. import selector

from .repl import SyncShell

_LOGGER = logging.getLogger(__name__)


class ShellAction:
    """Kube-sync shell action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the shell subcommand."""
        parser = cast(
            ArgumentParser,
            subparsers.add_parser(
                "shell",
                help="Start an interactive shell",
                description=(
                    "Start the controller and an interactive shell for inspecting "
                    "and driving the reconciliation of Applications"
                ),
            ),
        )
        selector.add_selector_flags(parser)
        parser.set_defaults(cls=cls)
        return parser

    async def run(  # type: ignore[no-untyped-def]
        self,
        path,
        app,
        config,
        in_memory: bool,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Run the interactive shell while the controller reconciles."""
        apps = await selector.select_applications(path, app)
        controller_config = await load_config(config)
        async with Controller(
            config=controller_config,
            cluster_factory=selector.cluster_factory(in_memory),
        ) as controller:
            for a in apps:
                controller.add_application(a)
            loop = asyncio.get_running_loop()
            shell = SyncShell(controller, loop)
            _LOGGER.info("Interactive shell ready. Type 'help' for available commands.")
            await loop.run_in_executor(None, shell.cmdloop)
        _LOGGER.debug("Controller stopped")

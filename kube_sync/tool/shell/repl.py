"""Kube-sync interactive shell implementation.

The shell runs in a worker thread while the controller loops run on the event
loop. Every call into the controller is scheduled on that loop and the shell
waits for the result.
"""

import asyncio
import cmd
from argparse import ArgumentParser, Namespace
from collections.abc import Callable
import inspect
import logging
import shlex
import sys
from typing import Any, TextIO

from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from tabulate import tabulate
import yaml

from kube_sync.controller import Controller
from kube_sync.exceptions import SyncException
from kube_sync.manifest import Application, NamedResource, application_doc
from kube_sync.tool.format import formatter

_LOGGER = logging.getLogger(__name__)


class SyncShell(cmd.Cmd):
    """Interactive shell for kube-sync."""

    intro = "Welcome to the kube-sync shell. Type 'help' for help, 'exit' to quit."
    prompt = "kube-sync> "

    def __init__(
        self,
        controller: Controller,
        loop: asyncio.AbstractEventLoop,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
    ) -> None:
        """Initialize the shell.

        Args:
            controller: The running controller to inspect and drive
            loop: The event loop the controller runs on
            stdout: Optional stream for stdout (default: sys.stdout)
            stderr: Optional stream for stderr (default: sys.stderr)
        """
        super().__init__(
            stdin=sys.stdin,
            stdout=stdout if stdout is not None else sys.stdout,
        )
        self.controller = controller
        self.loop = loop
        self.stderr = stderr if stderr is not None else sys.stderr

    def print_error(self, message: str) -> None:
        """Print an error message to stderr."""
        print(message, file=self.stderr)

    def _call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Invoke a controller method on the event loop and wait for it."""

        async def _invoke() -> Any:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result

        return asyncio.run_coroutine_threadsafe(_invoke(), self.loop).result()

    def _app_id(self, value: str) -> NamedResource:
        """Resolve an Application by name or namespace/name."""
        if "/" in value:
            return NamedResource.parse(value)
        apps: list[Application] = self._call(self.controller.list_applications)
        matches = [app.app_id for app in apps if app.name == value]
        if len(matches) != 1:
            raise ValueError(
                f"Expected one Application named '{value}', found {len(matches)}"
            )
        return matches[0]

    def _parse_args(
        self, prog: str, arg: str, app: bool = True, cascade: bool = False
    ) -> Namespace | None:
        """Parse the arguments of a command."""
        parser = ArgumentParser(prog=prog, add_help=False)
        if app:
            parser.add_argument("app", help="Application name or namespace/name")
        parser.add_argument(
            "-o", "--output", choices=["json", "yaml"], help="Output format"
        )
        if cascade:
            parser.add_argument(
                "--cascade",
                action="store_true",
                help="Also delete every live object owned by the Application",
            )
        try:
            args, _ = parser.parse_known_args(shlex.split(arg))
        except SystemExit:
            # Handle argparse exit from help or error
            return None
        return args

    def do_help(self, arg: str) -> None:
        """List available commands with 'help' or detailed help with 'help <cmd>'."""
        if arg:
            super().do_help(arg)
            return
        print("Documented commands (type help <topic>):\n", file=self.stdout)
        cmds = sorted(
            name[3:]
            for name in self.get_names()
            if name.startswith("do_") and name not in ("do_help", "do_EOF")
        )
        print("  " + "  ".join(cmds) + "\n", file=self.stdout)

    def do_apps(self, arg: str) -> None:
        """List Applications with their sync status.

        Examples:
            apps
            apps -o yaml
        """
        if not (args := self._parse_args("apps", arg, app=False)):
            return
        output = args.output
        try:
            apps: list[Application] = self._call(self.controller.list_applications)
            if not apps:
                print("No Applications found", file=self.stdout)
                return
            if output:
                formatter(output).print(
                    [application_doc(app) for app in apps], file=self.stdout
                )
                return
            rows = []
            for app in apps:
                status = self._call(self.controller.status, app.app_id)
                rows.append(
                    [
                        app.name,
                        app.namespace,
                        status.status,
                        (status.revision or "")[:8],
                        status.message or "",
                    ]
                )
            print(
                tabulate(
                    rows,
                    headers=["NAME", "NAMESPACE", "STATUS", "REVISION", "MESSAGE"],
                    tablefmt="plain",
                    maxcolwidths=[None, None, None, None, 60],
                ),
                file=self.stdout,
            )
        except SyncException as err:
            self.print_error(f"Error: {err}")

    def do_status(self, arg: str) -> None:
        """Show the status of an Application.

        Examples:
            status podinfo
            status kube-sync/podinfo -o json
        """
        if not (args := self._parse_args("status", arg)):
            return
        try:
            app_id = self._app_id(args.app)
            status = self._call(self.controller.status, app_id)
        except (SyncException, ValueError) as err:
            self.print_error(f"Error: {err}")
            return
        if args.output:
            formatter(args.output).print([status.to_dict()], file=self.stdout)
            return
        print(f"{app_id.namespaced_name}: {status}", file=self.stdout)

    def do_history(self, arg: str) -> None:
        """Show the retained sync results of an Application, oldest first.

        Examples:
            history podinfo
        """
        if not (args := self._parse_args("history", arg)):
            return
        try:
            app_id = self._app_id(args.app)
            history = self._call(self.controller.history, app_id)
        except (SyncException, ValueError) as err:
            self.print_error(f"Error: {err}")
            return
        if args.output:
            formatter(args.output).print(
                [result.to_dict() for result in history], file=self.stdout
            )
            return
        if not history:
            print("No sync results", file=self.stdout)
            return
        rows = [
            [
                result.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                result.outcome,
                (result.revision or "")[:8],
                len(result.changes),
                len(result.failures),
                result.message,
            ]
            for result in history
        ]
        print(
            tabulate(
                rows,
                headers=["TIME", "OUTCOME", "REVISION", "CHANGES", "FAILED", "MESSAGE"],
                tablefmt="plain",
                maxcolwidths=[None, None, None, None, None, 60],
            ),
            file=self.stdout,
        )

    def do_describe(self, arg: str) -> None:
        """Show the declaration, status and latest result of an Application.

        Examples:
            describe podinfo
        """
        if not (args := self._parse_args("describe", arg)):
            return
        try:
            app_id = self._app_id(args.app)
            app = self._call(self.controller.get_application, app_id)
            status = self._call(self.controller.status, app_id)
            result = self._call(self.controller.latest_result, app_id)
        except (SyncException, ValueError) as err:
            self.print_error(f"Error: {err}")
            return

        console = Console(file=self.stdout)
        console.print(
            Panel.fit(
                f"[bold]Name:[/] {app.name}\n"
                f"[bold]Namespace:[/] {app.namespace}\n"
                f"[bold]Status:[/] {status.status}\n"
                f"[bold]Revision:[/] {status.revision or '-'}\n"
                f"[bold]Message:[/] {status.message or ''}",
                title="[bold]Application",
            )
        )
        console.print(
            Panel(
                Syntax(
                    yaml.dump(application_doc(app)["spec"], sort_keys=False),
                    "yaml",
                    theme="monokai",
                    line_numbers=False,
                ),
                title="[bold]Specification",
            )
        )
        if result is None:
            return
        lines = [str(result)]
        lines.extend(f"  {diff}" for diff in result.changes)
        lines.extend(f"  failed {failure}" for failure in result.failures)
        console.print(Panel("\n".join(lines), title="[bold]Latest Result"))

    def do_sync(self, arg: str) -> None:
        """Reconcile an Application now and print the result.

        Examples:
            sync podinfo
        """
        if not (args := self._parse_args("sync", arg)):
            return
        try:
            app_id = self._app_id(args.app)
            result = self._call(self.controller.force_sync, app_id)
        except (SyncException, ValueError) as err:
            self.print_error(f"Error: {err}")
            return
        print(f"{app_id.namespaced_name}: {result}", file=self.stdout)
        for diff in result.changes:
            print(f"  {diff}", file=self.stdout)
        for failure in result.failures:
            print(f"  failed {failure}", file=self.stdout)

    def do_notify(self, arg: str) -> None:
        """Announce a new revision of a repository, as a webhook would.

        Examples:
            notify https://github.com/example/repo
            notify https://github.com/example/repo 4c1b2d3
        """
        parts = shlex.split(arg)
        if not 1 <= len(parts) <= 2:
            self.print_error("Usage: notify <repo-url> [revision]")
            return
        triggered = self._call(self.controller.notify_revision, *parts)
        if not triggered:
            print(f"No Application reads from {parts[0]}", file=self.stdout)
            return
        for app_id in triggered:
            print(f"Triggered {app_id.namespaced_name}", file=self.stdout)

    def do_delete(self, arg: str) -> None:
        """Stop reconciling an Application.

        Examples:
            delete podinfo
            delete kube-sync/podinfo --cascade
        """
        if not (args := self._parse_args("delete", arg, cascade=True)):
            return
        try:
            app_id = self._app_id(args.app)
            self._call(self.controller.delete_application, app_id, cascade=args.cascade)
        except (SyncException, ValueError) as err:
            self.print_error(f"Error: {err}")
            return
        print(f"Deleted {app_id.namespaced_name}", file=self.stdout)

    def do_exit(self, arg: str) -> bool:
        """Exit the shell."""
        print("Exiting kube-sync shell", file=self.stdout)
        return True

    def do_quit(self, arg: str) -> bool:
        """Exit the shell (alias for exit)."""
        return self.do_exit(arg)

    def do_EOF(self, arg: str) -> bool:
        """Handle EOF (Ctrl+D) to exit the shell."""
        print("\n", file=self.stdout, end="")
        self.stdout.flush()
        return self.do_exit(arg)

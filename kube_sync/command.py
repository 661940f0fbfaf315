"""Library for issuing commands using asyncio and returning the result."""

import asyncio
import logging
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .exceptions import CommandException

_LOGGER = logging.getLogger(__name__)

_CONCURRENCY = 10
_SEM = asyncio.Semaphore(_CONCURRENCY)
_TIMEOUT = 120.0


# No public API
__all__: list[str] = []


def format_path(path: Path) -> str:
    """Format path for debugging."""
    if path.is_absolute():
        cwd = Path.cwd()
        if path.is_relative_to(cwd):
            return f"{path.relative_to(cwd)} (abs)"
    return str(path)


@dataclass
class Command:
    """An instance of a command to run."""

    cmd: list[str]
    """Array of command line arguments."""

    exc: type[CommandException] = CommandException
    """Exception to throw in case of an error."""

    timeout: float = _TIMEOUT
    """Seconds to wait before the command is considered hung."""

    @property
    def string(self) -> str:
        """Render the command as a single string."""
        return " ".join([shlex.quote(arg) for arg in self.cmd])

    def __str__(self) -> str:
        """Render as a debug string."""
        return self.string

    async def _exec(self) -> bytes:
        _LOGGER.debug("Running command: %s", self)
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as err:
            raise self.exc(f"Command '{self}' not found: {err}") from err
        try:
            out, err = await asyncio.wait_for(proc.communicate(), self.timeout)
        except asyncio.TimeoutError as timeout_err:
            proc.kill()
            await proc.wait()
            raise self.exc(
                f"Command '{self}' timed out after {self.timeout}s"
            ) from timeout_err
        if proc.returncode:
            errors = [f"Command '{self}' failed with return code {proc.returncode}"]
            if out:
                errors.append(out.decode("utf-8"))
            if err:
                errors.append(err.decode("utf-8"))
            _LOGGER.debug("\n".join(errors))
            raise self.exc("\n".join(errors))
        return out

    async def run(self) -> str:
        """Run the command, returning stdout as a string."""
        async with _SEM:
            out = await self._exec()
        return out.decode("utf-8")

"""Library for formatting command output."""

from abc import ABC, abstractmethod
import json
import sys
from typing import Any, Generator, TextIO

from tabulate import tabulate
import yaml


class PrintFormatter:
    """A formatter that prints human readable console tables."""

    def __init__(self, keys: list[str] | None = None):
        """Initialize the PrintFormatter with optional keys to print."""
        self._keys = keys

    def format(self, data: list[dict[str, Any]]) -> Generator[str, None, None]:
        """Format the rows as a table with upper case headers."""
        if not data:
            return
        keys = self._keys if self._keys is not None else list(data[0])
        rows = [
            ["" if row.get(key) is None else str(row[key]) for key in keys]
            for row in data
        ]
        headers = [key.upper() for key in keys]
        yield from tabulate(rows, headers=headers, tablefmt="plain").split("\n")

    def print(self, data: list[dict[str, Any]], file: TextIO = sys.stdout) -> None:
        """Output the rows."""
        for result in self.format(data):
            print(result, file=file)


class StructFormatter(ABC):
    """A formatter that prints structured documents."""

    @abstractmethod
    def format(self, data: list[dict[str, Any]]) -> Generator[str, None, None]:
        """Format the data objects."""

    def print(self, data: list[dict[str, Any]], file: TextIO = sys.stdout) -> None:
        """Print the data objects."""
        for line in self.format(data):
            print(line, file=file)


class YamlFormatter(StructFormatter):
    """A formatter that prints one yaml document per object."""

    def format(self, data: list[dict[str, Any]]) -> Generator[str, None, None]:
        """Format the data objects."""
        content = yaml.dump_all(data, sort_keys=False, explicit_start=True)
        yield from content.rstrip("\n").split("\n")


class JsonFormatter(StructFormatter):
    """A formatter that prints a json list."""

    def format(self, data: list[dict[str, Any]]) -> Generator[str, None, None]:
        """Format the data objects."""
        yield from json.dumps(data, indent=4, sort_keys=False, default=str).split("\n")


def formatter(
    output: str, keys: list[str] | None = None
) -> PrintFormatter | StructFormatter:
    """Return the formatter for an --output flag value."""
    if output == "yaml":
        return YamlFormatter()
    if output == "json":
        return JsonFormatter()
    return PrintFormatter(keys)

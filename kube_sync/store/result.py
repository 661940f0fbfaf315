"""The result of one reconciliation cycle."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from mashumaro import DataClassDictMixin
from mashumaro.config import BaseConfig

from kube_sync.diff import DiffAction, ResourceDiff
from kube_sync.manifest import NamedResource


class SyncOutcome(StrEnum):
    """Outcome of a reconciliation cycle."""

    SYNCED = "Synced"
    OUT_OF_SYNC = "OutOfSync"
    ERROR = "Error"


@dataclass(frozen=True)
class ResourceFailure(DataClassDictMixin):
    """A resource that could not be applied."""

    resource: NamedResource
    action: DiffAction
    error: str

    def __str__(self) -> str:
        return f"{self.action} {self.resource}: {self.error}"


@dataclass(frozen=True, kw_only=True)
class SyncResult(DataClassDictMixin):
    """Record of one reconciliation cycle, immutable once written."""

    timestamp: datetime
    """When the cycle finished."""

    outcome: SyncOutcome
    """Outcome of the cycle."""

    diffs: list[ResourceDiff] = field(default_factory=list)
    """Per-resource diffs in apply order."""

    revision: str | None = None
    """The commit SHA that was applied, if the source was fetched."""

    message: str = ""
    """Human readable diagnostic."""

    failures: list[ResourceFailure] = field(default_factory=list)
    """Resources whose apply failed."""

    superseded: bool = False
    """The cycle was cancelled before all changes were applied."""

    duration: float = 0.0
    """Seconds the cycle took."""

    @property
    def changes(self) -> list[ResourceDiff]:
        """Return the diffs that required an action."""
        return [diff for diff in self.diffs if diff.action != DiffAction.NOOP]

    def __str__(self) -> str:
        return f"{self.outcome} @ {self.revision or '-'}: {self.message}"

    class Config(BaseConfig):
        omit_none = True

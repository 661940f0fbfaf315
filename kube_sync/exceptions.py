"""Exceptions related to kube-sync."""

__all__ = [
    "SyncException",
    "InputException",
    "FetchError",
    "RenderError",
    "DiffError",
    "ApplyError",
    "ConflictError",
    "OwnershipConflictError",
    "AuthError",
    "CommandException",
]


class SyncException(Exception):
    """Generic base exception used for this library."""


class InputException(SyncException):
    """Raised when an Application or config file is not formatted as expected."""


class FetchError(SyncException):
    """Raised when the desired state source is unreachable or invalid."""


class RenderError(FetchError):
    """Raised when rendering manifests (overlays, substitution) fails."""


class DiffError(SyncException):
    """Raised when a desired manifest is malformed and cannot be diffed."""


class AuthError(SyncException):
    """Raised when credentials are rejected by the source or the target."""


class ApplyError(SyncException):
    """Raised when a single resource write is rejected by the target."""


class ConflictError(ApplyError):
    """Raised when a write used a stale resource version or the object exists."""


class OwnershipConflictError(ApplyError):
    """Raised when a desired resource is already owned by another Application."""

    def __init__(self, resource_name: str, owner: str, expected: str) -> None:
        super().__init__(
            f"Resource {resource_name} is owned by Application '{owner}', "
            f"refusing to modify it for '{expected}'"
        )
        self.resource_name = resource_name
        self.owner = owner
        self.expected = expected


class ObjectNotFoundError(SyncException):
    """Raised when an object is not found in the store or cluster."""


class InvalidTransitionError(SyncException):
    """Raised when an Application status change is not allowed."""


class SyncFailedError(SyncException):
    """Raised when waiting on an Application that ends up in the Error state."""

    def __init__(self, application: str, message: str | None) -> None:
        super().__init__(
            f"Application {application} failed: {message or 'Unknown error'}"
        )
        self.application = application
        self.message = message


class CommandException(SyncException):
    """Raised when there is a failure running a subcommand."""


class KustomizeException(CommandException):
    """Raised when there is a failure running a kustomize command."""

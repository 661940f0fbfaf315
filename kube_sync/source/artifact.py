"""Artifact representation."""

from dataclasses import dataclass


@dataclass(frozen=True, kw_only=True)
class GitArtifact:
    """Git artifact.

    The path references a local filesystem path with the working tree checked
    out at the resolved revision.
    """

    url: str
    """URL of the git repository, for informational/logging purposes."""

    local_path: str
    """Local filesystem path to the git repository."""

    ref: str
    """The requested branch, tag or commit."""

    revision: str
    """The commit SHA the reference resolved to."""

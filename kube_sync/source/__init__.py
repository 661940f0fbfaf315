"""The source module.

This module fetches the Git repositories that Applications read their desired
state from and keeps a local clone of each one in a cache directory.
"""

from .artifact import GitArtifact
from .auth import GitAuth
from .cache import GitCache
from .git import checkout

__all__ = [
    "checkout",
    "GitArtifact",
    "GitAuth",
    "GitCache",
]

"""Credential plumbing for fetching Git repositories.

Credentials are provided by the platform: an HTTPS token in an environment
variable or an SSH private key file. They are only read here, never written.
"""

from dataclasses import dataclass
import logging
import os
import shlex
from urllib.parse import urlparse, urlunparse

from kube_sync.exceptions import AuthError
from kube_sync.manifest import ApplicationSource

_LOGGER = logging.getLogger(__name__)

TOKEN_USERNAME = "x-access-token"

# Substrings of git error output that indicate rejected credentials
AUTH_FAILURE_MARKERS = (
    "Authentication failed",
    "could not read Username",
    "could not read Password",
    "Permission denied (publickey",
    "The requested URL returned error: 401",
    "The requested URL returned error: 403",
    "terminal prompts disabled",
)


@dataclass
class GitAuth:
    """Authentication credentials for a git repository."""

    token: str | None = None
    ssh_key_file: str | None = None

    @classmethod
    def from_source(cls, source: ApplicationSource) -> "GitAuth":
        """Read the credentials named by the Application source."""
        token: str | None = None
        if source.token_env:
            if not (token := os.environ.get(source.token_env)):
                raise AuthError(
                    f"Token environment variable '{source.token_env}' is not set"
                )
        if source.ssh_key_file and not os.path.exists(source.ssh_key_file):
            raise AuthError(f"SSH key file does not exist: {source.ssh_key_file}")
        return cls(token=token, ssh_key_file=source.ssh_key_file)

    def url(self, repo_url: str) -> str:
        """Return the URL to fetch from, with the token injected for HTTPS."""
        if not self.token:
            return repo_url
        parsed = urlparse(repo_url)
        if parsed.scheme != "https":
            _LOGGER.debug("Ignoring token for non-HTTPS url %s", redact(repo_url))
            return repo_url
        netloc = f"{TOKEN_USERNAME}:{self.token}@{parsed.hostname}"
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        return urlunparse(parsed._replace(netloc=netloc))

    def env(self) -> dict[str, str]:
        """Return environment variables for the git subprocess."""
        env = {"GIT_TERMINAL_PROMPT": "0"}
        if self.ssh_key_file:
            env["GIT_SSH_COMMAND"] = " ".join(
                [
                    "ssh",
                    "-i",
                    shlex.quote(self.ssh_key_file),
                    "-o",
                    "IdentitiesOnly=yes",
                    "-o",
                    "StrictHostKeyChecking=accept-new",
                ]
            )
        return env


def is_auth_failure(message: str) -> bool:
    """Return True if git output indicates the credentials were rejected."""
    return any(marker in message for marker in AUTH_FAILURE_MARKERS)


def redact(url: str) -> str:
    """Remove any credentials from a URL for logging."""
    parsed = urlparse(url)
    if not parsed.password and not parsed.username:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    return urlunparse(parsed._replace(netloc=netloc))

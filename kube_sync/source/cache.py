"""Cache management for git repositories."""

import hashlib
import logging
from pathlib import Path
from shutil import rmtree
import tempfile
from urllib.parse import urlparse

from slugify import slugify

from kube_sync.exceptions import FetchError

_LOGGER = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = Path(tempfile.gettempdir()) / "kube-sync-cache"


class GitCache:
    """Cache manager for git repositories.

    Each repository is cloned once per URL and requested reference and then
    updated with a fetch on every cycle.
    """

    def __init__(self, cache_dir: Path | None = None) -> None:
        """Initialize the cache manager."""
        self._cache_dir = cache_dir or DEFAULT_CACHE_DIR
        self._repos: dict[str, Path] = {}

    @property
    def cache_dir(self) -> Path:
        """Return the root of the cache."""
        return self._cache_dir

    def _slugify_url(self, url: str) -> str:
        """Extract and slugify a repository name from a URL."""
        # SSH URLs of the form git@github.com:user/repo.git have no scheme
        if "://" not in url and "@" in url and ":" in url:
            path = url.split(":", 1)[1]
        else:
            path = urlparse(url).path
        path = path.rstrip("/")
        if path.endswith(".git"):
            path = path[:-4]
        slug = slugify(
            path.split("/")[-1], max_length=50, lowercase=True, separator="-"
        )
        return slug or "repo"

    def get_repo_path(self, url: str, ref: str | None = None) -> Path:
        """Get the local path for a repository, e.g. `<cache>/my-repo/ab12..`."""
        cache_key = hashlib.sha256()
        cache_key.update(url.encode("utf-8"))
        if ref:
            cache_key.update(ref.encode("utf-8"))
        slug = self._slugify_url(url)
        cache_path = self._cache_dir / slug / cache_key.hexdigest()[:16]
        try:
            cache_path.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise FetchError(
                f"Failed to create cache directory {cache_path}: {err}"
            ) from err
        self._repos[f"{url}#{ref or ''}"] = cache_path
        return cache_path

    def remove(self, url: str, ref: str | None = None) -> None:
        """Remove the clone of a repository reference, if there is one."""
        if (path := self._repos.pop(f"{url}#{ref or ''}", None)) is None:
            return
        if path.exists():
            _LOGGER.info("Removing cached repository: %s", path)
            rmtree(path, ignore_errors=True)

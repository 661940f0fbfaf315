"""Fetch git repositories into the local cache and check out a revision."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import logging
from pathlib import Path
from shutil import rmtree

import git

from kube_sync.exceptions import AuthError, FetchError

from .artifact import GitArtifact
from .auth import GitAuth, is_auth_failure, redact
from .cache import GitCache

_LOGGER = logging.getLogger(__name__)

HEAD = "HEAD"
BRANCH_REFSPEC = "+refs/heads/*:refs/remotes/origin/*"

# Used to serialize access to a working tree shared by Applications
_LOCK_MAP: dict[str, asyncio.Lock] = {}


@asynccontextmanager
async def _resource_lock(key: str) -> AsyncIterator[None]:
    """Run while holding a lock for the specified resource.

    This is not threadsafe and expected to be run in the asyncio loop.
    """
    if not (lock := _LOCK_MAP.get(key)):
        lock = asyncio.Lock()
        _LOCK_MAP[key] = lock
    async with lock:
        yield


def _resolve(repo: git.Repo, ref: str) -> str:
    """Resolve a branch, tag or commit to a commit SHA."""
    if ref == HEAD:
        candidates = ["refs/remotes/origin/HEAD"]
    else:
        candidates = [f"refs/remotes/origin/{ref}", f"refs/tags/{ref}", ref]
    for candidate in candidates:
        try:
            return str(
                repo.git.rev_parse("--verify", "--quiet", f"{candidate}^{{commit}}")
            )
        except git.exc.GitCommandError:
            continue
    raise FetchError(f"Unable to resolve revision '{ref}'")


def _open_or_clone(
    url: str, fetch_url: str, repo_path: Path, env: dict[str, str]
) -> git.Repo:
    if (repo_path / ".git").exists():
        try:
            repo = git.Repo(str(repo_path))
        except git.exc.InvalidGitRepositoryError:
            _LOGGER.warning("Removing corrupt cached repository at %s", repo_path)
            rmtree(repo_path, ignore_errors=True)
            repo_path.mkdir(parents=True, exist_ok=True)
        else:
            _LOGGER.info("Updating existing repository at %s", repo_path)
            with repo.git.custom_environment(**env):
                repo.git.fetch(
                    "--force", "--tags", "--prune", fetch_url, BRANCH_REFSPEC
                )
            return repo
    _LOGGER.info("Cloning repository %s to %s", url, repo_path)
    try:
        repo = git.Repo.clone_from(fetch_url, str(repo_path), env=env)
    except git.exc.GitCommandError:
        rmtree(repo_path, ignore_errors=True)
        raise
    # Credentials are passed on each fetch and never persisted in the clone
    repo.remotes.origin.set_url(url)
    return repo


def _fetch(url: str, ref: str, repo_path: Path, auth: GitAuth) -> str:
    """Clone or update the repository and check out the ref, returning its SHA."""
    repo = _open_or_clone(url, auth.url(url), repo_path, auth.env())
    revision = _resolve(repo, ref)
    _LOGGER.debug("Checking out %s (%s)", ref, revision)
    repo.git.checkout("--force", "--detach", revision)
    return revision


def _error_message(err: git.exc.GitCommandError, auth: GitAuth) -> str:
    message = f"{err.stderr or ''} {err}".strip()
    if auth.token:
        message = message.replace(auth.token, "***")
    return message


async def fetch_git(
    url: str, ref: str, cache: GitCache, auth: GitAuth | None = None
) -> GitArtifact:
    """Fetch a git repository using the cache and check out the reference.

    The caller must hold the lock for the returned path while reading from
    it; use `checkout` for that.
    """
    auth = auth or GitAuth()
    repo_path = cache.get_repo_path(url, ref)
    try:
        revision = await asyncio.to_thread(_fetch, url, ref, repo_path, auth)
    except git.exc.GitCommandError as err:
        message = _error_message(err, auth)
        if is_auth_failure(message):
            raise AuthError(
                f"Credentials rejected by {redact(url)}: {message}"
            ) from err
        raise FetchError(f"Git operation failed for {redact(url)}: {message}") from err
    except (git.exc.GitError, OSError) as err:
        raise FetchError(f"Failed to fetch repository {redact(url)}: {err}") from err
    return GitArtifact(url=url, local_path=str(repo_path), ref=ref, revision=revision)


@asynccontextmanager
async def checkout(
    url: str, ref: str, cache: GitCache, auth: GitAuth | None = None
) -> AsyncIterator[GitArtifact]:
    """Fetch the repository and hold its working tree while in the context."""
    repo_path = cache.get_repo_path(url, ref)
    async with _resource_lock(str(repo_path)):
        yield await fetch_git(url, ref, cache, auth)

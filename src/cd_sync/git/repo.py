# ABOUTME: Local git checkouts used to render Helm charts
# ABOUTME: Clones a repository on first use and fetches the target revision afterwards

"""
Local repository checkouts.

Helm needs the chart on disk, so Helm applications keep a checkout per
Application under the repo cache directory. GitPython is blocking, so every
call runs on a worker thread via asyncio.to_thread.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from urllib.parse import quote, urlparse, urlunparse

import structlog
from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

logger = structlog.get_logger(__name__)


class CheckoutError(Exception):
    """Raised when a repository cannot be cloned or updated."""


def _authenticated_url(repo_url: str, token: str | None) -> str:
    if not token:
        return repo_url
    parsed = urlparse(repo_url)
    if parsed.scheme not in ("http", "https"):
        return repo_url
    netloc = f"oauth2:{quote(token, safe='')}@{parsed.hostname}"
    if parsed.port:
        netloc += f":{parsed.port}"
    return urlunparse(parsed._replace(netloc=netloc))


class GitCheckout:
    """
    Keeps one working tree at `local_path` on `revision`.

    Example:
        >>> checkout = GitCheckout("https://github.com/org/charts", Path("/tmp/repo-web-default"))
        >>> sha = await checkout.sync("main")
    """

    def __init__(self, repo_url: str, local_path: Path, token: str | None = None) -> None:
        self.repo_url = repo_url
        self.local_path = local_path
        self._token = token

    async def sync(self, revision: str) -> str:
        """
        Clone or update the checkout, returning the checked-out commit SHA.

        Raises:
            CheckoutError: If git fails.
        """
        return await asyncio.to_thread(self._sync, revision)

    def _sync(self, revision: str) -> str:
        url = _authenticated_url(self.repo_url, self._token)
        try:
            repo = Repo(self.local_path)
        except (InvalidGitRepositoryError, NoSuchPathError):
            repo = None

        try:
            if repo is None:
                logger.info("Cloning repository", repo=self.repo_url, path=str(self.local_path))
                self.local_path.parent.mkdir(parents=True, exist_ok=True)
                repo = Repo.clone_from(url, self.local_path)
            else:
                logger.debug("Fetching repository", repo=self.repo_url, path=str(self.local_path))
                repo.remotes.origin.set_url(url)
                repo.remotes.origin.fetch(prune=True)

            remote_ref = f"origin/{revision}"
            remote_refs = [r.name for r in repo.remotes.origin.refs]
            target = remote_ref if remote_ref in remote_refs else revision
            repo.git.checkout("--force", target)
            if target == remote_ref:
                repo.git.reset("--hard", remote_ref)
            return repo.head.commit.hexsha
        except GitCommandError as e:
            stderr = (e.stderr or str(e)).strip()
            if self._token:
                stderr = stderr.replace(self._token, "***MASKED***")
            raise CheckoutError(f"git failed for {self.repo_url}@{revision}: {stderr}") from e

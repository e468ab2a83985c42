# ABOUTME: GitProvider contract and the host-to-provider registry
# ABOUTME: Parses repository URLs and selects the REST adapter for a git host

"""
Git provider selection.

A GitProvider lists a directory of a repository at a revision, fetches
raw file content, and manages the repository webhooks that point push
events at this engine. Which provider serves a repository is decided by
its host, through an explicit registry:

    registry = ProviderRegistry.with_defaults({"git.example.com": "gitlab"})
    async with registry.create("https://github.com/org/deploy", token) as provider:
        entries = await provider.list_contents("manifests", "main")

github.com and gitlab.com are registered by default. Self-hosted hosts are
added from configuration by naming the provider kind they run.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol
from urllib.parse import urlparse

if TYPE_CHECKING:
    from types import TracebackType

_SCP_URL = re.compile(r"^(?:[\w.-]+@)?(?P<host>[\w.-]+):(?P<path>[^/].*)$")


@dataclass(frozen=True)
class RepoLocation:
    """Host and `owner/name` path of a repository."""

    scheme: str
    host: str
    path: str

    @property
    def base_url(self) -> str:
        return f"{self.scheme}://{self.host}"

    def same_repo(self, other: RepoLocation) -> bool:
        return self.host.lower() == other.host.lower() and self.path.lower() == other.path.lower()


def parse_repo_url(url: str) -> RepoLocation:
    """
    Split a clone URL into host and repository path.

    Accepts https URLs and scp-style ssh URLs (git@host:org/repo.git).
    A trailing `.git` and slashes are dropped.

    Raises:
        ValueError: If no host or path can be found.
    """
    url = url.strip()
    if "://" in url:
        parsed = urlparse(url)
        scheme = parsed.scheme if parsed.scheme in ("http", "https") else "https"
        host = parsed.hostname or ""
        if parsed.port and scheme in ("http", "https"):
            host = f"{host}:{parsed.port}"
        path = parsed.path
    else:
        match = _SCP_URL.match(url)
        if not match:
            raise ValueError(f"Unrecognized repository URL: {url}")
        scheme, host, path = "https", match.group("host"), match.group("path")

    path = path.strip("/")
    if path.endswith(".git"):
        path = path[:-4]
    if not host or not path:
        raise ValueError(f"Unrecognized repository URL: {url}")
    return RepoLocation(scheme=scheme, host=host, path=path)


@dataclass
class ContentEntry:
    """One entry of a directory listing."""

    name: str
    path: str
    type: str  # "file" or "dir"
    download_url: str = ""


@dataclass
class WebhookEntry:
    """A webhook registered on the repository."""

    id: int
    url: str


class GitProvider(Protocol):
    """Read access to one repository, plus management of its webhooks."""

    async def __aenter__(self) -> GitProvider: ...

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None: ...

    async def list_contents(self, path: str, revision: str) -> list[ContentEntry]: ...

    async def get_raw(self, url: str) -> bytes: ...

    async def list_webhooks(self) -> list[WebhookEntry]: ...

    async def register_webhook(self, url: str, secret: str) -> None: ...

    async def delete_webhook(self, hook_id: int) -> None: ...


ProviderFactory = Callable[..., GitProvider]


class ProviderRegistry:
    """Maps git hosts to provider factories."""

    def __init__(self, timeout: float = 30.0, mask_secrets: bool = True) -> None:
        self._factories: dict[str, ProviderFactory] = {}
        self._timeout = timeout
        self._mask_secrets = mask_secrets

    def register(self, host: str, factory: ProviderFactory) -> None:
        self._factories[host.lower()] = factory

    def hosts(self) -> list[str]:
        return sorted(self._factories)

    def create(self, repo_url: str, token: str | None = None, **kwargs: Any) -> GitProvider:
        """
        Build the provider for `repo_url`.

        Raises:
            ValueError: If the URL cannot be parsed.
            LookupError: If no provider is registered for the host.
        """
        location = parse_repo_url(repo_url)
        factory = self._factories.get(location.host.lower())
        if factory is None:
            raise LookupError(
                f"No git provider registered for host '{location.host}'. "
                f"Known hosts: {self.hosts()}"
            )
        return factory(
            location,
            token=token,
            timeout=self._timeout,
            mask_secrets=self._mask_secrets,
            **kwargs,
        )

    @classmethod
    def with_defaults(
        cls,
        extra_hosts: dict[str, str] | None = None,
        timeout: float = 30.0,
        mask_secrets: bool = True,
    ) -> ProviderRegistry:
        """Registry with github.com, gitlab.com and any configured hosts."""
        from cd_sync.git.client import PROVIDER_KINDS, GitHubProvider, GitLabProvider

        registry = cls(timeout=timeout, mask_secrets=mask_secrets)
        registry.register("github.com", GitHubProvider)
        registry.register("gitlab.com", GitLabProvider)
        for host, kind in (extra_hosts or {}).items():
            if kind not in PROVIDER_KINDS:
                raise ValueError(f"Unknown git provider kind '{kind}' for host '{host}'")
            registry.register(host, PROVIDER_KINDS[kind])
        return registry

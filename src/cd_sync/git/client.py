# ABOUTME: GitHub and GitLab REST providers with retry logic and error handling
# ABOUTME: Lists directories, downloads raw manifests and manages repository webhooks over httpx

"""
Git hosting REST clients.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

The plain-YAML resolver never clones a repository. It walks the source
path through the hosting provider's REST API and downloads each manifest:

    GitHub:  GET /repos/{owner}/{repo}/contents/{path}?ref={revision}
             -> a list of entries (or one entry when path is a file),
                each with type "file" / "dir" and a download_url

    GitLab:  GET /projects/{id}/repository/tree?path={path}&ref={revision}
             -> a list of entries with type "blob" / "tree",
                paged with per_page=100 and the X-Next-Page header
             GET /projects/{id}/repository/files/{path}/raw?ref={revision}
             -> raw file content

The reconciler also keeps one webhook per Application on the repository:

    GitHub:  GET / POST /repos/{owner}/{repo}/hooks, DELETE .../hooks/{id}
             (Link header pagination, HMAC secret in config.secret)

    GitLab:  GET / POST /projects/{id}/hooks, DELETE .../hooks/{id}
             (X-Next-Page pagination, shared secret sent back as X-Gitlab-Token)

Both providers share one base class that handles:

1. HTTP COMMUNICATION: a pooled httpx.AsyncClient per provider
2. AUTHENTICATION: the provider's token header
3. ERROR HANDLING: HTTP errors become GitProviderError with the status code
4. RETRY LOGIC: timeouts are retried with exponential backoff
5. SECRET MASKING: error bodies are masked before they are logged

=============================================================================
CONTEXT MANAGERS (async with)
=============================================================================

    async with GitHubProvider(location, token=token) as provider:
        entries = await provider.list_contents("manifests", "main")

__aenter__ opens the connection pool, __aexit__ closes it even when the
body raises.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from cd_sync.git.provider import ContentEntry, WebhookEntry

if TYPE_CHECKING:
    from cd_sync.git.provider import RepoLocation

logger = structlog.get_logger(__name__)

# GitHub and GitLab both cap per_page at 100
PAGE_SIZE = 100


# (pattern, replacement) pairs applied to strings before they are logged
SECRET_PATTERNS = [
    (re.compile(r"(token[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(password[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(secret[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(bearer\s+)[^\s\"']+", re.I), r"\1***MASKED***"),
]


def mask_text(text: str) -> str:
    for pattern, replacement in SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class GitProviderError(Exception):
    """
    Structured git provider API error.

    USAGE:
    ------
    try:
        entries = await provider.list_contents("missing", "main")
    except GitProviderError as e:
        if e.code == 404:
            ...
    """

    def __init__(self, code: int, message: str, details: str | None = None) -> None:
        self.code = code
        self.message = message
        self.details = details
        super().__init__(str(self))

    def __str__(self) -> str:
        base = f"Git provider error ({self.code}): {self.message}"
        if self.details:
            base += f" - {self.details}"
        return base


class RestGitProvider:
    """
    Shared plumbing for REST-based providers.

    Subclasses set `api_base`, `auth_headers` and implement `list_contents`.
    """

    kind = "rest"

    def __init__(
        self,
        location: RepoLocation,
        token: str | None = None,
        timeout: float = 30.0,
        mask_secrets: bool = True,
    ) -> None:
        self._location = location
        self._token = token
        self._timeout = timeout
        self._mask_secrets = mask_secrets
        self._client: httpx.AsyncClient | None = None

    @property
    def location(self) -> RepoLocation:
        return self._location

    @property
    def api_base(self) -> str:
        raise NotImplementedError

    def auth_headers(self) -> dict[str, str]:
        raise NotImplementedError

    async def __aenter__(self) -> RestGitProvider:
        headers = {"Accept": "application/json"}
        if self._token:
            headers.update(self.auth_headers())
        self._client = httpx.AsyncClient(
            base_url=self.api_base,
            headers=headers,
            timeout=self._timeout,
            follow_redirects=True,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @retry(
        retry=retry_if_exception_type(httpx.TimeoutException),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
    )
    async def _send(
        self,
        path_or_url: str,
        params: dict[str, Any] | None = None,
        method: str = "GET",
        json_data: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """
        Send a request to a path (relative to api_base) or an absolute URL.

        Raises:
            GitProviderError: On 4xx/5xx responses
            httpx.TimeoutException: After the retries are exhausted
            RuntimeError: If used outside 'async with'
        """
        if not self._client:
            raise RuntimeError("Provider not initialized. Use 'async with' context manager.")

        log = logger.bind(
            provider=self.kind, repo=self._location.path, method=method, path=path_or_url
        )
        log.debug("Making git provider request")

        response = await self._client.request(
            method, path_or_url, params=params, json=json_data
        )

        if response.status_code >= 400:
            body = response.text[:200]
            if self._mask_secrets:
                body = mask_text(body)
            log.warning("Git provider error", status=response.status_code, body=body)

            message = f"HTTP {response.status_code}"
            details = f"{self._location.host}/{self._location.path}: {path_or_url}"
            try:
                error_json = response.json()
                if isinstance(error_json, dict):
                    message = str(error_json.get("message", message))
            except ValueError:
                details = f"{details} ({body})" if body else details
            raise GitProviderError(
                code=response.status_code,
                message=message,
                details=details,
            )

        return response

    async def get_raw(self, url: str) -> bytes:
        """Download one file's raw content."""
        response = await self._send(url)
        return response.content

    def _next_page(self, response: httpx.Response, page: int) -> int | None:
        raise NotImplementedError

    async def _get_all(self, path: str, params: dict[str, Any] | None = None) -> list[Any]:
        """GET every page of a list endpoint, PAGE_SIZE items at a time."""
        items: list[Any] = []
        page: int | None = 1
        while page is not None:
            response = await self._send(
                path, params={**(params or {}), "per_page": PAGE_SIZE, "page": page}
            )
            items.extend(response.json())
            page = self._next_page(response, page)
        return items


class GitHubProvider(RestGitProvider):
    """GitHub and GitHub Enterprise contents and hooks API."""

    kind = "github"

    @property
    def api_base(self) -> str:
        if self._location.host.lower() == "github.com":
            return "https://api.github.com"
        return f"{self._location.base_url}/api/v3"

    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"token {self._token}"}

    def _next_page(self, response: httpx.Response, page: int) -> int | None:
        return page + 1 if "next" in response.links else None

    async def list_contents(self, path: str, revision: str) -> list[ContentEntry]:
        path = path.strip("/")
        response = await self._send(
            f"/repos/{self._location.path}/contents/{quote(path)}",
            params={"ref": revision},
        )
        data = response.json()
        # A file path yields one object instead of a list
        items = data if isinstance(data, list) else [data]
        return [
            ContentEntry(
                name=item.get("name", ""),
                path=item.get("path", ""),
                type=item.get("type", ""),
                download_url=item.get("download_url") or "",
            )
            for item in items
        ]

    async def list_webhooks(self) -> list[WebhookEntry]:
        hooks = await self._get_all(f"/repos/{self._location.path}/hooks")
        return [
            WebhookEntry(id=int(hook["id"]), url=(hook.get("config") or {}).get("url", ""))
            for hook in hooks
        ]

    async def register_webhook(self, url: str, secret: str) -> None:
        await self._send(
            f"/repos/{self._location.path}/hooks",
            method="POST",
            json_data={
                "name": "web",
                "active": True,
                "events": ["push", "pull_request"],
                "config": {
                    "url": url,
                    "content_type": "json",
                    "secret": secret,
                    "insecure_ssl": "0",
                },
            },
        )
        logger.info("Registered webhook", provider=self.kind, repo=self._location.path, url=url)

    async def delete_webhook(self, hook_id: int) -> None:
        await self._send(f"/repos/{self._location.path}/hooks/{hook_id}", method="DELETE")
        logger.info("Deleted webhook", provider=self.kind, repo=self._location.path, id=hook_id)


class GitLabProvider(RestGitProvider):
    """GitLab repository tree, raw files and project hooks API."""

    kind = "gitlab"

    @property
    def api_base(self) -> str:
        return f"{self._location.base_url}/api/v4"

    def auth_headers(self) -> dict[str, str]:
        return {"PRIVATE-TOKEN": str(self._token)}

    @property
    def _project(self) -> str:
        return quote(self._location.path, safe="")

    def _raw_url(self, path: str, revision: str) -> str:
        return (
            f"{self.api_base}/projects/{self._project}/repository/files/"
            f"{quote(path, safe='')}/raw?ref={quote(revision, safe='')}"
        )

    def _next_page(self, response: httpx.Response, page: int) -> int | None:
        next_page = response.headers.get("X-Next-Page", "").strip()
        return int(next_page) if next_page else None

    async def list_contents(self, path: str, revision: str) -> list[ContentEntry]:
        path = path.strip("/")
        items = await self._get_all(
            f"/projects/{self._project}/repository/tree",
            params={"path": path, "ref": revision},
        )
        if not items and path:
            # The tree API answers [] for a file path; fetch it as a file
            raw_url = self._raw_url(path, revision)
            await self._send(raw_url)
            name = path.rsplit("/", 1)[-1]
            return [ContentEntry(name=name, path=path, type="file", download_url=raw_url)]

        entries = []
        for item in items:
            entry_type = "dir" if item.get("type") == "tree" else "file"
            entries.append(
                ContentEntry(
                    name=item.get("name", ""),
                    path=item.get("path", ""),
                    type=entry_type,
                    download_url=(
                        self._raw_url(item.get("path", ""), revision)
                        if entry_type == "file"
                        else ""
                    ),
                )
            )
        return entries

    async def list_webhooks(self) -> list[WebhookEntry]:
        hooks = await self._get_all(f"/projects/{self._project}/hooks")
        return [WebhookEntry(id=int(hook["id"]), url=hook.get("url", "")) for hook in hooks]

    async def register_webhook(self, url: str, secret: str) -> None:
        await self._send(
            f"/projects/{self._project}/hooks",
            method="POST",
            json_data={
                "url": url,
                "token": secret,
                "push_events": True,
                "tag_push_events": True,
                "merge_request_events": True,
                "note_events": True,
                "enable_ssl_verification": url.startswith("https://"),
            },
        )
        logger.info("Registered webhook", provider=self.kind, repo=self._location.path, url=url)

    async def delete_webhook(self, hook_id: int) -> None:
        await self._send(f"/projects/{self._project}/hooks/{hook_id}", method="DELETE")
        logger.info("Deleted webhook", provider=self.kind, repo=self._location.path, id=hook_id)


PROVIDER_KINDS: dict[str, type[RestGitProvider]] = {
    GitHubProvider.kind: GitHubProvider,
    GitLabProvider.kind: GitLabProvider,
}

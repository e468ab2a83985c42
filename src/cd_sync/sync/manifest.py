# ABOUTME: Manifest resolvers turning an Application source into desired objects
# ABOUTME: PlainYAML walks the repo through a GitProvider, Helm renders a local chart checkout

"""
Manifest resolution.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

A resolver answers one question: which objects should exist for this
Application right now? Two source types are supported, selected once per
Application by `resolver_for`:

    PlainYAML -> PlainYamlResolver
        list source.path through the git provider, recurse into
        directories, download every .yaml / .yml / .json file

    Helm -> HelmResolver
        check out the repository locally and render the chart with a
        dry-run `helm install`

Both feed text through `parse_manifests`, which splits multi-document
YAML, drops empty documents and fills in the destination namespace.

Resolution is fail-fast: one unreadable file fails the whole resolve, so
a pass never applies a partial view of git.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import TYPE_CHECKING, Any, Protocol

import httpx
import structlog
import yaml
from tenacity import RetryError

from cd_sync.cluster.store import ClusterError, ObjectRef
from cd_sync.errors import SourceNotFoundError, SourceResolutionError
from cd_sync.git.client import GitProviderError
from cd_sync.git.repo import CheckoutError
from cd_sync.models import SOURCE_HELM, SOURCE_PLAIN_YAML

if TYPE_CHECKING:
    from collections.abc import Mapping

    from cd_sync.cluster.store import ClusterStore
    from cd_sync.git.provider import GitProvider, ProviderRegistry
    from cd_sync.models import Application
    from cd_sync.sync.helm import HelmRenderer
    from cd_sync.sync.target import TargetHandle

logger = structlog.get_logger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml", ".json")


def parse_manifests(text: str, default_namespace: str, source: str = "") -> list[dict[str, Any]]:
    """
    Parse a (possibly multi-document) YAML stream into objects.

    - empty documents (and comment-only ones) are skipped
    - every document must be a mapping
    - an empty `metadata:` counts as missing; any other non-mapping is an error
    - values are normalised to plain JSON types (timestamps become strings)
    - metadata.namespace defaults to `default_namespace`

    Raises:
        SourceResolutionError: On invalid YAML, a non-object document or non-object metadata.
    """
    try:
        documents = list(yaml.safe_load_all(text))
    except yaml.YAMLError as e:
        raise SourceResolutionError(f"Invalid YAML in {source or 'manifest'}", str(e)) from e

    objects: list[dict[str, Any]] = []
    for index, document in enumerate(documents):
        if document is None:
            continue
        if not isinstance(document, dict):
            raise SourceResolutionError(
                f"Document {index} in {source or 'manifest'} is not an object",
                type(document).__name__,
            )
        obj = json.loads(json.dumps(document, default=str))
        metadata = obj.get("metadata")
        if metadata is None:
            metadata = obj["metadata"] = {}
        elif not isinstance(metadata, dict):
            raise SourceResolutionError(
                f"Document {index} in {source or 'manifest'} has invalid metadata",
                type(metadata).__name__,
            )
        if not metadata.get("namespace"):
            metadata["namespace"] = default_namespace
        objects.append(obj)
    return objects


async def resolve_token(app: Application, store: ClusterStore) -> str | None:
    """
    Git access token for `app`: inline value or a Secret key reference.

    The Secret is read from the Application's namespace on the default
    cluster.

    Raises:
        SourceResolutionError: If the token is empty or the Secret/key is missing.
    """
    token = app.source.token
    if token is None:
        return None
    if not token.from_secret:
        if not token.value:
            raise SourceResolutionError("Git token is empty", app.key)
        return token.value

    ref = ObjectRef("v1", "Secret", token.secret_name, app.namespace)
    try:
        secret = await store.get(ref)
    except ClusterError as e:
        raise SourceResolutionError(f"Cannot read token secret {ref}", str(e)) from e

    encoded = (secret.get("data") or {}).get(token.secret_key)
    if encoded is None:
        raise SourceResolutionError(
            f"Token secret/key {token.secret_name}/{token.secret_key} not valid", app.key
        )
    try:
        return base64.b64decode(encoded).decode()
    except (binascii.Error, UnicodeDecodeError) as e:
        raise SourceResolutionError(f"Token secret {ref} is not valid base64", str(e)) from e


class ManifestResolver(Protocol):
    async def resolve(self, app: Application, target: TargetHandle) -> list[dict[str, Any]]: ...


class PlainYamlResolver:
    """Resolve objects by walking a directory through the git provider API."""

    def __init__(self, providers: ProviderRegistry, default_store: ClusterStore) -> None:
        self._providers = providers
        self._default_store = default_store

    async def _collect(self, provider: GitProvider, path: str, revision: str) -> list[str]:
        urls: list[str] = []
        for entry in await provider.list_contents(path, revision):
            if entry.type == "dir":
                urls.extend(await self._collect(provider, entry.path, revision))
            elif entry.type == "file" and entry.name.lower().endswith(MANIFEST_SUFFIXES):
                urls.append(entry.download_url)
            else:
                logger.debug("Skipping non-manifest entry", path=entry.path, type=entry.type)
        return urls

    async def resolve(self, app: Application, target: TargetHandle) -> list[dict[str, Any]]:
        token = await resolve_token(app, self._default_store)
        source = app.source
        try:
            provider = self._providers.create(source.repo_url, token)
        except (LookupError, ValueError) as e:
            raise SourceResolutionError(f"No git provider for {source.repo_url}", str(e)) from e

        objects: list[dict[str, Any]] = []
        try:
            async with provider:
                urls = await self._collect(provider, source.path, source.target_revision)
                for url in urls:
                    raw = await provider.get_raw(url)
                    objects.extend(
                        parse_manifests(raw.decode(), app.target_namespace, source=url)
                    )
        except GitProviderError as e:
            if e.code == 404:
                raise SourceNotFoundError(
                    f"Path '{source.path}' not found at {source.target_revision}", str(e)
                ) from e
            raise SourceResolutionError(f"Cannot read {source.repo_url}", str(e)) from e
        except (httpx.HTTPError, RetryError) as e:
            raise SourceResolutionError(
                f"Cannot reach git provider for {source.repo_url}", str(e)
            ) from e
        except UnicodeDecodeError as e:
            raise SourceResolutionError("Manifest is not UTF-8 text", str(e)) from e

        logger.info("Resolved manifests", source=SOURCE_PLAIN_YAML, count=len(objects))
        return objects


class HelmResolver:
    """Resolve objects by rendering a Helm chart from a local checkout."""

    def __init__(self, renderer: HelmRenderer, default_store: ClusterStore) -> None:
        self._renderer = renderer
        self._default_store = default_store

    async def resolve(self, app: Application, target: TargetHandle) -> list[dict[str, Any]]:
        token = await resolve_token(app, self._default_store)
        try:
            manifest = await self._renderer.render(app, token=token, kubeconfig=target.kubeconfig)
        except CheckoutError as e:
            raise SourceResolutionError(f"Cannot check out {app.source.repo_url}", str(e)) from e

        objects = parse_manifests(manifest, app.target_namespace, source=f"chart {app.source.path}")
        logger.info("Resolved manifests", source=SOURCE_HELM, count=len(objects))
        return objects


def resolver_for(app: Application, resolvers: Mapping[str, ManifestResolver]) -> ManifestResolver:
    """
    Pick the resolver for the Application's source type.

    Raises:
        SourceResolutionError: For a source type with no resolver.
    """
    resolver = resolvers.get(app.source.type)
    if resolver is None:
        raise SourceResolutionError(
            f"Unsupported source type '{app.source.type}'",
            f"supported: {', '.join(sorted(resolvers))}",
        )
    return resolver


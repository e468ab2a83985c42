# ABOUTME: ClusterStore backed by the kubernetes_asyncio dynamic client
# ABOUTME: Maps unstructured CRUD and dry-run calls onto the Kubernetes API

"""
Kubernetes cluster adapter.

=============================================================================
WHY THE DYNAMIC CLIENT?
=============================================================================

The sync engine applies whatever objects git contains: Deployments,
Services, CRDs it has never heard of. The typed API classes (CoreV1Api,
AppsV1Api, ...) only know built-in kinds, so we use the dynamic client,
which discovers resources by (apiVersion, kind) at runtime:

    dyn = await DynamicClient(api_client)
    deployments = await dyn.resources.get(api_version="apps/v1", kind="Deployment")
    obj = await dyn.get(deployments, name="web", namespace="default")

Discovery results are cached per (apiVersion, kind) for the lifetime of
the store.

=============================================================================
ERRORS
=============================================================================

kubernetes_asyncio raises ApiException with an HTTP `status`. We convert it
to the ClusterError hierarchy so sync components never import the client
library. A kind the server does not serve is reported as InvalidObjectError.
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

import structlog
from kubernetes_asyncio import client, config
from kubernetes_asyncio.client.rest import ApiException
from kubernetes_asyncio.config import ConfigException
from kubernetes_asyncio.dynamic import DynamicClient
from kubernetes_asyncio.dynamic.exceptions import ResourceNotFoundError

from cd_sync.cluster.store import ClusterError, InvalidObjectError, ObjectRef, error_for_status

if TYPE_CHECKING:
    from pathlib import Path

logger = structlog.get_logger(__name__)


def _error_from_api(e: ApiException, ref: str) -> ClusterError:
    message = e.reason or f"HTTP {e.status}"
    details = None
    if e.body:
        try:
            body = json.loads(e.body)
            message = body.get("message", message)
            details = body.get("reason")
        except (TypeError, ValueError):
            details = str(e.body)[:200]
    return error_for_status(e.status or 0, f"{ref}: {message}", details)


class KubernetesClusterStore:
    """
    ClusterStore over one Kubernetes API server.

    Build with one of the constructors:

        store = await KubernetesClusterStore.from_default()           # in-cluster or ~/.kube/config
        store = await KubernetesClusterStore.from_kubeconfig(data)    # parsed kubeconfig dict
    """

    def __init__(self, configuration: client.Configuration, name: str = "default") -> None:
        self._configuration = configuration
        self._name = name
        self._api_client: client.ApiClient | None = None
        self._dynamic: DynamicClient | None = None
        self._resources: dict[tuple[str, str], Any] = {}
        self._lock = asyncio.Lock()

    @classmethod
    async def from_default(cls, kubeconfig: Path | None = None) -> KubernetesClusterStore:
        """Load in-cluster configuration, falling back to a kubeconfig file."""
        configuration = client.Configuration()
        if kubeconfig is None:
            try:
                config.load_incluster_config(client_configuration=configuration)
                logger.info("Loaded in-cluster configuration")
                return cls(configuration)
            except ConfigException:
                logger.debug("Not running in a cluster, trying kubeconfig")
        try:
            await config.load_kube_config(
                config_file=str(kubeconfig) if kubeconfig else None,
                client_configuration=configuration,
            )
        except ConfigException as e:
            raise ClusterError(0, "Unable to load cluster configuration", str(e)) from e
        logger.info("Loaded kubeconfig", path=str(kubeconfig) if kubeconfig else "default")
        return cls(configuration)

    @classmethod
    async def from_kubeconfig(
        cls,
        data: dict[str, Any],
        name: str = "remote",
    ) -> KubernetesClusterStore:
        """Build a store from a parsed kubeconfig document."""
        configuration = client.Configuration()
        try:
            await config.load_kube_config_from_dict(
                data,
                client_configuration=configuration,
                persist_config=False,
            )
        except (ConfigException, KeyError, TypeError, ValueError) as e:
            raise ClusterError(0, f"Invalid kubeconfig for cluster '{name}'", str(e)) from e
        return cls(configuration, name=name)

    async def _client(self) -> DynamicClient:
        async with self._lock:
            if self._dynamic is None:
                self._api_client = client.ApiClient(configuration=self._configuration)
                try:
                    self._dynamic = await DynamicClient(self._api_client)
                except ApiException as e:
                    raise _error_from_api(e, f"discovery on {self._name}") from e
            return self._dynamic

    async def _resource(self, api_version: str, kind: str) -> Any:
        key = (api_version, kind)
        if key not in self._resources:
            dyn = await self._client()
            try:
                self._resources[key] = await dyn.resources.get(api_version=api_version, kind=kind)
            except ResourceNotFoundError as e:
                raise InvalidObjectError(
                    f"Unknown resource {api_version}/{kind}", str(e)
                ) from e
        return self._resources[key]

    @staticmethod
    def _namespace(resource: Any, namespace: str) -> str | None:
        return namespace or None if resource.namespaced else None

    async def get(self, ref: ObjectRef) -> dict[str, Any]:
        resource = await self._resource(ref.api_version, ref.kind)
        dyn = await self._client()
        try:
            result = await dyn.get(
                resource, name=ref.name, namespace=self._namespace(resource, ref.namespace)
            )
        except ApiException as e:
            raise _error_from_api(e, str(ref)) from e
        return result.to_dict()

    async def create(self, obj: dict[str, Any], dry_run: bool = False) -> dict[str, Any]:
        ref = ObjectRef.from_object(obj)
        if not ref.kind or not ref.api_version:
            raise InvalidObjectError("Object is missing apiVersion or kind", str(ref))
        resource = await self._resource(ref.api_version, ref.kind)
        dyn = await self._client()
        kwargs: dict[str, Any] = {"dry_run": "All"} if dry_run else {}
        try:
            result = await dyn.create(
                resource,
                body=obj,
                namespace=self._namespace(resource, ref.namespace),
                **kwargs,
            )
        except ApiException as e:
            raise _error_from_api(e, str(ref)) from e
        logger.debug("Created object", ref=str(ref), dry_run=dry_run, cluster=self._name)
        return result.to_dict()

    async def update(self, obj: dict[str, Any], dry_run: bool = False) -> dict[str, Any]:
        ref = ObjectRef.from_object(obj)
        resource = await self._resource(ref.api_version, ref.kind)
        dyn = await self._client()
        kwargs: dict[str, Any] = {"dry_run": "All"} if dry_run else {}
        try:
            result = await dyn.replace(
                resource,
                body=obj,
                name=ref.name,
                namespace=self._namespace(resource, ref.namespace),
                **kwargs,
            )
        except ApiException as e:
            raise _error_from_api(e, str(ref)) from e
        logger.debug("Updated object", ref=str(ref), dry_run=dry_run, cluster=self._name)
        return result.to_dict()

    async def update_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace `obj`'s status through the /status subresource."""
        ref = ObjectRef.from_object(obj)
        resource = await self._resource(ref.api_version, ref.kind)
        status = resource.subresources.get("status")
        if status is None:
            raise InvalidObjectError(f"{ref.kind} has no status subresource", str(ref))
        dyn = await self._client()
        try:
            result = await dyn.replace(
                status,
                body=obj,
                name=ref.name,
                namespace=self._namespace(resource, ref.namespace),
            )
        except ApiException as e:
            raise _error_from_api(e, f"{ref}/status") from e
        logger.debug("Updated status", ref=str(ref), cluster=self._name)
        return result.to_dict()

    async def delete(self, ref: ObjectRef) -> None:
        resource = await self._resource(ref.api_version, ref.kind)
        dyn = await self._client()
        try:
            await dyn.delete(
                resource, name=ref.name, namespace=self._namespace(resource, ref.namespace)
            )
        except ApiException as e:
            raise _error_from_api(e, str(ref)) from e
        logger.debug("Deleted object", ref=str(ref), cluster=self._name)

    async def list(
        self,
        api_version: str,
        kind: str,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        resource = await self._resource(api_version, kind)
        dyn = await self._client()
        kwargs: dict[str, Any] = {}
        if label_selector:
            kwargs["label_selector"] = label_selector
        try:
            result = await dyn.get(
                resource, namespace=self._namespace(resource, namespace or ""), **kwargs
            )
        except ApiException as e:
            raise _error_from_api(e, f"{api_version}/{kind}") from e
        return list(result.to_dict().get("items") or [])

    async def close(self) -> None:
        if self._api_client is not None:
            await self._api_client.close()
            self._api_client = None
            self._dynamic = None
            self._resources.clear()

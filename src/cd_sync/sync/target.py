# ABOUTME: Resolves the cluster an Application deploys to
# ABOUTME: Default cluster for an empty destination, else a store built from a kubeconfig secret

"""
Target cluster resolution.

    destination.name == ""      -> the default cluster store
    destination.name == "east"  -> Secret "east-kubeconfig" (key "value") in
                                   the Application's namespace, parsed as a
                                   kubeconfig and turned into a new store

The target is resolved again on every pass, so a rotated kubeconfig secret
takes effect on the next tick.
"""

from __future__ import annotations

import base64
import binascii
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
import yaml

from cd_sync.cluster.store import ClusterError, ObjectRef
from cd_sync.errors import TargetResolutionError

if TYPE_CHECKING:
    from cd_sync.cluster.store import ClusterStore
    from cd_sync.models import Application

logger = structlog.get_logger(__name__)

KUBECONFIG_SECRET_SUFFIX = "-kubeconfig"
KUBECONFIG_SECRET_KEY = "value"

StoreFactory = Callable[[dict[str, Any], str], Awaitable["ClusterStore"]]


@dataclass
class TargetHandle:
    """
    The resolved target for one pass.

    Use as an async context manager; a store built for a remote cluster is
    closed on exit, the default store is left open.
    """

    name: str
    store: ClusterStore
    kubeconfig: str | None = None
    owned: bool = False

    async def __aenter__(self) -> TargetHandle:
        return self

    async def __aexit__(self, *args: object) -> None:
        if self.owned:
            await self.store.close()


def _default_factory() -> StoreFactory:
    from cd_sync.cluster.kube import KubernetesClusterStore

    return KubernetesClusterStore.from_kubeconfig


class TargetResolver:
    """Turns an Application destination into a TargetHandle."""

    def __init__(
        self, default_store: ClusterStore, store_factory: StoreFactory | None = None
    ) -> None:
        self._default_store = default_store
        self._store_factory = store_factory or _default_factory()

    @staticmethod
    def secret_name(app: Application) -> str:
        return f"{app.destination.name}{KUBECONFIG_SECRET_SUFFIX}"

    async def resolve(self, app: Application) -> TargetHandle:
        """
        Raises:
            TargetResolutionError: If the kubeconfig secret is missing or unusable.
        """
        if not app.destination.name:
            return TargetHandle(name="default", store=self._default_store)

        secret_name = self.secret_name(app)
        ref = ObjectRef("v1", "Secret", secret_name, app.namespace)
        try:
            secret = await self._default_store.get(ref)
        except ClusterError as e:
            raise TargetResolutionError(
                f"Unable to find cluster secret {secret_name}", str(e)
            ) from e

        encoded = (secret.get("data") or {}).get(KUBECONFIG_SECRET_KEY)
        if not encoded:
            raise TargetResolutionError(
                f"Cluster secret {secret_name} has no '{KUBECONFIG_SECRET_KEY}' entry"
            )

        try:
            text = base64.b64decode(encoded).decode()
            kubeconfig = yaml.safe_load(text)
        except (binascii.Error, UnicodeDecodeError, yaml.YAMLError) as e:
            raise TargetResolutionError(
                f"Cluster secret {secret_name} is not a kubeconfig", str(e)
            ) from e

        if not isinstance(kubeconfig, dict) or not all(
            kubeconfig.get(section) for section in ("clusters", "contexts", "users")
        ):
            raise TargetResolutionError(
                f"Cluster secret {secret_name} is not a kubeconfig",
                "expected clusters, contexts and users",
            )

        try:
            store = await self._store_factory(kubeconfig, app.destination.name)
        except ClusterError as e:
            raise TargetResolutionError(
                f"Cannot connect to cluster {app.destination.name}", str(e)
            ) from e

        logger.debug("Resolved target cluster", cluster=app.destination.name)
        return TargetHandle(name=app.destination.name, store=store, kubeconfig=text, owned=True)

# ABOUTME: Reconciler glue between the Application custom resource and the sync engine
# ABOUTME: Applies defaults, manages the finalizer, schedules passes and wires the runtime together

"""
Application reconciliation and runtime wiring.

The surrounding controller framework calls `ApplicationReconciler.reconcile`
whenever an Application changes. Reconcile is deliberately thin:

    Application gone            -> cancel its periodic task
    deletionTimestamp set       -> cancel periodic task, clear owned objects,
                                   remove the repository webhook, drop the
                                   finalizer
    otherwise                   -> ensure the finalizer, default the period,
                                   default status and register the webhook,
                                   (re)schedule periodic sync

Changes to .spec and metadata go through a plain update. Status goes through
the /status subresource, which the API server keeps apart from the rest.

Cancelling before clearing guarantees no periodic pass re-creates objects
while they are being deleted.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from cd_sync.cluster.store import ClusterError, NotFoundError, ObjectRef
from cd_sync.errors import SyncError
from cd_sync.git.provider import ProviderRegistry
from cd_sync.git.webhook import EVENT_PUSH
from cd_sync.models import (
    API_VERSION,
    APPLICATION_KIND,
    SOURCE_HELM,
    SOURCE_PLAIN_YAML,
    Application,
)
from cd_sync.sync.engine import SyncEngine
from cd_sync.sync.helm import HelmRenderer
from cd_sync.sync.manifest import HelmResolver, PlainYamlResolver
from cd_sync.sync.registration import WebhookRegistrar
from cd_sync.sync.scheduler import SyncScheduler
from cd_sync.sync.target import TargetResolver
from cd_sync.sync.webhook import PushSyncPlugin, WebhookDispatcher
from cd_sync.utils.logging import AuditLogger

if TYPE_CHECKING:
    from collections.abc import Callable

    from cd_sync.cluster.store import ClusterStore
    from cd_sync.config import EngineSettings
    from cd_sync.sync.engine import SyncResult
    from cd_sync.sync.target import StoreFactory

logger = structlog.get_logger(__name__)

FINALIZER = "cd.tmax.io/finalizer"


class ApplicationNotFound(SyncError):
    """The Application custom resource does not exist."""


class ApplicationRepository:
    """Reads and writes Application custom resources on the default cluster."""

    def __init__(self, store: ClusterStore) -> None:
        self._store = store

    @staticmethod
    def _ref(namespace: str, name: str) -> ObjectRef:
        return ObjectRef(API_VERSION, APPLICATION_KIND, name, namespace)

    async def get_raw(self, namespace: str, name: str) -> dict[str, Any]:
        try:
            return await self._store.get(self._ref(namespace, name))
        except NotFoundError as e:
            raise ApplicationNotFound(f"Application {name}/{namespace} not found") from e
        except ClusterError as e:
            raise SyncError(f"Cannot read Application {name}/{namespace}", str(e)) from e

    async def get(self, namespace: str, name: str) -> Application:
        return Application.from_api_response(await self.get_raw(namespace, name))

    async def list(self, namespace: str | None = None) -> list[Application]:
        try:
            items = await self._store.list(API_VERSION, APPLICATION_KIND, namespace=namespace)
        except ClusterError as e:
            raise SyncError("Cannot list Applications", str(e)) from e
        return [Application.from_api_response(item) for item in items]

    async def _write(
        self,
        app: Application,
        mutate: Callable[[dict[str, Any]], None],
        status: bool = False,
    ) -> None:
        raw = await self.get_raw(app.namespace, app.name)
        mutate(raw)
        try:
            if status:
                await self._store.update_status(raw)
            else:
                await self._store.update(raw)
        except ClusterError as e:
            raise SyncError(f"Cannot update Application {app.key}", str(e)) from e

    async def save_status(self, app: Application) -> None:
        """Write sync status, conditions and the webhook secret via /status."""

        def mutate(raw: dict[str, Any]) -> None:
            current = raw.get("status") or {}
            raw["status"] = {**current, **app.to_status_patch()["status"]}

        await self._write(app, mutate, status=True)

    async def save_period(self, app: Application) -> None:
        """Write the defaulted syncCheckPeriod back to the spec."""

        def mutate(raw: dict[str, Any]) -> None:
            policy = raw.setdefault("spec", {}).setdefault("syncPolicy", {})
            policy["syncCheckPeriod"] = app.sync_policy.sync_check_period

        await self._write(app, mutate)

    async def set_finalizer(self, app: Application, present: bool) -> None:
        def mutate(raw: dict[str, Any]) -> None:
            finalizers = [f for f in raw["metadata"].get("finalizers", []) if f != FINALIZER]
            if present:
                finalizers.append(FINALIZER)
            raw["metadata"]["finalizers"] = finalizers

        await self._write(app, mutate)


class ApplicationReconciler:
    def __init__(
        self,
        repository: ApplicationRepository,
        engine: SyncEngine,
        scheduler: SyncScheduler,
        default_period: int = 60,
        registrar: WebhookRegistrar | None = None,
    ) -> None:
        self._repository = repository
        self._engine = engine
        self._scheduler = scheduler
        self._default_period = default_period
        self._registrar = registrar

    async def reconcile(self, namespace: str, name: str) -> Application | None:
        """
        Bring the scheduler in line with Application `namespace/name`.

        Returns the Application, or None when it no longer exists.
        """
        try:
            raw = await self._repository.get_raw(namespace, name)
        except ApplicationNotFound:
            await self._scheduler.cancel(f"{name}/{namespace}")
            return None

        app = Application.from_api_response(raw)
        finalizers = (raw.get("metadata") or {}).get("finalizers") or []

        if app.deletion_timestamp:
            await self.finalize(app)
            if FINALIZER in finalizers:
                await self._repository.set_finalizer(app, present=False)
            return app

        if FINALIZER not in finalizers:
            await self._repository.set_finalizer(app, present=True)
        period_missing = app.sync_policy.sync_check_period <= 0
        status_changed = app.set_defaults(self._default_period)
        if period_missing:
            await self._repository.save_period(app)
        if self._registrar is not None:
            status_changed |= await self._registrar.ensure(app)
        if status_changed:
            await self._repository.save_status(app)

        await self._scheduler.schedule(app)
        return app

    async def finalize(self, app: Application) -> None:
        """
        Stop periodic sync, delete every object the Application owns, then
        remove its repository webhook.
        """
        await self._scheduler.cancel(app.key)
        pruned = await self._engine.clear(app)
        hooks = await self._registrar.remove(app) if self._registrar is not None else 0
        logger.info(
            "Finalized application", application=app.key, pruned=len(pruned), webhooks=hooks
        )


@dataclass
class Runtime:
    """Every long-lived component, built once per process."""

    default_store: ClusterStore
    repository: ApplicationRepository
    engine: SyncEngine
    scheduler: SyncScheduler
    dispatcher: WebhookDispatcher
    reconciler: ApplicationReconciler
    registrar: WebhookRegistrar
    audit: AuditLogger

    async def close(self) -> None:
        await self.scheduler.shutdown()
        await self.default_store.close()


async def build_runtime(
    settings: EngineSettings,
    default_store: ClusterStore | None = None,
    store_factory: StoreFactory | None = None,
    providers: ProviderRegistry | None = None,
) -> Runtime:
    """
    Wire the engine together from settings.

    `default_store`, `store_factory` and `providers` default to the
    Kubernetes and REST implementations; tests pass fakes.
    """
    if default_store is None:
        from cd_sync.cluster.kube import KubernetesClusterStore

        default_store = await KubernetesClusterStore.from_default(settings.kubeconfig)

    audit = AuditLogger(settings.security.audit_log)
    providers = providers or ProviderRegistry.with_defaults(
        settings.git.providers,
        timeout=settings.git.timeout,
        mask_secrets=settings.git.mask_secrets,
    )
    resolvers = {
        SOURCE_PLAIN_YAML: PlainYamlResolver(providers, default_store),
        SOURCE_HELM: HelmResolver(
            HelmRenderer(settings.helm_binary, settings.repo_cache_dir), default_store
        ),
    }
    engine = SyncEngine(
        default_store,
        resolvers,
        TargetResolver(default_store, store_factory),
        audit=audit,
        call_timeout=settings.call_timeout,
        serialize_passes=settings.serialize_passes,
    )
    repository = ApplicationRepository(default_store)

    async def on_synced(app: Application, result: SyncResult) -> None:
        await repository.save_status(app)

    scheduler = SyncScheduler(
        engine,
        join_timeout=settings.scheduler_join_timeout,
        on_synced=on_synced,
        cancel_stuck=settings.scheduler_cancel_stuck,
    )
    dispatcher = WebhookDispatcher(repository)
    dispatcher.add_plugin([EVENT_PUSH], PushSyncPlugin(engine, on_synced=on_synced))
    registrar = WebhookRegistrar(providers, default_store, settings.git.webhook_base_url)
    reconciler = ApplicationReconciler(
        repository,
        engine,
        scheduler,
        default_period=settings.default_sync_check_period,
        registrar=registrar,
    )
    logger.info("Runtime ready", git_hosts=providers.hosts())
    return Runtime(
        default_store=default_store,
        repository=repository,
        engine=engine,
        scheduler=scheduler,
        dispatcher=dispatcher,
        reconciler=reconciler,
        registrar=registrar,
        audit=audit,
    )

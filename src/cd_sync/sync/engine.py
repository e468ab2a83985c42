# ABOUTME: The sync engine: one reconciliation pass for one Application
# ABOUTME: Resolves target and manifests, tracks, compares, applies and garbage-collects

"""
Sync engine.

=============================================================================
ONE PASS
=============================================================================

    sync(app, forced)
    │
    ├── 1. resolve target cluster          TargetResolutionError
    ├── 2. resolve desired objects         SourceResolutionError
    ├── 3. snapshot DeployResource records TrackingError
    ├── 4. for each desired object:
    │       track      (get-or-create record)       TrackingError
    │       compare    (merge patch + dry-run)      DriftComparisonError
    │       apply      (if drift and forced/auto)   ApplyError
    ├── 5. GC records (and objects) not tracked in 4  GCError
    └── 6. status = OutOfSync if drift was left unapplied, else Synced

A failure at any step aborts the pass. Nothing is rolled back: objects
applied before the failure stay applied, and the next pass converges from
wherever the cluster is. A failed pass leaves the Application status as it
was.

=============================================================================
TIMEOUTS AND CONCURRENCY
=============================================================================

Every collaborator call runs under `call_timeout`; expiry raises the error
class of the step that hung. With `serialize_passes` (the default) passes
for the same Application take turns on a per-Application lock, so a
webhook-forced pass waits for an in-flight periodic pass instead of racing
it. Different Applications still sync concurrently.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from cd_sync.cluster.store import ObjectRef
from cd_sync.errors import (
    ApplyError,
    DriftComparisonError,
    GCError,
    SourceResolutionError,
    SyncError,
    TargetResolutionError,
    TrackingError,
)
from cd_sync.models import STATUS_OUT_OF_SYNC, STATUS_SYNCED
from cd_sync.sync.applier import Applier
from cd_sync.sync.drift import DriftDetector
from cd_sync.sync.manifest import resolver_for
from cd_sync.sync.tracker import DeployResourceTracker
from cd_sync.utils.logging import new_correlation_id

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Mapping

    from cd_sync.cluster.store import ClusterStore
    from cd_sync.models import Application, DeployResource
    from cd_sync.sync.manifest import ManifestResolver
    from cd_sync.sync.target import TargetResolver
    from cd_sync.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class SyncResult:
    """What one pass did."""

    application: str
    status: str
    forced: bool
    tracked: int = 0
    applied: list[str] = field(default_factory=list)
    unapplied: list[str] = field(default_factory=list)
    pruned: list[str] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"{self.application}: {self.status} "
            f"(tracked={self.tracked} applied={len(self.applied)} "
            f"unapplied={len(self.unapplied)} pruned={len(self.pruned)})"
        )


class SyncEngine:
    """
    Runs sync and clear passes.

    Example:
        >>> engine = SyncEngine(default_store, resolvers, TargetResolver(default_store))
        >>> result = await engine.sync(app, forced=True)
        >>> print(result.summary())
    """

    def __init__(
        self,
        default_store: ClusterStore,
        resolvers: Mapping[str, ManifestResolver],
        targets: TargetResolver,
        audit: AuditLogger | None = None,
        call_timeout: float = 30.0,
        serialize_passes: bool = True,
    ) -> None:
        self._resolvers = resolvers
        self._targets = targets
        self._audit = audit
        self._tracker = DeployResourceTracker(default_store, audit=audit)
        self._call_timeout = call_timeout
        self._serialize = serialize_passes
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def tracker(self) -> DeployResourceTracker:
        return self._tracker

    @contextlib.asynccontextmanager
    async def _pass_lock(self, key: str) -> AsyncIterator[None]:
        if not self._serialize:
            yield
            return
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            yield

    async def _step(self, error: type[SyncError], what: str, call: Awaitable[T]) -> T:
        try:
            async with asyncio.timeout(self._call_timeout):
                return await call
        except TimeoutError as e:
            raise error(f"Timed out {what}", f"after {self._call_timeout}s") from e

    async def sync(self, app: Application, forced: bool = False) -> SyncResult:
        """
        Run one pass for `app`, updating `app.sync` on success.

        Raises:
            SyncError: The subclass of the step that failed.
        """
        async with self._pass_lock(app.key):
            new_correlation_id()
            with structlog.contextvars.bound_contextvars(application=app.key):
                try:
                    result = await self._sync(app, forced)
                except SyncError as e:
                    logger.warning("Sync failed", error_type=type(e).__name__, error=str(e))
                    raise
                logger.info(
                    "Sync complete",
                    status=result.status,
                    forced=forced,
                    applied=len(result.applied),
                    pruned=len(result.pruned),
                )
                return result

    async def _sync(self, app: Application, forced: bool) -> SyncResult:
        result = SyncResult(application=app.key, status=app.sync.status, forced=forced)
        apply_drift = forced or app.sync_policy.auto_sync

        target = await self._step(
            TargetResolutionError, "resolving target cluster", self._targets.resolve(app)
        )
        async with target:
            resolver = resolver_for(app, self._resolvers)
            desired = await self._step(
                SourceResolutionError, "resolving manifests", resolver.resolve(app, target)
            )
            old = await self._step(
                TrackingError, "listing DeployResources", self._tracker.list(app)
            )

            detector = DriftDetector(target.store)
            applier = Applier(target.store, self._audit, cluster=target.name, application=app.key)
            tracked: list[DeployResource] = []

            for obj in desired:
                ref = str(ObjectRef.from_object(obj))
                record = await self._step(
                    TrackingError, f"tracking {ref}", self._tracker.track(obj, app)
                )
                tracked.append(record)
                comparison = await self._step(
                    DriftComparisonError, f"comparing {ref}", detector.compare(obj)
                )
                if not comparison.drifted:
                    continue
                if not apply_drift:
                    result.unapplied.append(ref)
                    continue
                merged: dict[str, Any] = comparison.merged  # type: ignore[assignment]
                await self._step(
                    ApplyError, f"applying {ref}", applier.apply(comparison.existed, merged)
                )
                result.applied.append(ref)

            pruned = await self._step(
                GCError, "garbage collecting", self._tracker.gc(old, tracked, target.store)
            )

        result.tracked = len(tracked)
        result.pruned = [f"{r.kind}/{r.namespace}/{r.name}" for r in pruned]
        result.status = STATUS_OUT_OF_SYNC if result.unapplied else STATUS_SYNCED
        app.mark(result.status)
        return result

    async def clear(self, app: Application) -> list[DeployResource]:
        """
        Delete every DeployResource of `app` and the objects they track.

        Raises:
            TargetResolutionError, TrackingError, GCError
        """
        async with self._pass_lock(app.key):
            new_correlation_id()
            with structlog.contextvars.bound_contextvars(application=app.key):
                target = await self._step(
                    TargetResolutionError, "resolving target cluster", self._targets.resolve(app)
                )
                async with target:
                    pruned = await self._step(
                        GCError, "clearing DeployResources", self._tracker.clear(app, target.store)
                    )
                logger.info("Cleared application", pruned=len(pruned))
        self._locks.pop(app.key, None)
        return pruned

# ABOUTME: Ownership bookkeeping for objects deployed by an Application
# ABOUTME: Maintains DeployResource records and garbage-collects objects that left git

"""
DeployResource tracking and garbage collection.

Records live on the default cluster, in the Application's namespace, and
carry the label `cd.tmax.io/application=<name>-<namespace>`. The live
objects they describe may be on another cluster; GC deletes those through
the pass's target store.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from cd_sync.cluster.store import ClusterError, ConflictError, NotFoundError, ObjectRef
from cd_sync.errors import GCError, TrackingError
from cd_sync.models import API_VERSION, DEPLOY_RESOURCE_KIND, OWNER_LABEL, DeployResource

if TYPE_CHECKING:
    from cd_sync.cluster.store import ClusterStore
    from cd_sync.models import Application
    from cd_sync.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)


def _record_ref(record: DeployResource) -> ObjectRef:
    return ObjectRef(API_VERSION, DEPLOY_RESOURCE_KIND, record.key, record.app_namespace)


def _live_ref(record: DeployResource) -> ObjectRef:
    return ObjectRef(record.api_version, record.kind, record.name, record.namespace)


class DeployResourceTracker:
    """
    Example:
        >>> old = await tracker.list(app)
        >>> new = [await tracker.track(obj, app) for obj in desired]
        >>> await tracker.gc(old, new, target.store)
    """

    def __init__(self, store: ClusterStore, audit: AuditLogger | None = None) -> None:
        self._store = store
        self._audit = audit

    async def list(self, app: Application) -> list[DeployResource]:
        """
        Raises:
            TrackingError: If the records cannot be listed.
        """
        try:
            items = await self._store.list(
                API_VERSION,
                DEPLOY_RESOURCE_KIND,
                namespace=app.namespace,
                label_selector=f"{OWNER_LABEL}={app.owner_label}",
            )
        except ClusterError as e:
            raise TrackingError(f"Cannot list DeployResources of {app.key}", str(e)) from e
        return [DeployResource.from_api_response(item) for item in items]

    async def track(self, obj: dict[str, Any], app: Application) -> DeployResource:
        """
        Get-or-create the record for `obj`. Idempotent.

        Raises:
            TrackingError: If the record cannot be read or written.
        """
        record = DeployResource.for_object(obj, app)
        ref = _record_ref(record)
        try:
            existing = await self._store.get(ref)
        except NotFoundError:
            existing = None
        except ClusterError as e:
            raise TrackingError(f"Cannot read DeployResource {record.key}", str(e)) from e

        try:
            if existing is None:
                await self._store.create(record.to_manifest())
                logger.debug("Tracking object", key=record.key)
            elif DeployResource.from_api_response(existing) != record:
                manifest = record.to_manifest()
                manifest["metadata"]["resourceVersion"] = (existing.get("metadata") or {}).get(
                    "resourceVersion"
                )
                await self._store.update(manifest)
                logger.debug("Refreshed tracking record", key=record.key)
        except ConflictError:
            # Another pass wrote the same record first
            logger.debug("Tracking record written concurrently", key=record.key)
        except ClusterError as e:
            raise TrackingError(f"Cannot write DeployResource {record.key}", str(e)) from e
        return record

    async def gc(
        self,
        old: list[DeployResource],
        new: list[DeployResource],
        target_store: ClusterStore,
    ) -> list[DeployResource]:
        """
        Delete every record in `old` whose key is not in `new`, then its live object.

        Returns:
            The records that were pruned.

        Raises:
            GCError: On any failure other than not-found.
        """
        keep = {record.key for record in new}
        pruned: list[DeployResource] = []
        for record in old:
            if record.key in keep:
                continue
            try:
                await self._store.delete(_record_ref(record))
            except NotFoundError:
                logger.debug("Tracking record already gone", key=record.key)
            except ClusterError as e:
                raise GCError(f"Cannot delete DeployResource {record.key}", str(e)) from e

            live = _live_ref(record)
            try:
                await target_store.delete(live)
            except NotFoundError:
                logger.debug("Orphaned object already gone", ref=str(live))
            except ClusterError as e:
                if self._audit:
                    self._audit.log_error("prune", str(live), str(e))
                raise GCError(f"Cannot delete orphaned object {live}", str(e)) from e
            else:
                if self._audit:
                    self._audit.log_write("prune", str(live), details={"record": record.key})
                logger.info("Pruned orphaned object", ref=str(live))
            pruned.append(record)
        return pruned

    async def clear(self, app: Application, target_store: ClusterStore) -> list[DeployResource]:
        """Delete every record of `app` and the objects they track."""
        return await self.gc(await self.list(app), [], target_store)

# ABOUTME: Applies one desired object to the target cluster
# ABOUTME: Creates missing objects, updates drifted ones and audits every mutation

"""Object application."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from cd_sync.cluster.store import ClusterError, ObjectRef
from cd_sync.errors import ApplyError

if TYPE_CHECKING:
    from cd_sync.cluster.store import ClusterStore
    from cd_sync.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)


class Applier:
    """
    Create-or-update against one target store.

    There is no local retry: a conflict (stale resourceVersion) fails the
    pass and the next pass recomputes the merge from a fresh read.
    """

    def __init__(
        self,
        store: ClusterStore,
        audit: AuditLogger | None = None,
        cluster: str = "default",
        application: str = "",
    ) -> None:
        self._store = store
        self._audit = audit
        self._cluster = cluster
        self._application = application

    async def apply(self, existed: bool, obj: dict[str, Any]) -> dict[str, Any]:
        """
        Raises:
            ApplyError: If the cluster rejects the create or update.
        """
        ref = ObjectRef.from_object(obj)
        action = "update" if existed else "create"
        details = {"application": self._application, "cluster": self._cluster}
        try:
            if existed:
                result = await self._store.update(obj)
            else:
                result = await self._store.create(obj)
        except ClusterError as e:
            if self._audit:
                self._audit.log_error(action, str(ref), str(e))
            raise ApplyError(f"Failed to {action} {ref}", str(e)) from e

        if self._audit:
            self._audit.log_write(action, str(ref), details=details)
        logger.info("Applied object", action=action, ref=str(ref))
        return result

# ABOUTME: Drift detection between a desired object and its live counterpart
# ABOUTME: Merges desired into live, validates with a dry-run update and compares canonical JSON

"""
Drift detection.

For one desired object:

1. GET the live object. Not found -> it must be created.
2. merged = merge_patch(live, desired). Fields git sets win, fields only
   the cluster sets (status, defaults, annotations from other tools) stay.
3. Dry-run UPDATE merged. The server applies defaulting and type coercion
   ("8080" vs 8080) and rejects invalid objects without persisting them.
4. Compare the canonical JSON of the dry-run result with the live object.
   Equal -> no drift. Different -> `merged` is what the Applier sends.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from cd_sync.cluster.store import ClusterError, NotFoundError, ObjectRef
from cd_sync.errors import DriftComparisonError
from cd_sync.utils.merge import canonical_json, merge_patch

if TYPE_CHECKING:
    from cd_sync.cluster.store import ClusterStore

logger = structlog.get_logger(__name__)


@dataclass
class Comparison:
    """
    Result of comparing one object.

    - existed=False, merged=desired: object must be created
    - existed=True, merged=None: in sync
    - existed=True, merged=<obj>: drifted, update with merged
    """

    existed: bool
    merged: dict[str, Any] | None

    @property
    def drifted(self) -> bool:
        return self.merged is not None


class DriftDetector:
    def __init__(self, store: ClusterStore) -> None:
        self._store = store

    async def compare(self, desired: dict[str, Any]) -> Comparison:
        """
        Raises:
            DriftComparisonError: If the live object cannot be read or the
                merged object fails the dry-run.
        """
        ref = ObjectRef.from_object(desired)
        try:
            live = await self._store.get(ref)
        except NotFoundError:
            logger.debug("Object not found, will create", ref=str(ref))
            return Comparison(existed=False, merged=desired)
        except ClusterError as e:
            raise DriftComparisonError(f"Cannot read live object {ref}", str(e)) from e

        merged = merge_patch(live, desired)
        try:
            validated = await self._store.update(merged, dry_run=True)
        except ClusterError as e:
            raise DriftComparisonError(f"Dry-run update of {ref} failed", str(e)) from e

        if canonical_json(validated or merged) == canonical_json(live):
            return Comparison(existed=True, merged=None)

        logger.info("Drift detected", ref=str(ref))
        return Comparison(existed=True, merged=merged)

# ABOUTME: Error hierarchy for the sync engine
# ABOUTME: One exception class per step of a sync pass so callers can tell failures apart

"""
Errors raised by a sync pass.

Every step of a pass has its own error class so the scheduler, the webhook
dispatcher and the admin tools can log *which* step failed:

    SyncError
    ├── SourceResolutionError
    │   └── SourceNotFoundError
    ├── TargetResolutionError
    ├── DriftComparisonError
    ├── ApplyError
    ├── TrackingError
    ├── GCError
    └── WebhookError

A pass is fail-fast: the first error aborts it and nothing already applied
is rolled back. The next pass converges.
"""

from __future__ import annotations


class SyncError(Exception):
    """
    Base class for sync pass failures.

    USAGE:
    ------
    try:
        await engine.sync(app)
    except SyncError as e:
        print(e.message, e.details)
    """

    def __init__(self, message: str, details: str | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(str(self))

    def __str__(self) -> str:
        base = self.message
        if self.details:
            base += f" - {self.details}"
        return base


class SourceResolutionError(SyncError):
    """Manifests could not be fetched, rendered or parsed."""


class SourceNotFoundError(SourceResolutionError):
    """The configured source path does not exist at the requested revision."""


class TargetResolutionError(SyncError):
    """The destination cluster could not be resolved."""


class DriftComparisonError(SyncError):
    """The live object could not be fetched or the merged object failed dry-run."""


class ApplyError(SyncError):
    """A create or update was rejected by the cluster."""


class TrackingError(SyncError):
    """A DeployResource record could not be read or written."""


class GCError(SyncError):
    """An orphaned object or its record could not be deleted."""


class WebhookError(SyncError):
    """An incoming webhook was rejected."""

# ABOUTME: ClusterStore contract used by every sync component
# ABOUTME: Defines object references and the error classes cluster adapters raise

"""ClusterStore protocol and cluster errors."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


class ClusterError(Exception):
    """
    Structured cluster API error.

    `code` carries the HTTP status the API server answered with (0 when the
    request never reached it), so callers can branch on 404 / 409 / 422.
    """

    def __init__(self, code: int, message: str, details: str | None = None) -> None:
        self.code = code
        self.message = message
        self.details = details
        super().__init__(str(self))

    def __str__(self) -> str:
        base = f"Cluster API error ({self.code}): {self.message}"
        if self.details:
            base += f" - {self.details}"
        return base


class NotFoundError(ClusterError):
    def __init__(self, message: str, details: str | None = None) -> None:
        super().__init__(404, message, details)


class ConflictError(ClusterError):
    def __init__(self, message: str, details: str | None = None) -> None:
        super().__init__(409, message, details)


class InvalidObjectError(ClusterError):
    def __init__(self, message: str, details: str | None = None) -> None:
        super().__init__(422, message, details)


def error_for_status(code: int, message: str, details: str | None = None) -> ClusterError:
    """Map an API status code to the matching error class."""
    if code == 404:
        return NotFoundError(message, details)
    if code == 409:
        return ConflictError(message, details)
    if code in (400, 422):
        return InvalidObjectError(message, details)
    return ClusterError(code, message, details)


@dataclass(frozen=True)
class ObjectRef:
    """Identifies one object: apiVersion, kind, name and namespace."""

    api_version: str
    kind: str
    name: str
    namespace: str = ""

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> ObjectRef:
        metadata = obj.get("metadata") or {}
        return cls(
            api_version=obj.get("apiVersion", ""),
            kind=obj.get("kind", ""),
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", "") or "",
        )

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


class ClusterStore(Protocol):
    """
    Unstructured object access to one cluster.

    Implementations raise NotFoundError, ConflictError (stale
    resourceVersion), InvalidObjectError (rejected or unknown kind) or
    ClusterError. `dry_run=True` asks the server to validate and return the
    result without persisting it.

    For kinds with a status subresource, `update` ignores `.status` and
    `update_status` writes only `.status`, both checking resourceVersion.
    """

    async def get(self, ref: ObjectRef) -> dict[str, Any]: ...

    async def create(self, obj: dict[str, Any], dry_run: bool = False) -> dict[str, Any]: ...

    async def update(self, obj: dict[str, Any], dry_run: bool = False) -> dict[str, Any]: ...

    async def update_status(self, obj: dict[str, Any]) -> dict[str, Any]: ...

    async def delete(self, ref: ObjectRef) -> None: ...

    async def list(
        self,
        api_version: str,
        kind: str,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]: ...

    async def close(self) -> None: ...

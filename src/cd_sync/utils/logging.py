# ABOUTME: Structured logging configuration with correlation IDs and audit trail
# ABOUTME: Uses structlog for JSON-formatted logs tied to one sync pass or admin request

"""
Structured logging with correlation IDs and audit trail.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module sets up logging for the engine. It provides:

1. STRUCTURED LOGGING: key/value events instead of free text
2. CORRELATION IDs: every log line of one sync pass shares an ID
3. AUDIT LOGGING: every cluster mutation is recorded as a JSON line

=============================================================================
WHY CORRELATION IDs?
=============================================================================

Dozens of Applications sync concurrently on one event loop, so their log
lines interleave:

    10:00:01 Resolved manifests count=3
    10:00:01 Resolved manifests count=12
    10:00:02 Applied object ref=Deployment/web/web

Which pass applied the Deployment? With a correlation ID (and the bound
application key) the answer is in every line:

    10:00:01 [a1b2c3d4] application=web/default Resolved manifests count=3
    10:00:01 [e5f6a7b8] application=api/default Resolved manifests count=12
    10:00:02 [a1b2c3d4] application=web/default Applied object ref=Deployment/web/web

=============================================================================
HOW CONTEXT VARIABLES WORK
=============================================================================

ContextVar values are per-asyncio-task. Each scheduler task, webhook
delivery and admin request runs on its own task, so setting the ID at the
start of a pass never leaks into another Application's pass.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """
    Get current correlation ID or generate new one.

    Code running outside a pass (startup, shutdown) still gets an ID so its
    logs are correlatable.

    Returns:
        8-character correlation ID string.
    """
    cid = correlation_id.get()
    if not cid:
        cid = str(uuid.uuid4())[:8]
        correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    """
    Set correlation ID for current context.

    Args:
        cid: The correlation ID to set. An empty string makes the next
             get_correlation_id() call generate a fresh one.
    """
    correlation_id.set(cid)


def new_correlation_id() -> str:
    """Start a fresh correlation ID (one per sync pass)."""
    cid = str(uuid.uuid4())[:8]
    correlation_id.set(cid)
    return cid


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """
    Structlog processor adding the correlation ID to every event.

    Args:
        logger: The structlog wrapped logger (unused but required by API)
        method_name: The logging method name (unused but required by API)
        event_dict: Dictionary containing log event data to enrich

    Returns:
        The event_dict with "correlation_id" field added.
    """
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure structured logging.

    Call it ONCE at startup; calling it again reconfigures logging.

    PROCESSOR PIPELINE:
    -------------------
    1. merge_contextvars: adds values bound with bind_contextvars
       (the engine binds application=<name/namespace> per pass)
    2. add_log_level: adds "level"
    3. TimeStamper: adds ISO-format timestamp
    4. add_correlation_id: adds our correlation ID
    5. Renderer: JSON (production) or colored console (development)

    Args:
        level: "DEBUG", "INFO", "WARNING", "ERROR" or "CRITICAL"
        json_output: If True, output JSON lines for log aggregators.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


class AuditLogger:
    """
    Audit trail of cluster mutations and admin operations.

    WHAT WE LOG:
    ------------
    - every create / update issued by the Applier
    - every orphan deletion issued by garbage collection
    - admin tool calls, including the ones safety guards blocked

    Each entry records timestamp, correlation_id, action, target, result
    and optional details:

    {"timestamp": "2024-01-15T10:30:00+00:00", "correlation_id": "a1b2c3d4",
     "action": "create", "target": "Deployment/web/web", "result": "success",
     "details": {"application": "web/default", "cluster": "default"}}

    TWO OUTPUT MODES:
    -----------------
    1. FILE: append JSON lines to `log_path`
    2. STRUCTLOG: emit an "audit" event through the configured pipeline
    """

    def __init__(self, log_path: Path | None = None) -> None:
        """
        Initialize audit logger.

        Args:
            log_path: Path to audit log file, or None to log via structlog.
                     The parent directory must exist; entries are appended.
        """
        self._log_path = log_path
        self._logger = structlog.get_logger("audit")

    def log(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Log an auditable action.

        Args:
            action: Operation performed ("create", "prune", "sync_application", ...)
            target: Object or Application affected
            result: "success", "blocked" or "error"
            details: Additional context
        """
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "correlation_id": get_correlation_id(),
            "action": action,
            "target": target,
            "result": result,
        }

        if details:
            entry["details"] = details

        if self._log_path:
            with self._log_path.open("a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        else:
            self._logger.info(
                "audit",
                action=action,
                target=target,
                result=result,
                details=details,
            )

    def log_read(self, action: str, target: str) -> None:
        self.log(action, target, "success")

    def log_write(
        self,
        action: str,
        target: str,
        result: str = "success",
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Log a cluster mutation or a write-level admin operation.

        Example:
            audit_logger.log_write(
                "update", "Deployment/web/web", details={"application": "web/default"}
            )
        """
        self.log(action, target, result, details)

    def log_blocked(self, action: str, target: str, reason: str) -> None:
        """Log an admin operation refused by the safety guard."""
        self.log(action, target, "blocked", {"reason": reason})

    def log_error(self, action: str, target: str, error: str) -> None:
        """Log an operation that failed with an error."""
        self.log(action, target, "error", {"error": error})

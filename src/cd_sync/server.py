# ABOUTME: FastMCP admin server for the sync engine and main entry point
# ABOUTME: Exposes forced sync, status inspection and clearing tools behind safety guards

"""cd-sync admin server - inspect and drive the sync engine."""

from __future__ import annotations

import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
from mcp.server.fastmcp import Context, FastMCP
from pydantic import BaseModel, Field

from cd_sync.config import EngineSettings, load_settings
from cd_sync.controller import Runtime, build_runtime
from cd_sync.errors import SyncError
from cd_sync.utils.logging import AuditLogger, configure_logging, set_correlation_id
from cd_sync.utils.safety import SafetyGuard

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

MCPContext = Context[Any, Any]
logger = structlog.get_logger(__name__)

# Global state (initialized in lifespan)
_settings: EngineSettings | None = None
_runtime: Runtime | None = None
_safety_guard: SafetyGuard | None = None


@asynccontextmanager
async def lifespan(_server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    """Build the runtime, schedule every existing Application, tear down on exit."""
    global _settings, _runtime, _safety_guard

    _settings = load_settings()
    configure_logging(level=_settings.log_level, json_output=_settings.json_logs)
    logger.info("Starting cd-sync admin server")

    _safety_guard = SafetyGuard(_settings.security)
    _runtime = await build_runtime(_settings)

    for app in await _runtime.repository.list():
        try:
            await _runtime.reconciler.reconcile(app.namespace, app.name)
        except SyncError as e:
            logger.error("Initial reconcile failed", application=app.key, error=str(e))

    yield {"settings": _settings, "runtime": _runtime}

    await _runtime.close()
    _runtime = None
    logger.info("cd-sync admin server stopped")


mcp = FastMCP("cd-sync", lifespan=lifespan)


def get_settings() -> EngineSettings:
    if not _settings:
        raise RuntimeError("Server not initialized")
    return _settings


def get_runtime() -> Runtime:
    if not _runtime:
        raise RuntimeError("Server not initialized")
    return _runtime


def get_safety_guard() -> SafetyGuard:
    if not _safety_guard:
        raise RuntimeError("Server not initialized")
    return _safety_guard


def get_audit_logger() -> AuditLogger:
    return get_runtime().audit


def _request_id(ctx: MCPContext) -> str:
    return str(ctx.request_id) if hasattr(ctx, "request_id") else ""


class ApplicationParams(BaseModel):
    """Identifies one Application."""

    name: str = Field(description="Application name")
    namespace: str = Field(default="default", description="Application namespace")


@mcp.tool()
async def sync_application(params: ApplicationParams, ctx: MCPContext) -> str:
    """
    Run a forced sync pass now.

    Drift is applied even when the Application has autoSync disabled.
    Objects that left git are garbage-collected as in any pass.
    """
    set_correlation_id(_request_id(ctx))
    key = f"{params.name}/{params.namespace}"

    blocked = get_safety_guard().check_write_operation("sync_application", key)
    if blocked:
        get_audit_logger().log_blocked("sync_application", key, blocked.reason)
        return blocked.format_message()

    runtime = get_runtime()
    try:
        app = await runtime.repository.get(params.namespace, params.name)
        app.set_defaults(get_settings().default_sync_check_period)
        result = await runtime.engine.sync(app, forced=True)
        await runtime.repository.save_status(app)
    except SyncError as e:
        get_audit_logger().log_error("sync_application", key, str(e))
        return f"Sync failed for '{key}': {e}"

    get_audit_logger().log_write(
        "sync_application",
        key,
        details={"applied": len(result.applied), "pruned": len(result.pruned)},
    )
    lines = [f"Sync complete for '{key}'", f"Status: {result.status}", ""]
    lines.extend(f"  applied: {ref}" for ref in result.applied)
    lines.extend(f"  pruned: {ref}" for ref in result.pruned)
    if not result.applied and not result.pruned:
        lines.append("  no changes")
    return "\n".join(lines)


@mcp.tool()
async def get_sync_status(params: ApplicationParams, ctx: MCPContext) -> str:
    """Show the last sync status and scheduling state of an Application."""
    set_correlation_id(_request_id(ctx))
    key = f"{params.name}/{params.namespace}"
    get_safety_guard().check_read_operation("get_sync_status")

    runtime = get_runtime()
    try:
        app = await runtime.repository.get(params.namespace, params.name)
    except SyncError as e:
        get_audit_logger().log_error("get_sync_status", key, str(e))
        return str(e)

    get_audit_logger().log_read("get_sync_status", key)
    period = runtime.scheduler.period(app.key)
    time_check = app.sync.time_check.isoformat() if app.sync.time_check else "never"
    return (
        f"Application: {app.key}\n"
        f"Source: {app.source.repo_url} path={app.source.path} "
        f"revision={app.source.target_revision} type={app.source.type}\n"
        f"Destination: {app.destination.name or 'default'}/{app.target_namespace}\n"
        f"Auto sync: {app.sync_policy.auto_sync}\n"
        f"Status: {app.sync.status} (checked {time_check})\n"
        f"Scheduled: {'every %ss' % int(period) if period else 'no'}"
    )


@mcp.tool()
async def list_deploy_resources(params: ApplicationParams, ctx: MCPContext) -> str:
    """List the objects an Application currently owns."""
    set_correlation_id(_request_id(ctx))
    key = f"{params.name}/{params.namespace}"
    get_safety_guard().check_read_operation("list_deploy_resources")

    runtime = get_runtime()
    try:
        app = await runtime.repository.get(params.namespace, params.name)
        records = await runtime.engine.tracker.list(app)
    except SyncError as e:
        get_audit_logger().log_error("list_deploy_resources", key, str(e))
        return str(e)

    get_audit_logger().log_read("list_deploy_resources", key)
    if not records:
        return f"No objects tracked for '{key}'."
    lines = [f"{len(records)} object(s) tracked for '{key}':", ""]
    for record in sorted(records, key=lambda r: r.key):
        lines.append(f"- {record.api_version} {record.kind} {record.namespace}/{record.name}")
    return "\n".join(lines)


class ListScheduledParams(BaseModel):
    """Parameters for list_scheduled_applications tool."""

    namespace: str | None = Field(default=None, description="Only show this namespace")


@mcp.tool()
async def list_scheduled_applications(params: ListScheduledParams, ctx: MCPContext) -> str:
    """List Applications with an active periodic sync task."""
    set_correlation_id(_request_id(ctx))
    get_safety_guard().check_read_operation("list_scheduled_applications")

    scheduler = get_runtime().scheduler
    keys = [
        k
        for k in scheduler.keys()
        if params.namespace is None or k.endswith(f"/{params.namespace}")
    ]
    if not keys:
        return "No applications scheduled."

    lines = [f"{len(keys)} application(s) scheduled:", ""]
    for key in keys:
        app = scheduler.application(key)
        status = app.sync.status if app else "Unknown"
        lines.append(f"- {key} every {int(scheduler.period(key) or 0)}s status={status}")
    return "\n".join(lines)


class ClearApplicationParams(BaseModel):
    """Parameters for clear_application tool."""

    name: str = Field(description="Application name")
    namespace: str = Field(default="default", description="Application namespace")
    confirm: bool = Field(default=False, description="Must be true to proceed")
    confirm_name: str | None = Field(
        default=None, description="Must equal '<name>/<namespace>' to proceed"
    )


@mcp.tool()
async def clear_application(params: ClearApplicationParams, ctx: MCPContext) -> str:
    """
    Stop periodic sync and delete every object the Application owns.

    DESTRUCTIVE: requires confirm=true and confirm_name matching the
    Application key. The Application resource itself is left in place.
    """
    set_correlation_id(_request_id(ctx))
    key = f"{params.name}/{params.namespace}"

    check = get_safety_guard().check_destructive_operation(
        "clear_application", key, confirmed=params.confirm, confirm_name=params.confirm_name
    )
    if check:
        get_audit_logger().log_blocked("clear_application", key, check.format_message())
        return check.format_message()

    runtime = get_runtime()
    try:
        app = await runtime.repository.get(params.namespace, params.name)
        await runtime.reconciler.finalize(app)
    except SyncError as e:
        get_audit_logger().log_error("clear_application", key, str(e))
        return f"Clear failed for '{key}': {e}"

    get_audit_logger().log_write("clear_application", key)
    return (
        f"Cleared '{key}'. Periodic sync is stopped until the Application is "
        f"reconciled again."
    )


@mcp.resource("cdsync://settings")
async def get_settings_resource() -> str:
    """Get current engine and safety settings."""
    settings = get_settings()
    sec = settings.security
    return (
        "Engine Settings:\n"
        f"  Default sync check period: {settings.default_sync_check_period}s\n"
        f"  Call timeout: {settings.call_timeout}s\n"
        f"  Serialize passes: {settings.serialize_passes}\n"
        f"  Extra git hosts: {settings.git.providers or 'none'}\n"
        "Security Settings:\n"
        f"  Read-only mode: {sec.read_only}\n"
        f"  Destructive operations disabled: {sec.disable_destructive}\n"
        f"  Rate limit: {sec.rate_limit_calls} calls per {sec.rate_limit_window}s"
    )


def main() -> None:
    """Run the cd-sync admin server."""
    configure_logging(level="INFO")
    logger.info("cd-sync admin server starting")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Server interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("Server error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()

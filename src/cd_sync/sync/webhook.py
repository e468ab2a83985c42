# ABOUTME: Routes incoming git webhooks to pluggable handlers
# ABOUTME: Push events for an Application's repository trigger a forced sync pass

"""Webhook dispatch."""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING, Protocol

import structlog

from cd_sync.errors import SyncError, WebhookError
from cd_sync.git.provider import parse_repo_url
from cd_sync.git.webhook import EVENT_PUSH, parse_webhook, validate_signature

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable, Mapping

    from cd_sync.git.webhook import WebhookEvent
    from cd_sync.models import Application
    from cd_sync.sync.engine import SyncResult
    from cd_sync.sync.scheduler import Syncer

logger = structlog.get_logger(__name__)


class WebhookPlugin(Protocol):
    async def handle(self, event: WebhookEvent, app: Application) -> None: ...


class ApplicationLoader(Protocol):
    async def get(self, namespace: str, name: str) -> Application: ...


def same_repository(left: str, right: str) -> bool:
    """True when two repository URLs name the same repository."""
    try:
        return parse_repo_url(left).same_repo(parse_repo_url(right))
    except ValueError:
        return False


class PushSyncPlugin:
    """Force a sync when the Application's own repository is pushed to."""

    def __init__(
        self,
        engine: Syncer,
        on_synced: Callable[[Application, SyncResult], Awaitable[None]] | None = None,
    ) -> None:
        self._engine = engine
        self._on_synced = on_synced

    async def handle(self, event: WebhookEvent, app: Application) -> None:
        if event.event_type != EVENT_PUSH:
            return
        if not same_repository(event.repo_url, app.source.repo_url):
            logger.info(
                "Ignoring push for another repository",
                application=app.key,
                repository=event.repo_url,
            )
            return

        logger.info("Push received, forcing sync", application=app.key, ref=event.ref)
        result = await self._engine.sync(app, forced=True)
        if self._on_synced is not None:
            await self._on_synced(app, result)


class WebhookDispatcher:
    """
    Event-type keyed plugin registry.

    Example:
        >>> dispatcher = WebhookDispatcher(repository)
        >>> dispatcher.add_plugin([EVENT_PUSH], PushSyncPlugin(engine))
        >>> await dispatcher.dispatch("default", "web", headers, body)
    """

    def __init__(self, applications: ApplicationLoader) -> None:
        self._applications = applications
        self._plugins: dict[str, list[WebhookPlugin]] = defaultdict(list)

    def add_plugin(self, event_types: Iterable[str], plugin: WebhookPlugin) -> None:
        for event_type in event_types:
            self._plugins[event_type].append(plugin)

    def plugins(self, event_type: str) -> list[WebhookPlugin]:
        return list(self._plugins.get(event_type, []))

    async def handle_event(self, event: WebhookEvent, app: Application) -> None:
        """
        Run every plugin registered for the event type.

        All plugins run even when one fails; the last failure is re-raised.
        """
        last_error: SyncError | None = None
        for plugin in self.plugins(event.event_type):
            try:
                await plugin.handle(event, app)
            except SyncError as e:
                logger.error(
                    "Webhook plugin failed",
                    plugin=type(plugin).__name__,
                    application=app.key,
                    error=str(e),
                )
                last_error = e
        if last_error is not None:
            raise last_error

    async def dispatch(
        self,
        namespace: str,
        name: str,
        headers: Mapping[str, str],
        body: bytes,
    ) -> WebhookEvent | None:
        """
        Handle one webhook delivery addressed to Application `namespace/name`.

        Returns the parsed event, or None when the event type is ignored.

        Raises:
            WebhookError: Unknown Application, no webhook secret yet, bad
                signature or bad payload.
            SyncError: Whatever the plugins raised.
        """
        try:
            app = await self._applications.get(namespace, name)
        except SyncError as e:
            raise WebhookError(f"Cannot get Application {namespace}/{name}", str(e)) from e

        if not app.webhook_secret:
            raise WebhookError(f"Application {app.key} has no webhook secret yet")
        validate_signature(app.webhook_secret, headers, body)

        event = parse_webhook(headers, body)
        if event is None:
            return None

        await self.handle_event(event, app)
        return event

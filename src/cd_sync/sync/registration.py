# ABOUTME: Keeps one repository webhook per Application pointed at the webhook receiver
# ABOUTME: Generates the webhook secret and maintains the webhook-registered and ready conditions

"""
Webhook registration.

`WebhookRegistrar.ensure(app)` runs on every reconcile and only touches the
in-memory Application; the reconciler writes the status afterwards.

    status.secrets empty          -> generate a 20 character secret
    no git token                  -> webhook-registered False (noGitToken)
    no webhook_base_url           -> webhook-registered False (noWebhookAddress)
    webhook-registered True       -> nothing to do, unless the secret was
                                     just generated
    otherwise                     -> drop hooks already pointing at our URL
                                     (their secret may be stale), register a
                                     fresh one, webhook-registered True

Git host failures land in the condition (reason + message) rather than
failing the reconcile; the next reconcile tries again.

ready is True once the secret exists and webhook-registered is True or was
skipped for lack of a token.
"""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING

import httpx
import structlog
from tenacity import RetryError

from cd_sync.errors import SourceResolutionError
from cd_sync.git.client import GitProviderError
from cd_sync.models import (
    CONDITION_READY,
    CONDITION_WEBHOOK_REGISTERED,
    REASON_NO_GIT_TOKEN,
)
from cd_sync.sync.manifest import resolve_token

if TYPE_CHECKING:
    from cd_sync.cluster.store import ClusterStore
    from cd_sync.git.provider import GitProvider, ProviderRegistry
    from cd_sync.models import Application

logger = structlog.get_logger(__name__)

REASON_NO_WEBHOOK_ADDRESS = "noWebhookAddress"
REASON_GIT_CLIENT_ERROR = "gitCliErr"
REASON_REGISTER_FAILED = "webhookRegisterFailed"

SECRET_LENGTH = 20

_GIT_ERRORS = (GitProviderError, httpx.HTTPError, RetryError)


def generate_secret() -> str:
    return secrets.token_hex(SECRET_LENGTH // 2)


class WebhookRegistrar:
    """
    Example:
        >>> registrar = WebhookRegistrar(providers, store, "https://cd.example.com")
        >>> changed = await registrar.ensure(app)   # before writing status
        >>> await registrar.remove(app)             # while finalizing
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        store: ClusterStore,
        base_url: str = "",
    ) -> None:
        self._providers = providers
        self._store = store
        self._base_url = base_url.rstrip("/")

    def address(self, app: Application) -> str:
        """URL the git host posts events for `app` to; empty when unconfigured."""
        if not self._base_url:
            return ""
        return f"{self._base_url}/webhook/{app.namespace}/{app.name}"

    async def _provider(self, app: Application) -> GitProvider:
        token = await resolve_token(app, self._store)
        try:
            return self._providers.create(app.source.repo_url, token)
        except (LookupError, ValueError) as e:
            raise SourceResolutionError(
                f"No git provider for {app.source.repo_url}", str(e)
            ) from e

    async def ensure(self, app: Application) -> bool:
        """
        Bring the secret and both conditions up to date.

        Returns True when the status changed and needs writing.
        """
        changed = False
        if not app.webhook_secret:
            app.webhook_secret = generate_secret()
            changed = True

        # A new secret invalidates whatever hook was registered before
        changed |= await self._register(app, force=changed)

        registered = app.get_condition(CONDITION_WEBHOOK_REGISTERED)
        ready = registered is not None and (
            registered.is_true or registered.reason == REASON_NO_GIT_TOKEN
        )
        changed |= app.set_condition(CONDITION_READY, bool(app.webhook_secret) and ready)
        return changed

    async def _register(self, app: Application, force: bool = False) -> bool:
        if app.source.token is None:
            return app.set_condition(
                CONDITION_WEBHOOK_REGISTERED,
                False,
                reason=REASON_NO_GIT_TOKEN,
                message="Skipped to register webhook",
            )
        address = self.address(app)
        if not address:
            return app.set_condition(
                CONDITION_WEBHOOK_REGISTERED,
                False,
                reason=REASON_NO_WEBHOOK_ADDRESS,
                message="Webhook receiver address is not configured",
            )
        current = app.get_condition(CONDITION_WEBHOOK_REGISTERED)
        if current is not None and current.is_true and not force:
            return False

        log = logger.bind(application=app.key, url=address)
        try:
            provider = await self._provider(app)
        except SourceResolutionError as e:
            log.warning("Cannot build git client for webhook", error=str(e))
            return app.set_condition(
                CONDITION_WEBHOOK_REGISTERED, False, REASON_GIT_CLIENT_ERROR, str(e)
            )

        try:
            async with provider:
                for hook in await provider.list_webhooks():
                    if hook.url == address:
                        await provider.delete_webhook(hook.id)
                await provider.register_webhook(address, app.webhook_secret)
        except _GIT_ERRORS as e:
            log.warning("Webhook registration failed", error=str(e))
            return app.set_condition(
                CONDITION_WEBHOOK_REGISTERED, False, REASON_REGISTER_FAILED, str(e)
            )

        log.info("Webhook registered")
        return app.set_condition(CONDITION_WEBHOOK_REGISTERED, True)

    async def remove(self, app: Application) -> int:
        """
        Delete every hook on the repository pointing at `app`'s address.

        Returns the number deleted. Failures are logged and the count so far
        is returned, so deletion goes ahead when the git host is unreachable.
        """
        address = self.address(app)
        if app.source.token is None or not address:
            return 0

        log = logger.bind(application=app.key, url=address)
        removed = 0
        try:
            provider = await self._provider(app)
            async with provider:
                for hook in await provider.list_webhooks():
                    if hook.url == address:
                        await provider.delete_webhook(hook.id)
                        removed += 1
        except (SourceResolutionError, *_GIT_ERRORS) as e:
            log.warning("Webhook cleanup failed", error=str(e), removed=removed)
            return removed
        log.info("Webhooks removed", removed=removed)
        return removed

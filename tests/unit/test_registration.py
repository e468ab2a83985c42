# ABOUTME: Unit tests for repository webhook registration
# ABOUTME: Tests secret generation, webhook-registered and ready conditions, and hook cleanup

from __future__ import annotations

import httpx
import pytest

from cd_sync.git.client import GitProviderError
from cd_sync.git.provider import ProviderRegistry
from cd_sync.models import (
    CONDITION_READY,
    CONDITION_WEBHOOK_REGISTERED,
    REASON_NO_GIT_TOKEN,
    Application,
    GitToken,
)
from cd_sync.sync.registration import (
    REASON_GIT_CLIENT_ERROR,
    REASON_NO_WEBHOOK_ADDRESS,
    REASON_REGISTER_FAILED,
    SECRET_LENGTH,
    WebhookRegistrar,
    generate_secret,
)
from fakes import FakeClusterStore, FakeGitProvider

BASE_URL = "https://cd.example.com"
ADDRESS = f"{BASE_URL}/webhook/default/guestbook"


@pytest.fixture
def git_provider() -> FakeGitProvider:
    return FakeGitProvider()


@pytest.fixture
def providers(git_provider: FakeGitProvider) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register("github.com", lambda location, **kwargs: git_provider)
    return registry


@pytest.fixture
def registrar(providers: ProviderRegistry, store: FakeClusterStore) -> WebhookRegistrar:
    return WebhookRegistrar(providers, store, BASE_URL + "/")


@pytest.fixture
def app(sample_application: Application) -> Application:
    sample_application.source.token = GitToken(value="ghp_secret")
    return sample_application


def condition(app: Application, type_: str):
    found = app.get_condition(type_)
    assert found is not None
    return found


@pytest.mark.unit
class TestSecret:
    """Tests for webhook secret generation."""

    def test_length(self):
        assert len(generate_secret()) == SECRET_LENGTH

    def test_unique(self):
        assert generate_secret() != generate_secret()


@pytest.mark.unit
class TestEnsure:
    """Tests for WebhookRegistrar.ensure."""

    def test_address(self, registrar: WebhookRegistrar, app: Application):
        assert registrar.address(app) == ADDRESS

    async def test_registers_hook(
        self, registrar: WebhookRegistrar, app: Application, git_provider: FakeGitProvider
    ):
        assert await registrar.ensure(app) is True

        assert len(app.webhook_secret) == SECRET_LENGTH
        assert list(git_provider.hooks.values()) == [(ADDRESS, app.webhook_secret)]
        assert condition(app, CONDITION_WEBHOOK_REGISTERED).is_true
        assert condition(app, CONDITION_READY).is_true
        assert git_provider.closed is True

    async def test_second_ensure_changes_nothing(
        self, registrar: WebhookRegistrar, app: Application, git_provider: FakeGitProvider
    ):
        await registrar.ensure(app)
        hooks = dict(git_provider.hooks)

        assert await registrar.ensure(app) is False
        assert git_provider.hooks == hooks

    async def test_no_token_skips_registration(
        self,
        registrar: WebhookRegistrar,
        sample_application: Application,
        git_provider: FakeGitProvider,
    ):
        assert await registrar.ensure(sample_application) is True

        registered = condition(sample_application, CONDITION_WEBHOOK_REGISTERED)
        assert registered.is_true is False
        assert registered.reason == REASON_NO_GIT_TOKEN
        assert condition(sample_application, CONDITION_READY).is_true
        assert sample_application.webhook_secret
        assert git_provider.hooks == {}

    async def test_no_address(
        self,
        providers: ProviderRegistry,
        store: FakeClusterStore,
        app: Application,
        git_provider: FakeGitProvider,
    ):
        registrar = WebhookRegistrar(providers, store)

        await registrar.ensure(app)

        assert registrar.address(app) == ""
        assert condition(app, CONDITION_WEBHOOK_REGISTERED).reason == REASON_NO_WEBHOOK_ADDRESS
        assert condition(app, CONDITION_READY).is_true is False
        assert git_provider.hooks == {}

    async def test_replaces_stale_hook(
        self, registrar: WebhookRegistrar, app: Application, git_provider: FakeGitProvider
    ):
        git_provider.hooks = {7: (ADDRESS, "old"), 8: ("https://other.example.com/hook", "x")}

        await registrar.ensure(app)

        assert 7 not in git_provider.hooks
        assert git_provider.hooks[8] == ("https://other.example.com/hook", "x")
        assert (ADDRESS, app.webhook_secret) in git_provider.hooks.values()

    async def test_register_failure_recorded(
        self, registrar: WebhookRegistrar, app: Application, git_provider: FakeGitProvider
    ):
        git_provider.fail_hooks = GitProviderError(403, "Forbidden", "hooks")

        assert await registrar.ensure(app) is True

        registered = condition(app, CONDITION_WEBHOOK_REGISTERED)
        assert registered.is_true is False
        assert registered.reason == REASON_REGISTER_FAILED
        assert "403" in registered.message
        assert condition(app, CONDITION_READY).is_true is False

    async def test_transport_failure_recorded(
        self, registrar: WebhookRegistrar, app: Application, git_provider: FakeGitProvider
    ):
        git_provider.fail_hooks = httpx.ConnectError("unreachable")

        await registrar.ensure(app)

        assert condition(app, CONDITION_WEBHOOK_REGISTERED).reason == REASON_REGISTER_FAILED

    async def test_failed_registration_retried(
        self, registrar: WebhookRegistrar, app: Application, git_provider: FakeGitProvider
    ):
        git_provider.fail_hooks = GitProviderError(500, "Server Error", "hooks")
        await registrar.ensure(app)
        git_provider.fail_hooks = None

        assert await registrar.ensure(app) is True
        assert condition(app, CONDITION_WEBHOOK_REGISTERED).is_true
        assert condition(app, CONDITION_READY).is_true

    async def test_unknown_host_is_client_error(
        self, store: FakeClusterStore, app: Application
    ):
        registrar = WebhookRegistrar(ProviderRegistry(), store, BASE_URL)

        await registrar.ensure(app)

        assert condition(app, CONDITION_WEBHOOK_REGISTERED).reason == REASON_GIT_CLIENT_ERROR

    async def test_missing_token_secret_is_client_error(
        self, registrar: WebhookRegistrar, app: Application
    ):
        app.source.token = GitToken(secret_name="git-token", secret_key="token")

        await registrar.ensure(app)

        assert condition(app, CONDITION_WEBHOOK_REGISTERED).reason == REASON_GIT_CLIENT_ERROR

    async def test_new_secret_forces_registration(
        self, registrar: WebhookRegistrar, app: Application, git_provider: FakeGitProvider
    ):
        await registrar.ensure(app)
        app.webhook_secret = ""

        await registrar.ensure(app)

        assert list(git_provider.hooks.values()) == [(ADDRESS, app.webhook_secret)]


@pytest.mark.unit
class TestRemove:
    """Tests for WebhookRegistrar.remove."""

    async def test_removes_matching_hooks(
        self, registrar: WebhookRegistrar, app: Application, git_provider: FakeGitProvider
    ):
        git_provider.hooks = {1: (ADDRESS, "s"), 2: ("https://other.example.com", "s")}

        assert await registrar.remove(app) == 1
        assert list(git_provider.hooks) == [2]

    async def test_without_token_does_nothing(
        self,
        registrar: WebhookRegistrar,
        sample_application: Application,
        git_provider: FakeGitProvider,
    ):
        git_provider.hooks = {1: (ADDRESS, "s")}

        assert await registrar.remove(sample_application) == 0
        assert list(git_provider.hooks) == [1]

    async def test_failure_does_not_raise(
        self, registrar: WebhookRegistrar, app: Application, git_provider: FakeGitProvider
    ):
        git_provider.hooks = {1: (ADDRESS, "s")}
        git_provider.fail_hooks = GitProviderError(502, "Bad Gateway", "hooks")

        assert await registrar.remove(app) == 0
        assert list(git_provider.hooks) == [1]

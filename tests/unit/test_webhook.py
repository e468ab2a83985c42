# ABOUTME: Unit tests for webhook parsing, signature validation and plugin dispatch
# ABOUTME: Tests GitHub/GitLab payloads, push-triggered forced syncs and error propagation

from __future__ import annotations

import hashlib
import hmac
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from cd_sync.errors import ApplyError, SourceResolutionError, SyncError, WebhookError
from cd_sync.git.webhook import (
    EVENT_PULL_REQUEST,
    EVENT_PUSH,
    WebhookEvent,
    detect_provider,
    parse_webhook,
    validate_signature,
)
from cd_sync.models import Application
from cd_sync.sync.webhook import PushSyncPlugin, WebhookDispatcher, same_repository

GITHUB_PUSH = {
    "ref": "refs/heads/main",
    "after": "abc123",
    "repository": {"html_url": "https://github.com/example/deploy"},
    "sender": {"login": "octocat"},
}

GITLAB_PUSH = {
    "ref": "refs/heads/main",
    "checkout_sha": "def456",
    "user_username": "root",
    "project": {"web_url": "https://gitlab.com/group/deploy"},
}


def github_headers(event: str = "push", secret: str | None = None, body: bytes = b"") -> dict:
    headers = {"X-GitHub-Event": event, "Content-Type": "application/json"}
    if secret is not None:
        digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        headers["X-Hub-Signature-256"] = f"sha256={digest}"
    return headers


def push_event(repo_url: str = "https://github.com/example/deploy") -> WebhookEvent:
    return WebhookEvent(event_type=EVENT_PUSH, provider="github", repo_url=repo_url)


@pytest.mark.unit
class TestParseWebhook:
    """Tests for parse_webhook."""

    def test_github_push(self):
        event = parse_webhook(github_headers(), json.dumps(GITHUB_PUSH).encode())

        assert event == WebhookEvent(
            event_type=EVENT_PUSH,
            provider="github",
            repo_url="https://github.com/example/deploy",
            ref="refs/heads/main",
            sha="abc123",
            sender="octocat",
        )

    def test_github_pull_request(self):
        payload = {
            "pull_request": {"head": {"ref": "feature", "sha": "fff"}},
            "repository": {"clone_url": "https://github.com/example/deploy.git"},
        }

        event = parse_webhook(github_headers("pull_request"), json.dumps(payload).encode())

        assert event is not None
        assert event.event_type == EVENT_PULL_REQUEST
        assert event.ref == "feature"
        assert event.repo_url == "https://github.com/example/deploy.git"

    def test_gitlab_push(self):
        event = parse_webhook({"X-Gitlab-Event": "Push Hook"}, json.dumps(GITLAB_PUSH).encode())

        assert event is not None
        assert event.provider == "gitlab"
        assert event.event_type == EVENT_PUSH
        assert event.sha == "def456"
        assert event.sender == "root"

    def test_gitlab_merge_request(self):
        payload = {
            "object_attributes": {"source_branch": "feature", "last_commit": {"id": "999"}},
            "user": {"username": "dev"},
            "project": {"git_http_url": "https://gitlab.com/group/deploy.git"},
        }

        headers = {"x-gitlab-event": "Merge Request Hook"}
        event = parse_webhook(headers, json.dumps(payload).encode())

        assert event is not None
        assert event.event_type == EVENT_PULL_REQUEST
        assert event.sha == "999"
        assert event.sender == "dev"

    def test_unhandled_event_returns_none(self):
        assert parse_webhook(github_headers("issues"), b"{}") is None

    def test_unknown_provider(self):
        with pytest.raises(WebhookError, match="Unknown webhook provider"):
            parse_webhook({"Content-Type": "application/json"}, b"{}")

    def test_invalid_json(self):
        with pytest.raises(WebhookError, match="not valid JSON"):
            parse_webhook(github_headers(), b"{not json")

    def test_non_object_json(self):
        with pytest.raises(WebhookError, match="not a JSON object"):
            parse_webhook(github_headers(), b"[1, 2]")

    def test_detect_provider(self):
        assert detect_provider({"x-github-event": "push"}) == "github"
        assert detect_provider({"X-Gitlab-Event": "Push Hook"}) == "gitlab"
        assert detect_provider({}) is None


@pytest.mark.unit
class TestValidateSignature:
    """Tests for validate_signature."""

    def test_github_valid(self):
        body = b'{"ref": "refs/heads/main"}'
        validate_signature("s3cret", github_headers(secret="s3cret", body=body), body)

    def test_github_mismatch(self):
        body = b'{"ref": "refs/heads/main"}'
        headers = github_headers(secret="wrong", body=body)

        with pytest.raises(WebhookError, match="signature mismatch"):
            validate_signature("s3cret", headers, body)

    def test_github_missing_signature(self):
        with pytest.raises(WebhookError):
            validate_signature("s3cret", github_headers(), b"{}")

    def test_gitlab_token(self):
        headers = {"X-Gitlab-Event": "Push Hook", "X-Gitlab-Token": "s3cret"}
        validate_signature("s3cret", headers, b"{}")

        headers["X-Gitlab-Token"] = "nope"
        with pytest.raises(WebhookError, match="token mismatch"):
            validate_signature("s3cret", headers, b"{}")

    def test_unknown_provider(self):
        with pytest.raises(WebhookError):
            validate_signature("s3cret", {}, b"{}")


@pytest.mark.unit
class TestPushSyncPlugin:
    """Tests for PushSyncPlugin."""

    async def test_push_to_own_repository_forces_sync(self, sample_application: Application):
        engine = MagicMock()
        engine.sync = AsyncMock(return_value="result")
        on_synced = AsyncMock()

        await PushSyncPlugin(engine, on_synced=on_synced).handle(push_event(), sample_application)

        engine.sync.assert_awaited_once_with(sample_application, forced=True)
        on_synced.assert_awaited_once_with(sample_application, "result")

    async def test_push_to_other_repository_ignored(self, sample_application: Application):
        engine = MagicMock()
        engine.sync = AsyncMock()

        await PushSyncPlugin(engine).handle(
            push_event("https://github.com/example/other"), sample_application
        )

        engine.sync.assert_not_awaited()

    async def test_non_push_ignored(self, sample_application: Application):
        engine = MagicMock()
        engine.sync = AsyncMock()
        event = WebhookEvent(
            event_type=EVENT_PULL_REQUEST,
            provider="github",
            repo_url="https://github.com/example/deploy",
        )

        await PushSyncPlugin(engine).handle(event, sample_application)

        engine.sync.assert_not_awaited()

    def test_same_repository(self):
        assert same_repository(
            "https://github.com/example/deploy.git", "git@github.com:example/deploy"
        )
        assert not same_repository("https://github.com/example/deploy", "not a url")


@pytest.mark.unit
class TestWebhookDispatcher:
    """Tests for WebhookDispatcher."""

    @pytest.fixture
    def applications(self, sample_application: Application) -> MagicMock:
        sample_application.webhook_secret = "s3cret"
        loader = MagicMock()
        loader.get = AsyncMock(return_value=sample_application)
        return loader

    def test_plugins_by_event_type(self, applications: MagicMock):
        dispatcher = WebhookDispatcher(applications)
        plugin = MagicMock()

        dispatcher.add_plugin([EVENT_PUSH, EVENT_PULL_REQUEST], plugin)

        assert dispatcher.plugins(EVENT_PUSH) == [plugin]
        assert dispatcher.plugins(EVENT_PULL_REQUEST) == [plugin]
        assert dispatcher.plugins("tag") == []

    async def test_all_plugins_run_and_last_error_raised(
        self, applications: MagicMock, sample_application: Application
    ):
        first, second, third = MagicMock(), MagicMock(), MagicMock()
        first.handle = AsyncMock(side_effect=SourceResolutionError("first"))
        second.handle = AsyncMock()
        third.handle = AsyncMock(side_effect=ApplyError("third"))
        dispatcher = WebhookDispatcher(applications)
        for plugin in (first, second, third):
            dispatcher.add_plugin([EVENT_PUSH], plugin)

        with pytest.raises(ApplyError, match="third"):
            await dispatcher.handle_event(push_event(), sample_application)

        second.handle.assert_awaited_once()
        third.handle.assert_awaited_once()

    async def test_dispatch_runs_plugins(
        self, applications: MagicMock, sample_application: Application
    ):
        plugin = MagicMock()
        plugin.handle = AsyncMock()
        dispatcher = WebhookDispatcher(applications)
        dispatcher.add_plugin([EVENT_PUSH], plugin)

        body = json.dumps(GITHUB_PUSH).encode()

        event = await dispatcher.dispatch(
            "default", "guestbook", github_headers(secret="s3cret", body=body), body
        )

        assert event is not None
        applications.get.assert_awaited_once_with("default", "guestbook")
        plugin.handle.assert_awaited_once_with(event, sample_application)

    async def test_dispatch_validates_signature(self, applications: MagicMock):
        plugin = MagicMock()
        plugin.handle = AsyncMock()
        dispatcher = WebhookDispatcher(applications)
        dispatcher.add_plugin([EVENT_PUSH], plugin)
        body = json.dumps(GITHUB_PUSH).encode()

        with pytest.raises(WebhookError):
            await dispatcher.dispatch("default", "guestbook", github_headers(), body)
        plugin.handle.assert_not_awaited()

        await dispatcher.dispatch(
            "default", "guestbook", github_headers(secret="s3cret", body=body), body
        )
        plugin.handle.assert_awaited_once()

    async def test_dispatch_ignored_event(self, applications: MagicMock):
        dispatcher = WebhookDispatcher(applications)
        headers = github_headers("issues", secret="s3cret", body=b"{}")

        event = await dispatcher.dispatch("default", "guestbook", headers, b"{}")

        assert event is None

    async def test_dispatch_rejected_without_secret(
        self, applications: MagicMock, sample_application: Application
    ):
        sample_application.webhook_secret = ""
        plugin = MagicMock()
        plugin.handle = AsyncMock()
        dispatcher = WebhookDispatcher(applications)
        dispatcher.add_plugin([EVENT_PUSH], plugin)

        with pytest.raises(WebhookError, match="no webhook secret yet"):
            await dispatcher.dispatch(
                "default", "guestbook", github_headers(), json.dumps(GITHUB_PUSH).encode()
            )
        plugin.handle.assert_not_awaited()

    async def test_dispatch_unknown_application(self, applications: MagicMock):
        applications.get = AsyncMock(side_effect=SyncError("Application missing/default not found"))
        dispatcher = WebhookDispatcher(applications)

        with pytest.raises(WebhookError, match="Cannot get Application default/missing"):
            await dispatcher.dispatch("default", "missing", github_headers(), b"{}")

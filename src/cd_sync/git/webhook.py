# ABOUTME: Parses GitHub and GitLab webhook payloads and validates their signatures
# ABOUTME: Turns raw headers and body into a provider-neutral WebhookEvent

"""Webhook payload parsing and signature validation."""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from cd_sync.errors import WebhookError

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = structlog.get_logger(__name__)

EVENT_PUSH = "push"
EVENT_PULL_REQUEST = "pull_request"

_GITHUB_EVENTS = {"push": EVENT_PUSH, "pull_request": EVENT_PULL_REQUEST}
_GITLAB_EVENTS = {
    "Push Hook": EVENT_PUSH,
    "Tag Push Hook": EVENT_PUSH,
    "Merge Request Hook": EVENT_PULL_REQUEST,
}


@dataclass
class WebhookEvent:
    """Provider-neutral webhook event."""

    event_type: str
    provider: str
    repo_url: str
    ref: str = ""
    sha: str = ""
    sender: str = ""


def _lower_keys(headers: Mapping[str, str]) -> dict[str, str]:
    return {k.lower(): v for k, v in headers.items()}


def detect_provider(headers: Mapping[str, str]) -> str | None:
    lowered = _lower_keys(headers)
    if "x-github-event" in lowered:
        return "github"
    if "x-gitlab-event" in lowered:
        return "gitlab"
    return None


def validate_signature(secret: str, headers: Mapping[str, str], body: bytes) -> None:
    """
    Check the webhook came from the configured repository.

    GitHub signs the body with HMAC-SHA256 (X-Hub-Signature-256);
    GitLab echoes the shared token (X-Gitlab-Token).

    Raises:
        WebhookError: If the signature is missing or does not match.
    """
    lowered = _lower_keys(headers)
    provider = detect_provider(headers)

    if provider == "github":
        signature = lowered.get("x-hub-signature-256", "")
        expected = "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        if not signature or not hmac.compare_digest(signature, expected):
            raise WebhookError("Webhook signature mismatch", "X-Hub-Signature-256")
        return

    if provider == "gitlab":
        token = lowered.get("x-gitlab-token", "")
        if not token or not hmac.compare_digest(token, secret):
            raise WebhookError("Webhook token mismatch", "X-Gitlab-Token")
        return

    raise WebhookError("Unknown webhook provider", "no X-GitHub-Event or X-Gitlab-Event header")


def _github_event(event_type: str, payload: dict[str, Any]) -> WebhookEvent:
    repository = payload.get("repository") or {}
    if event_type == EVENT_PULL_REQUEST:
        pull = payload.get("pull_request") or {}
        head = pull.get("head") or {}
        ref, sha = head.get("ref", ""), head.get("sha", "")
    else:
        ref, sha = payload.get("ref", ""), payload.get("after", "")
    return WebhookEvent(
        event_type=event_type,
        provider="github",
        repo_url=repository.get("html_url") or repository.get("clone_url", ""),
        ref=ref,
        sha=sha,
        sender=(payload.get("sender") or {}).get("login", ""),
    )


def _gitlab_event(event_type: str, payload: dict[str, Any]) -> WebhookEvent:
    project = payload.get("project") or {}
    if event_type == EVENT_PULL_REQUEST:
        attrs = payload.get("object_attributes") or {}
        ref = attrs.get("source_branch", "")
        sha = (attrs.get("last_commit") or {}).get("id", "")
        sender = (payload.get("user") or {}).get("username", "")
    else:
        ref, sha = payload.get("ref", ""), payload.get("checkout_sha") or payload.get("after", "")
        sender = payload.get("user_username", "")
    return WebhookEvent(
        event_type=event_type,
        provider="gitlab",
        repo_url=project.get("web_url") or project.get("git_http_url", ""),
        ref=ref,
        sha=sha or "",
        sender=sender,
    )


def parse_webhook(headers: Mapping[str, str], body: bytes) -> WebhookEvent | None:
    """
    Parse a webhook delivery.

    Returns None for event types nobody handles (issues, comments, ...).

    Raises:
        WebhookError: If the provider is unknown or the body is not JSON.
    """
    lowered = _lower_keys(headers)
    provider = detect_provider(headers)
    if provider is None:
        raise WebhookError("Unknown webhook provider", "no X-GitHub-Event or X-Gitlab-Event header")

    try:
        payload = json.loads(body)
    except ValueError as e:
        raise WebhookError("Webhook body is not valid JSON", str(e)) from e
    if not isinstance(payload, dict):
        raise WebhookError("Webhook body is not a JSON object")

    if provider == "github":
        event_type = _GITHUB_EVENTS.get(lowered["x-github-event"])
        builder = _github_event
    else:
        event_type = _GITLAB_EVENTS.get(lowered["x-gitlab-event"])
        builder = _gitlab_event

    if event_type is None:
        logger.debug("Ignoring webhook event", provider=provider)
        return None
    return builder(event_type, payload)

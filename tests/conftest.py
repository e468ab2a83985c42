# ABOUTME: Pytest fixtures and configuration for cd-sync engine tests
# ABOUTME: Provides in-memory cluster stores, sample Applications and a wired sync engine

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from cd_sync.config import SecuritySettings
from cd_sync.models import (
    Application,
    ApplicationSource,
    Destination,
    SyncPolicy,
)
from cd_sync.sync.engine import SyncEngine
from cd_sync.sync.target import TargetResolver
from cd_sync.utils.logging import AuditLogger
from cd_sync.utils.safety import SafetyGuard
from fakes import FakeClusterStore, StaticResolver, config_map, deployment


@pytest.fixture
def mock_security_settings() -> SecuritySettings:
    """Create security settings for testing."""
    return SecuritySettings(
        read_only=False,
        disable_destructive=False,
        audit_log=None,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def read_only_security_settings() -> SecuritySettings:
    """Create read-only security settings for testing."""
    return SecuritySettings(
        read_only=True,
        disable_destructive=True,
        audit_log=None,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def safety_guard(mock_security_settings: SecuritySettings) -> SafetyGuard:
    """Create a safety guard for testing."""
    return SafetyGuard(mock_security_settings)


@pytest.fixture
def read_only_safety_guard(read_only_security_settings: SecuritySettings) -> SafetyGuard:
    """Create a read-only safety guard for testing."""
    return SafetyGuard(read_only_security_settings)


@pytest.fixture
def sample_application() -> Application:
    """PlainYAML Application with auto sync, deploying into namespace 'web'."""
    return Application(
        name="guestbook",
        namespace="default",
        source=ApplicationSource(
            repo_url="https://github.com/example/deploy.git",
            path="guestbook",
            target_revision="main",
        ),
        destination=Destination(name="", namespace="web"),
        sync_policy=SyncPolicy(auto_sync=True, sync_check_period=60),
    )


@pytest.fixture
def manual_application(sample_application: Application) -> Application:
    """Same Application with auto sync disabled."""
    sample_application.sync_policy.auto_sync = False
    return sample_application


@pytest.fixture
def sample_application_raw() -> dict[str, Any]:
    """Application custom resource as the API server returns it."""
    return {
        "apiVersion": "cd.tmax.io/v1",
        "kind": "Application",
        "metadata": {"name": "guestbook", "namespace": "default"},
        "spec": {
            "source": {
                "repoURL": "https://github.com/example/deploy.git",
                "path": "guestbook",
                "targetRevision": "main",
                "type": "PlainYAML",
            },
            "destination": {"namespace": "web"},
            "syncPolicy": {"autoSync": True, "syncCheckPeriod": 60},
        },
    }


@pytest.fixture
def desired_objects() -> list[dict[str, Any]]:
    return [deployment("frontend"), config_map("settings", color="blue")]


@pytest.fixture
def store() -> FakeClusterStore:
    """Default cluster."""
    return FakeClusterStore()


@pytest.fixture
def resolver(desired_objects: list[dict[str, Any]]) -> StaticResolver:
    return StaticResolver(desired_objects)


@pytest.fixture
def remote_stores() -> dict[str, FakeClusterStore]:
    """Stores handed out for non-default destinations, by destination name."""
    return {}


@pytest.fixture
def store_factory(remote_stores: dict[str, FakeClusterStore]):
    async def factory(kubeconfig: dict[str, Any], name: str) -> FakeClusterStore:
        return remote_stores.setdefault(name, FakeClusterStore(name=name))

    return factory


@pytest.fixture
def audit_logger() -> MagicMock:
    return MagicMock(spec=AuditLogger)


@pytest.fixture
def engine(
    store: FakeClusterStore,
    resolver: StaticResolver,
    store_factory,
    audit_logger: MagicMock,
) -> SyncEngine:
    """Engine over the fake default cluster with a static PlainYAML resolver."""
    return SyncEngine(
        store,
        {"PlainYAML": resolver},
        TargetResolver(store, store_factory),
        audit=audit_logger,
        call_timeout=2.0,
    )


@pytest.fixture
def mock_context() -> MagicMock:
    """Create a mock MCP context."""
    ctx = MagicMock()
    ctx.request_id = "test-request-123"
    ctx.report_progress = AsyncMock()
    return ctx

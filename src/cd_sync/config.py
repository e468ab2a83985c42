# ABOUTME: Configuration management for the cd-sync engine
# ABOUTME: Handles environment variables, scheduler timing, git hosts and admin safety settings

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Everything tunable about the engine lives here. Settings are:

1. READ from environment variables (CD_SYNC_*, MCP_*) or an optional .env file
2. VALIDATED at startup (periods must be positive, log levels must exist)
3. PASSED explicitly to the components that need them

No component reads the environment itself; build_runtime() hands each one
the values it needs.

=============================================================================
ARCHITECTURE: THREE CONFIGURATION CLASSES
=============================================================================

1. GitSettings: git hosting access
   - request timeout, secret masking
   - extra hosts mapped to a provider kind ("github" or "gitlab")
   - public webhook receiver address used when registering webhooks

2. SecuritySettings: guards on the admin tools
   - read-only mode, destructive-operation switch, rate limiting, audit log

3. EngineSettings: top-level container
   - logging, scheduler timing, Helm binary, default cluster kubeconfig
   - contains GitSettings and SecuritySettings

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

    CD_SYNC_LOG_LEVEL=DEBUG                 -> settings.log_level
    CD_SYNC_DEFAULT_SYNC_CHECK_PERIOD=120   -> settings.default_sync_check_period
    CD_SYNC_GIT__TIMEOUT=10                 -> settings.git.timeout
    CD_SYNC_GIT__PROVIDERS='{"git.corp":"gitlab"}'
                                            -> settings.git.providers
    CD_SYNC_GIT__WEBHOOK_BASE_URL=https://cd.example.com
                                            -> settings.git.webhook_base_url
    MCP_READ_ONLY=false                     -> settings.security.read_only

The double underscore is the nested delimiter (env_nested_delimiter="__").
"""

from __future__ import annotations

import os
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GitSettings(BaseModel):
    """
    Git hosting access.

    WHY A MAPPING OF HOSTS?
    -----------------------
    The provider for a repository is picked from its host. github.com and
    gitlab.com are always known; a self-hosted GitLab or GitHub Enterprise
    must be named here:

        CD_SYNC_GIT__PROVIDERS='{"git.example.com": "gitlab"}'
    """

    model_config = {"extra": "ignore"}

    timeout: float = Field(default=30.0, gt=0, description="HTTP timeout for git provider calls")

    mask_secrets: bool = Field(
        default=True,
        description="Mask tokens and secrets in logged provider responses",
    )

    providers: dict[str, str] = Field(
        default_factory=dict,
        description="Extra git hosts mapped to a provider kind",
    )

    webhook_base_url: str = Field(
        default="",
        description=(
            "Externally reachable address of the webhook receiver; webhooks are "
            "registered as <base>/webhook/<namespace>/<name>. Registration is skipped when empty"
        ),
    )

    @field_validator("providers")
    @classmethod
    def validate_providers(cls, v: dict[str, str]) -> dict[str, str]:
        """Provider kinds must be ones the engine ships an adapter for."""
        for host, kind in v.items():
            if kind not in ("github", "gitlab"):
                raise ValueError(f"Unsupported provider kind '{kind}' for host '{host}'")
        return {host.lower(): kind for host, kind in v.items()}

    @field_validator("webhook_base_url")
    @classmethod
    def validate_webhook_base_url(cls, v: str) -> str:
        """Empty, or an http(s) URL; the trailing slash is dropped."""
        if v and not v.startswith(("http://", "https://")):
            raise ValueError(f"webhook_base_url must be an http(s) URL, got '{v}'")
        return v.rstrip("/")


class SecuritySettings(BaseSettings):
    """
    Guards for the admin tools.

    The engine itself always applies drift for auto-sync applications;
    these settings only limit what an operator (or agent) can trigger
    through the admin surface:

    - MCP_READ_ONLY=true (default): forced sync and clear are blocked
    - MCP_DISABLE_DESTRUCTIVE=true (default): clear is blocked
    - MCP_RATE_LIMIT_*: forced syncs per application per window
    """

    model_config = SettingsConfigDict(env_prefix="MCP_")

    read_only: bool = Field(
        default=True,
        description="Block forced sync and clear when true",
    )

    disable_destructive: bool = Field(
        default=True,
        description="Block clear (delete all owned objects) when true",
    )

    audit_log: Path | None = Field(
        default=None,
        description="Path to audit log file",
    )

    rate_limit_calls: int = Field(
        default=10,
        description="Maximum forced syncs per application per window",
    )

    rate_limit_window: int = Field(
        default=60,
        description="Rate limit window in seconds",
    )


class EngineSettings(BaseSettings):
    """
    Main engine configuration.

    USAGE:
    ------
        settings = load_settings()
        print(settings.default_sync_check_period)  # 60
        print(settings.security.read_only)          # True
    """

    model_config = SettingsConfigDict(
        env_prefix="CD_SYNC_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )

    json_logs: bool = Field(
        default=False,
        description="Render logs as JSON lines instead of console output",
    )

    default_sync_check_period: int = Field(
        default=60,
        gt=0,
        description="Seconds between periodic passes when an Application sets none",
    )

    call_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Seconds allowed for each git, cluster or helm call in a pass",
    )

    scheduler_join_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Seconds to wait for a replaced periodic task to finish its pass",
    )

    scheduler_cancel_stuck: bool = Field(
        default=False,
        description="Hard-cancel a periodic task still in a pass after scheduler_join_timeout",
    )

    serialize_passes: bool = Field(
        default=True,
        description="Run at most one pass per Application at a time",
    )

    helm_binary: str = Field(default="helm", description="Helm executable")

    repo_cache_dir: Path = Field(
        default=Path("/tmp"),
        description="Directory holding Helm chart checkouts",
    )

    kubeconfig: Path | None = Field(
        default=None,
        description="Kubeconfig for the default cluster; in-cluster config when unset",
    )

    git: GitSettings = Field(default_factory=GitSettings)

    security: SecuritySettings = Field(default_factory=SecuritySettings)


def load_settings() -> EngineSettings:
    """
    Load settings from environment with validation.

    If CD_SYNC_ENV_FILE is set, variables are also read from that file.
    Useful for local development:

        CD_SYNC_LOG_LEVEL=DEBUG
        CD_SYNC_KUBECONFIG=~/.kube/config
        MCP_READ_ONLY=false

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    return EngineSettings(
        _env_file=os.environ.get("CD_SYNC_ENV_FILE"),
    )

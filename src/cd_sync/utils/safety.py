# ABOUTME: Safety utilities for the cd-sync admin tools
# ABOUTME: Implements confirmation patterns, per-application rate limiting and write guards

"""Safety guards for operator-triggered syncs and clears."""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from cd_sync.config import SecuritySettings

logger = structlog.get_logger(__name__)


@dataclass
class ConfirmationRequired:
    """Response indicating confirmation is required for destructive operation."""

    operation: str
    target: str
    impact: str
    confirmation_instructions: str
    details: dict[str, Any] = field(default_factory=dict)

    def format_message(self) -> str:
        lines = [
            f"CONFIRMATION REQUIRED: {self.operation}",
            "",
            f"Target: {self.target}",
            f"Impact: {self.impact}",
        ]

        if self.details:
            lines.append("")
            lines.append("Details:")
            for key, value in self.details.items():
                lines.append(f"  {key}: {value}")

        lines.extend(["", self.confirmation_instructions])
        return "\n".join(lines)


@dataclass
class OperationBlocked:
    """Response indicating operation is blocked by security settings."""

    operation: str
    reason: str
    setting: str

    def format_message(self) -> str:
        return (
            f"OPERATION BLOCKED: {self.operation}\n"
            f"Reason: {self.reason}\n"
            f"Setting: {self.setting}"
        )


class RateLimiter:
    """Sliding-window rate limiter keyed by operation and target."""

    def __init__(self, max_calls: int = 10, window_seconds: int = 60) -> None:
        self._max_calls = max_calls
        self._window = window_seconds
        self._calls: dict[str, list[float]] = defaultdict(list)

    def check(self, key: str) -> bool:
        """
        Record a call and report whether it is allowed.

        Args:
            key: Rate limit key (e.g., "sync_application:web/default")

        Returns:
            True if allowed, False if rate limited
        """
        now = time.monotonic()
        self._calls[key] = [t for t in self._calls[key] if now - t < self._window]

        if len(self._calls[key]) >= self._max_calls:
            logger.warning("Rate limit exceeded", key=key, calls=len(self._calls[key]))
            return False

        self._calls[key].append(now)
        return True


class SafetyGuard:
    """Decides whether an admin operation may run."""

    def __init__(self, settings: SecuritySettings) -> None:
        self._settings = settings
        self._rate_limiter = RateLimiter(
            max_calls=settings.rate_limit_calls,
            window_seconds=settings.rate_limit_window,
        )

    def check_read_operation(self, operation: str) -> OperationBlocked | None:
        """Reads never change the cluster and are always allowed."""
        logger.debug("Read operation allowed", operation=operation)
        return None

    def check_write_operation(self, operation: str, target: str) -> OperationBlocked | None:
        """
        Check a write such as a forced sync.

        Rate limiting is per target, so one noisy Application cannot starve
        operator access to the others.
        """
        if self._settings.read_only:
            return OperationBlocked(
                operation=operation,
                reason="Engine admin surface is running in read-only mode",
                setting="MCP_READ_ONLY",
            )

        if not self._rate_limiter.check(f"{operation}:{target}"):
            return OperationBlocked(
                operation=operation,
                reason=f"Rate limit exceeded for {target}",
                setting="MCP_RATE_LIMIT_CALLS",
            )

        return None

    def check_destructive_operation(
        self,
        operation: str,
        target: str,
        confirmed: bool = False,
        confirm_name: str | None = None,
    ) -> OperationBlocked | ConfirmationRequired | None:
        """
        Check an operation that deletes live objects.

        Returns:
            OperationBlocked if blocked, ConfirmationRequired if needs confirmation,
            None if allowed
        """
        write_check = self.check_write_operation(operation, target)
        if write_check:
            return write_check

        if self._settings.disable_destructive:
            return OperationBlocked(
                operation=operation,
                reason="Destructive operations are disabled",
                setting="MCP_DISABLE_DESTRUCTIVE",
            )

        if not confirmed or confirm_name != target:
            return ConfirmationRequired(
                operation=operation,
                target=target,
                impact=self._get_impact_description(operation),
                confirmation_instructions=(
                    f"To proceed, set confirm=true AND confirm_name='{target}'"
                ),
            )

        return None

    @staticmethod
    def _get_impact_description(operation: str) -> str:
        impacts = {
            "clear_application": (
                "Every object tracked for this Application will be DELETED "
                "from its target cluster, along with the tracking records"
            ),
        }
        return impacts.get(operation, "This operation may have significant impact")

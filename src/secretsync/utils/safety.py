# ABOUTME: Safety utilities for secretsync
# ABOUTME: Implements read-only mode, rate limiting, and the target owner allowlist

"""Safety checks for the write paths of the sync protocol."""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from secretsync.config import SecuritySettings

logger = structlog.get_logger(__name__)


@dataclass
class OperationBlocked:
    """Response indicating operation is blocked by security settings."""

    operation: str
    reason: str
    setting: str

    def format_message(self) -> str:
        """Format blocked message for agent or operator consumption."""
        return (
            f"OPERATION BLOCKED: {self.operation}\n"
            f"Reason: {self.reason}\n"
            f"Setting: {self.setting}"
        )


class RateLimiter:
    """Sliding-window rate limiter keyed by operation."""

    def __init__(self, max_calls: int = 100, window_seconds: int = 60) -> None:
        """Initialize rate limiter.

        Args:
            max_calls: Maximum calls allowed in window
            window_seconds: Window size in seconds
        """
        self._max_calls = max_calls
        self._window = window_seconds
        self._calls: dict[str, list[float]] = defaultdict(list)

    def check(self, key: str) -> bool:
        """Record a call under ``key`` and return False if it exceeds the limit."""
        now = time.time()
        self._calls[key] = [t for t in self._calls[key] if now - t < self._window]

        if len(self._calls[key]) >= self._max_calls:
            logger.warning("Rate limit exceeded", key=key, calls=len(self._calls[key]))
            return False

        self._calls[key].append(now)
        return True

    def reset(self, key: str | None = None) -> None:
        """Reset rate limit counters for one key, or all of them."""
        if key:
            self._calls.pop(key, None)
        else:
            self._calls.clear()


class SafetyGuard:
    """Guards the operations that move secrets or trigger remote work."""

    def __init__(self, settings: SecuritySettings) -> None:
        self._settings = settings
        self._rate_limiter = RateLimiter(
            max_calls=settings.rate_limit_calls,
            window_seconds=settings.rate_limit_window,
        )

    def check_read_operation(self, operation: str) -> OperationBlocked | None:
        """Presence checks are always allowed, subject to rate limiting."""
        if not self._rate_limiter.check(f"read:{operation}"):
            return OperationBlocked(
                operation=operation,
                reason="Rate limit exceeded",
                setting="MCP_RATE_LIMIT_CALLS",
            )
        return None

    def check_write_operation(self, operation: str) -> OperationBlocked | None:
        """Dispatch, export and publish all count as writes."""
        if self._settings.read_only:
            return OperationBlocked(
                operation=operation,
                reason="Running in read-only mode",
                setting="MCP_READ_ONLY",
            )

        if not self._rate_limiter.check(f"write:{operation}"):
            return OperationBlocked(
                operation=operation,
                reason="Rate limit exceeded",
                setting="MCP_RATE_LIMIT_CALLS",
            )

        return None

    def check_target(self, operation: str, target: str) -> OperationBlocked | None:
        """
        Check the target repository's owner against the allowlist.

        An empty allowlist allows every owner.

        Args:
            operation: Operation name
            target: Target repository (owner/repo)
        """
        allowed = self._settings.allowed_owners
        if not allowed:
            return None

        owner = target.split("/", 1)[0].lower()
        if owner not in allowed:
            return OperationBlocked(
                operation=operation,
                reason=f"Owner '{owner}' is not in the allowed owners list",
                setting="MCP_ALLOWED_OWNERS",
            )
        return None

# ABOUTME: Exception types shared across secretsync
# ABOUTME: GitHub API errors, configuration errors, and the top-level sync failure

"""Exception hierarchy for secretsync."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from secretsync.sync.models import SyncReport


class SecretSyncError(Exception):
    """Base class for all secretsync errors."""


class ConfigError(SecretSyncError):
    """Required configuration is missing or unusable."""


class GithubError(SecretSyncError):
    """
    Structured GitHub API error.

    Keeps the status code so callers can tell "secret does not exist" (404)
    apart from "token lacks permission" (403) or an outage (5xx).
    """

    def __init__(self, code: int, message: str, details: str | None = None) -> None:
        self.code = code
        self.message = message
        self.details = details
        super().__init__(str(self))

    def __str__(self) -> str:
        base = f"GitHub API error ({self.code}): {self.message}"
        if self.details:
            base += f" - {self.details}"
        return base

    @property
    def not_found(self) -> bool:
        return self.code == 404


class RegistryError(SecretSyncError):
    """A consumer registry could not be read or written."""


class SecretsNotSyncedError(SecretSyncError):
    """
    One or more required secrets never arrived.

    Raised only at the top of a sync run, after every name has reached a
    terminal outcome. Carries the full report so callers can print it.
    """

    def __init__(self, report: SyncReport) -> None:
        self.report = report
        missing = ", ".join(report.missing)
        super().__init__(f"Secrets not available in {report.target}: {missing}")

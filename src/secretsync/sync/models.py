# ABOUTME: Data types for the secret sync protocol
# ABOUTME: Export requests, per-secret outcomes, and the aggregate sync report

"""Data types passed between the requester, dispatcher, worker and poller."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from secretsync.errors import SecretsNotSyncedError

# GitHub Actions secret names: letters, digits, underscores; no leading digit.
SECRET_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# A registry identifier: "owner/repo" for GitHub, a bare name for other stores.
TARGET_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*(?:/[A-Za-z0-9._-]+)?$")


def validate_secret_name(value: str) -> str:
    """Return ``value`` if GitHub would accept it as a secret name, else raise ValueError."""
    value = value.strip()
    if not SECRET_NAME_PATTERN.match(value):
        raise ValueError(f"Invalid secret name '{value}'")
    if value.upper().startswith("GITHUB_"):
        raise ValueError(f"Secret names may not start with GITHUB_: '{value}'")
    return value


def is_valid_secret_name(value: str) -> bool:
    try:
        validate_secret_name(value)
    except ValueError:
        return False
    return True


class ExportRequest(BaseModel):
    """
    One-shot request to copy a secret from the authority into a target.

    Built by the requester for each missing name, and rebuilt by the worker
    from whatever arrived over the wire. Validation happens on construction,
    so a worker holding an ExportRequest knows both fields are well formed.
    """

    model_config = ConfigDict(frozen=True)

    secret_name: str = Field(description="Secret to export")
    target: str = Field(description="Registry that should receive it (owner/repo for GitHub)")

    @field_validator("secret_name")
    @classmethod
    def check_name(cls, v: str) -> str:
        return validate_secret_name(v)

    @field_validator("target")
    @classmethod
    def check_target(cls, v: str) -> str:
        v = v.strip()
        if not TARGET_PATTERN.match(v):
            raise ValueError(f"Invalid target identity '{v}'")
        return v


class SyncOutcome(str, Enum):
    """Terminal state of one secret within one sync run."""

    ALREADY_PRESENT = "already_present"
    SYNCED = "synced"
    TIMED_OUT = "timed_out"


class DispatchStatus(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass
class DispatchResult:
    """Answer from a dispatcher. ACCEPTED only means the trigger was queued."""

    status: DispatchStatus
    reason: str = ""

    @property
    def accepted(self) -> bool:
        return self.status is DispatchStatus.ACCEPTED

    @classmethod
    def accept(cls) -> DispatchResult:
        return cls(DispatchStatus.ACCEPTED)

    @classmethod
    def reject(cls, reason: str) -> DispatchResult:
        return cls(DispatchStatus.REJECTED, reason)


class ExportStatus(str, Enum):
    """Terminal state of one export worker invocation."""

    EXPORTED = "exported"
    INVALID = "invalid"
    NOT_FOUND = "not_found"
    WRITE_FAILED = "write_failed"


@dataclass
class ExportResult:
    """
    What the worker did with one request.

    Never carries the secret value, only the name and target.
    """

    secret_name: str
    target: str
    status: ExportStatus
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status is ExportStatus.EXPORTED


@dataclass
class PollResult:
    outcome: SyncOutcome
    attempts: int
    elapsed: float


@dataclass
class SyncResult:
    """Outcome for one secret name, plus enough detail to explain a failure."""

    secret_name: str
    outcome: SyncOutcome
    attempts: int = 0
    elapsed: float = 0.0
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome is not SyncOutcome.TIMED_OUT

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {
            "outcome": self.outcome.value,
            "attempts": self.attempts,
            "elapsed": round(self.elapsed, 3),
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class SyncReport:
    """
    Outcome map for one ensure_secrets call.

    Iteration order follows the order names were requested in.
    """

    target: str
    results: dict[str, SyncResult] = field(default_factory=dict)

    def __getitem__(self, name: str) -> SyncResult:
        return self.results[name]

    def __contains__(self, name: object) -> bool:
        return name in self.results

    def __len__(self) -> int:
        return len(self.results)

    @property
    def outcomes(self) -> dict[str, SyncOutcome]:
        return {name: result.outcome for name, result in self.results.items()}

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.results.values())

    @property
    def missing(self) -> list[str]:
        return [name for name, result in self.results.items() if not result.ok]

    def add(self, result: SyncResult) -> None:
        self.results[result.secret_name] = result

    def raise_for_failures(self) -> None:
        """Raise SecretsNotSyncedError if any secret ended TIMED_OUT."""
        if not self.ok:
            raise SecretsNotSyncedError(self)

    def to_dict(self) -> dict[str, object]:
        return {
            "target": self.target,
            "ok": self.ok,
            "secrets": {name: result.to_dict() for name, result in self.results.items()},
        }

# ABOUTME: Structured logging with correlation IDs for secretsync
# ABOUTME: Implements the audit trail written by the export worker

"""
Structured logging with correlation IDs and audit trails.

=============================================================================
WHY STRUCTURED LOGGING HERE?
=============================================================================

secretsync runs in two places at once: the build of an application
repository, and a workflow run in the authority repository. When a secret
never arrives, the operator has to line up two separate log streams.

Structured events make that possible:

    {"event": "Dispatch accepted", "secret": "DB_PASS", "target": "org/app", ...}
    {"event": "audit", "action": "export_secret", "target": "org/app", ...}

Both sides log the secret NAME and the target repository. Neither side ever
logs a value: values are SecretStr all the way to the encryption step.

=============================================================================
CORRELATION IDs
=============================================================================

Every sync run (one `ensure` call, one `export` event) gets a short
correlation ID held in a ContextVar. asyncio tasks copy the context when
they are created, so the per-secret tasks spawned by the requester all log
under the id of the run that spawned them.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path


# =============================================================================
# CORRELATION ID MANAGEMENT
# =============================================================================

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """
    Get current correlation ID or generate new one.

    IDs are the first 8 characters of a UUID4: unique enough within one
    build, short enough to grep for.
    """
    cid = correlation_id.get()
    if not cid:
        cid = str(uuid.uuid4())[:8]
        correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    """Set correlation ID for the current context ("" regenerates on next read)."""
    correlation_id.set(cid)


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """structlog processor that stamps every event with the correlation ID."""
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure structured logging.

    Call once at startup. Logs go to stderr: stdout carries CLI results and
    the MCP stdio transport. Build logs are read by humans, so the console
    renderer is the default; the authority workflow can switch to JSON with
    SECRETSYNC_JSON_LOGS=true when its output is shipped elsewhere.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_output: Render JSON lines instead of coloured console output
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# AUDIT LOGGER
# =============================================================================


class AuditLogger:
    """
    Audit logger for secret movements.

    Every export attempt, dispatch, and blocked request is recorded with:
    timestamp, correlation_id, action, target, result, and optional details.

    Details must never include a secret value. Callers pass names, repository
    slugs, and error strings only.

    Entries go to a JSON-lines file when a path is configured
    (MCP_AUDIT_LOG), otherwise through structlog.

    Example entry:
        {"timestamp": "2026-01-15T10:30:00+00:00", "correlation_id": "abc12345",
         "action": "export_secret", "target": "Bengo-Hub/app",
         "result": "exported", "details": {"secret": "DB_PASS"}}
    """

    def __init__(self, log_path: Path | None = None) -> None:
        self._log_path = log_path
        self._logger = structlog.get_logger("audit")

    def log(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Log an auditable action.

        Args:
            action: Operation name ("export_secret", "dispatch_export", ...)
            target: Repository or resource affected
            result: "success", "exported", "accepted", "blocked", "error", ...
            details: Extra context (secret name, reason, error text)
        """
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "correlation_id": get_correlation_id(),
            "action": action,
            "target": target,
            "result": result,
        }
        if details:
            entry["details"] = details

        if self._log_path:
            with self._log_path.open("a") as f:
                f.write(json.dumps(entry) + "\n")
        else:
            self._logger.info(
                "audit",
                action=action,
                target=target,
                result=result,
                details=details,
            )

    def log_read(self, action: str, target: str) -> None:
        self.log(action, target, "success")

    def log_write(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.log(action, target, result, details)

    def log_blocked(self, action: str, target: str, reason: str) -> None:
        """Record a request refused by a safety check."""
        self.log(action, target, "blocked", {"reason": reason})

    def log_error(self, action: str, target: str, error: str) -> None:
        self.log(action, target, "error", {"error": error})

# ABOUTME: Export worker that copies secrets from the authority into a registry
# ABOUTME: Runs in the authority's context; the only code that touches secret values

"""
Export worker.

Runs where the authority lives (the authority repository's propagate
workflow, or in-process when the secrets file is on this machine). For each
request it validates the request, reads the value from the authority, and
upserts it into the target registry.

Failures stay here. The requester never hears about them directly; it only
notices that the secret never shows up. That is why every failure is both
logged and written to the audit trail, with the name and target but never
the value.

Writes are plain upserts. Running the same request twice leaves the registry
in the same state as running it once, which makes duplicate dispatches and
manual re-runs harmless. A failed write is not retried: the next build's
presence check will ask again.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from secretsync.errors import RegistryError
from secretsync.sync.models import ExportRequest, ExportResult, ExportStatus

if TYPE_CHECKING:
    from collections.abc import Callable

    from secretsync.sync.authority import SecretAuthority
    from secretsync.sync.registry import ConsumerRegistry
    from secretsync.utils.logging import AuditLogger
    from secretsync.utils.safety import SafetyGuard

logger = structlog.get_logger(__name__)


def _describe_validation_error(error: ValidationError) -> str:
    # Only the messages; pydantic would otherwise echo the raw input back.
    return "; ".join(str(item.get("msg", "")) for item in error.errors())


class ExportWorker:
    """
    Copies named secrets from an authority into consumer registries.

    Args:
        authority: Where values are read from
        registry_for: Returns the registry for a target identity
        audit_logger: Audit trail for every attempt (optional)
        guard: Safety guard whose owner allowlist limits targets (optional)
    """

    def __init__(
        self,
        authority: SecretAuthority,
        registry_for: Callable[[str], ConsumerRegistry],
        audit_logger: AuditLogger | None = None,
        guard: SafetyGuard | None = None,
    ) -> None:
        self._authority = authority
        self._registry_for = registry_for
        self._audit = audit_logger
        self._guard = guard
        self._registries: dict[str, ConsumerRegistry] = {}

    def _registry(self, target: str) -> ConsumerRegistry:
        registry = self._registries.get(target)
        if registry is None:
            registry = self._registry_for(target)
            self._registries[target] = registry
        return registry

    def _audit_result(self, result: ExportResult) -> None:
        if self._audit is None:
            return
        details: dict[str, Any] = {"secret": result.secret_name}
        if result.error:
            details["error"] = result.error
        self._audit.log_write("export_secret", result.target, result.status.value, details)

    async def run(self, request: ExportRequest | Mapping[str, Any]) -> ExportResult:
        """
        Execute one export.

        Accepts a validated ExportRequest, or a raw mapping with
        ``secret_name``/``target`` (``name``/``target_repo`` also accepted) as
        it arrives from an event payload. Never raises for protocol failures;
        the outcome is in the returned ExportResult.
        """
        if isinstance(request, Mapping):
            raw_name = str(request.get("secret_name", request.get("name", "")) or "")
            raw_target = str(request.get("target", request.get("target_repo", "")) or "")
            try:
                request = ExportRequest(secret_name=raw_name, target=raw_target)
            except ValidationError as e:
                result = ExportResult(
                    raw_name, raw_target, ExportStatus.INVALID, _describe_validation_error(e)
                )
                logger.error(
                    "Rejected malformed export request",
                    secret=raw_name,
                    target=raw_target,
                    error=result.error,
                )
                self._audit_result(result)
                return result

        name, target = request.secret_name, request.target
        log = logger.bind(secret=name, target=target)

        if self._guard is not None:
            blocked = self._guard.check_target("export_secret", target)
            if blocked:
                result = ExportResult(name, target, ExportStatus.INVALID, blocked.reason)
                log.error("Export target not allowed", reason=blocked.reason)
                self._audit_result(result)
                return result

        value = self._authority.get_secret(name)
        if value is None:
            result = ExportResult(name, target, ExportStatus.NOT_FOUND, "not held by authority")
            log.warning("Secret not found in authority. Skipping.")
            self._audit_result(result)
            return result

        try:
            await self._registry(target).set_secret(name, value)
        except RegistryError as e:
            result = ExportResult(name, target, ExportStatus.WRITE_FAILED, str(e))
            log.error("Failed to write secret", error=str(e))
            self._audit_result(result)
            return result

        log.info("Exported secret")
        result = ExportResult(name, target, ExportStatus.EXPORTED)
        self._audit_result(result)
        return result

    async def run_event(self, client_payload: Mapping[str, Any]) -> list[ExportResult]:
        """
        Execute every export named in a repository_dispatch client payload.

        Payload shape: ``{"target_repo": "owner/repo", "secrets": ["A", "B"]}``.
        Names are exported one after another; one failure does not stop the rest.
        """
        target = str(client_payload.get("target_repo", "") or "")
        names = client_payload.get("secrets")
        if isinstance(names, str):
            names = names.split()
        if not isinstance(names, list) or not names:
            result = ExportResult("", target, ExportStatus.INVALID, "payload lists no secrets")
            logger.error("Rejected export event", target=target, error=result.error)
            self._audit_result(result)
            return [result]

        logger.info("Propagating secrets", target=target, requested=[str(n) for n in names])
        results = [await self.run({"secret_name": str(n), "target": target}) for n in names]

        succeeded = sum(1 for r in results if r.ok)
        logger.info(
            "Export summary",
            target=target,
            succeeded=succeeded,
            failed=len(results) - succeeded,
        )
        return results

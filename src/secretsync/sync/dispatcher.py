# ABOUTME: Export dispatchers that trigger the export worker without waiting for it
# ABOUTME: repository_dispatch for the remote authority, asyncio tasks for a local one

"""
Export dispatchers.

A dispatcher's only job is to get an export worker run scheduled. It returns
as soon as the trigger is queued and never reports whether the export
succeeded; the requester finds that out by polling the registry.

Two implementations:

- RepositoryDispatcher fires a repository_dispatch event at the authority
  repository. GitHub queues a workflow run there which invokes
  ``secretsync export``.

- LocalDispatcher runs the worker in this process as a detached asyncio
  task. Used when the authority's secrets file is available locally
  ("direct propagation" from a developer machine).

Neither retries. Duplicate triggers for the same name are harmless because
the worker's write is an upsert.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Protocol

import httpx
import structlog
from pydantic import ValidationError

from secretsync.errors import GithubError
from secretsync.sync.models import DispatchResult, ExportRequest

if TYPE_CHECKING:
    from secretsync.sync.worker import ExportWorker
    from secretsync.utils.client import GithubClient
    from secretsync.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)


class ExportDispatcher(Protocol):
    """Trigger interface of the authority."""

    async def trigger_export(self, name: str, target: str) -> DispatchResult:
        """Schedule one export. ACCEPTED does not imply completion."""
        ...


def _build_request(name: str, target: str) -> ExportRequest | DispatchResult:
    try:
        return ExportRequest(secret_name=name, target=target)
    except ValidationError as e:
        reason = "; ".join(str(item.get("msg", "")) for item in e.errors())
        return DispatchResult.reject(f"malformed request: {reason}")


class RepositoryDispatcher:
    """
    Triggers the authority repository's propagate workflow.

    The payload mirrors what the workflow expects:
        {"event_type": "propagate-secrets",
         "client_payload": {"target_repo": "owner/repo", "secrets": ["NAME"]}}
    """

    def __init__(
        self,
        client: GithubClient,
        authority_repo: str,
        event_type: str = "propagate-secrets",
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._client = client
        self._authority_repo = authority_repo
        self._event_type = event_type
        self._audit = audit_logger

    @property
    def authority_repo(self) -> str:
        return self._authority_repo

    async def trigger_export(self, name: str, target: str) -> DispatchResult:
        request = _build_request(name, target)
        if isinstance(request, DispatchResult):
            logger.error("Dispatch rejected", secret=name, target=target, reason=request.reason)
            return request

        payload = {"target_repo": request.target, "secrets": [request.secret_name]}
        try:
            await self._client.create_dispatch(self._authority_repo, self._event_type, payload)
        except GithubError as e:
            result = DispatchResult.reject(str(e))
        except httpx.HTTPError as e:
            result = DispatchResult.reject(f"authority unreachable: {e}")
        else:
            result = DispatchResult.accept()

        if result.accepted:
            logger.info(
                "Dispatch request accepted",
                secret=request.secret_name,
                target=request.target,
                authority=self._authority_repo,
            )
        else:
            logger.error(
                "Dispatch request failed",
                secret=request.secret_name,
                target=request.target,
                authority=self._authority_repo,
                reason=result.reason,
            )

        if self._audit is not None:
            details = {"secret": request.secret_name, "authority": self._authority_repo}
            if result.reason:
                details["reason"] = result.reason
            self._audit.log_write("dispatch_export", request.target, result.status.value, details)
        return result


class LocalDispatcher:
    """
    Runs the export worker in-process, fire-and-forget.

    Each accepted trigger becomes an asyncio task. The dispatcher keeps a
    reference to every running task so none is garbage collected mid-write;
    ``drain()`` waits for them, and should be awaited before the event loop
    shuts down.

    Args:
        worker: The export worker to run
        delay: Seconds to wait before the worker starts
    """

    def __init__(self, worker: ExportWorker, delay: float = 0.0) -> None:
        self._worker = worker
        self._delay = delay
        self._tasks: set[asyncio.Task[object]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def _run(self, request: ExportRequest) -> object:
        if self._delay:
            await asyncio.sleep(self._delay)
        return await self._worker.run(request)

    async def trigger_export(self, name: str, target: str) -> DispatchResult:
        request = _build_request(name, target)
        if isinstance(request, DispatchResult):
            logger.error("Dispatch rejected", secret=name, target=target, reason=request.reason)
            return request

        task = asyncio.create_task(self._run(request), name=f"export:{request.secret_name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("Local export scheduled", secret=request.secret_name, target=request.target)
        return DispatchResult.accept()

    async def drain(self) -> None:
        """Wait for every scheduled export to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

# ABOUTME: Sync requester that makes sure a build has every secret it needs
# ABOUTME: Presence check, dispatch, and poll for each name, concurrently

"""
Sync requester.

Entry point of the protocol, called from an application's build:

    requester = SecretSyncRequester(registry_for, dispatcher)
    report = await requester.ensure_secrets(["DB_PASS", "API_KEY"], "org/app")
    report.raise_for_failures()

Per name, independently and concurrently:

    Checking -> ALREADY_PRESENT
             -> Missing -> Dispatched -> Polling -> SYNCED | TIMED_OUT

A secret that is already in the registry is never exported again; the
presence check is the only trigger. Every failure below this class becomes
a TIMED_OUT result in the report instead of an exception, so one bad name
cannot stop the others from being processed.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import httpx
import structlog

from secretsync.errors import RegistryError, SecretSyncError
from secretsync.sync.models import SyncOutcome, SyncReport, SyncResult, validate_secret_name
from secretsync.sync.poller import CompletionPoller

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from secretsync.sync.dispatcher import ExportDispatcher
    from secretsync.sync.registry import ConsumerRegistry

logger = structlog.get_logger(__name__)


def unique_names(names: Iterable[str]) -> list[str]:
    """Strip, drop blanks and duplicates, keep first-seen order."""
    seen: dict[str, None] = {}
    for name in names:
        name = name.strip()
        if name:
            seen.setdefault(name, None)
    return list(seen)


class SecretSyncRequester:
    """
    Ensures named secrets exist in a target registry.

    Args:
        registry_for: Returns the registry for a target identity
        dispatcher: Triggers export workers
        timeout: Default seconds to wait for each dispatched secret
        poll_interval: Default seconds between presence checks
        initial_delay: Seconds before the first presence check after a dispatch
    """

    def __init__(
        self,
        registry_for: Callable[[str], ConsumerRegistry],
        dispatcher: ExportDispatcher,
        timeout: float = 60.0,
        poll_interval: float = 2.0,
        initial_delay: float = 0.0,
    ) -> None:
        self._registry_for = registry_for
        self._dispatcher = dispatcher
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._initial_delay = initial_delay

    async def ensure_secrets(
        self,
        names: Iterable[str],
        target: str,
        timeout: float | None = None,
        poll_interval: float | None = None,
    ) -> SyncReport:
        """
        Make sure every name exists in ``target``.

        Args:
            names: Required secret names (duplicates ignored)
            target: Target identity (owner/repo for GitHub)
            timeout: Override of the per-secret wait
            poll_interval: Override of the polling interval

        Returns:
            SyncReport with one result per distinct name. ``report.ok`` is
            False if any name timed out; call ``raise_for_failures()`` to turn
            that into an exception.
        """
        required = unique_names(names)
        report = SyncReport(target=target)
        if not required:
            return report

        registry = self._registry_for(target)
        poller = CompletionPoller(
            registry,
            timeout=timeout if timeout is not None else self._timeout,
            interval=poll_interval if poll_interval is not None else self._poll_interval,
            initial_delay=self._initial_delay,
        )

        logger.info("Checking required secrets", target=target, secrets=required)
        results = await asyncio.gather(
            *(self._sync_one(name, target, registry, poller) for name in required)
        )
        for result in results:
            report.add(result)

        if report.ok:
            logger.info("All required secrets are present", target=target)
        else:
            logger.error("Secrets still missing", target=target, missing=report.missing)
        return report

    async def _sync_one(
        self,
        name: str,
        target: str,
        registry: ConsumerRegistry,
        poller: CompletionPoller,
    ) -> SyncResult:
        loop = asyncio.get_running_loop()
        started = loop.time()
        log = logger.bind(secret=name, target=target)

        try:
            validate_secret_name(name)
        except ValueError as e:
            log.error("Invalid secret name", error=str(e))
            return SyncResult(name, SyncOutcome.TIMED_OUT, error=f"invalid secret name: {name}")

        try:
            present = await asyncio.wait_for(registry.has_secret(name), poller.timeout)
        except (RegistryError, TimeoutError) as e:
            log.warning("Presence check failed; treating secret as missing", error=str(e))
            present = False

        if present:
            log.debug("Secret already present")
            return SyncResult(
                name, SyncOutcome.ALREADY_PRESENT, attempts=1, elapsed=loop.time() - started
            )

        log.warning("Secret is missing")
        try:
            dispatched = await self._dispatcher.trigger_export(name, target)
        except (SecretSyncError, httpx.HTTPError) as e:
            reason = str(e)
        else:
            reason = "" if dispatched.accepted else dispatched.reason

        if reason:
            return SyncResult(
                name,
                SyncOutcome.TIMED_OUT,
                attempts=1,
                elapsed=loop.time() - started,
                error=f"dispatch rejected: {reason}",
            )

        polled = await poller.wait_for(name)
        return SyncResult(
            name,
            polled.outcome,
            attempts=1 + polled.attempts,
            elapsed=loop.time() - started,
            error="" if polled.outcome is SyncOutcome.SYNCED else "not observed before deadline",
        )

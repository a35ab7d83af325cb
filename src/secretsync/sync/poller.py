# ABOUTME: Completion poller that waits for an exported secret to appear
# ABOUTME: Bounded spin-wait against the consumer registry

"""
Completion poller.

The authority cannot call back into the requester's build; the two only
share the registry. So after a dispatch the requester checks the registry
every ``interval`` seconds until the secret shows up or ``timeout`` seconds
have passed since polling began.

From here, "worker not scheduled yet", "worker still running" and "worker
failed" look identical: the secret is absent. Only the deadline ends the
wait.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from secretsync.errors import RegistryError
from secretsync.sync.models import PollResult, SyncOutcome

if TYPE_CHECKING:
    from secretsync.sync.registry import ConsumerRegistry

logger = structlog.get_logger(__name__)

# Log a progress line every N attempts.
PROGRESS_EVERY = 5


class CompletionPoller:
    """
    Polls a registry for one secret with a fixed interval and deadline.

    Args:
        registry: Registry the secret should appear in
        timeout: Seconds after the start of polling to give up
        interval: Seconds between presence checks
        initial_delay: Seconds to wait before the first check; counts
                       against ``timeout``
    """

    def __init__(
        self,
        registry: ConsumerRegistry,
        timeout: float = 60.0,
        interval: float = 2.0,
        initial_delay: float = 0.0,
    ) -> None:
        if timeout <= 0 or interval <= 0:
            raise ValueError("timeout and interval must be positive")
        self._registry = registry
        self._timeout = timeout
        self._interval = interval
        self._initial_delay = max(0.0, min(initial_delay, timeout))

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def interval(self) -> float:
        return self._interval

    async def _present(self, name: str, budget: float) -> bool:
        try:
            return await asyncio.wait_for(self._registry.has_secret(name), budget)
        except TimeoutError:
            logger.debug("Presence check timed out", secret=name, budget=round(budget, 2))
            return False
        except RegistryError as e:
            # Transient read failures look like "not there yet".
            logger.debug("Presence check failed", secret=name, error=str(e))
            return False

    async def wait_for(self, name: str) -> PollResult:
        """
        Wait until ``name`` is present or the deadline passes.

        Returns SYNCED with the number of checks made, or TIMED_OUT. The
        final sleep is clipped to the deadline, and one last check is made
        at the deadline. Each check is cut off once ``timeout + interval`` has
        passed, so a slow registry cannot stretch the wait beyond that bound.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + self._timeout
        attempts = 0
        log = logger.bind(secret=name, target=self._registry.target)

        if self._initial_delay:
            log.debug("Waiting for export to start", delay=self._initial_delay)
            await asyncio.sleep(self._initial_delay)

        while True:
            attempts += 1
            # A check may run at most one interval past the deadline.
            budget = max(deadline + self._interval - loop.time(), 0.0)
            if await self._present(name, budget):
                elapsed = loop.time() - started
                log.info("Secret propagated", attempts=attempts, elapsed=round(elapsed, 2))
                return PollResult(SyncOutcome.SYNCED, attempts, elapsed)

            remaining = deadline - loop.time()
            if remaining <= 0:
                break

            if attempts % PROGRESS_EVERY == 0:
                log.info(
                    "Still waiting for secret",
                    attempts=attempts,
                    remaining=round(remaining, 1),
                )
            await asyncio.sleep(min(self._interval, remaining))

        elapsed = loop.time() - started
        log.error("Timeout waiting for secret", attempts=attempts, elapsed=round(elapsed, 2))
        return PollResult(SyncOutcome.TIMED_OUT, attempts, elapsed)

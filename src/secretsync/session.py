# ABOUTME: Wires settings, GitHub clients, and sync components into one session
# ABOUTME: Shared by the CLI and the MCP server lifespan

"""
Sync session assembly.

A session owns the HTTP clients for one run and hands out the components
built on top of them:

    async with open_session(settings) as session:
        requester = await session.requester()
        report = await requester.ensure_secrets(names, target)

Dispatch mode follows the environment:

- In CI, or when no authority secrets are available locally, missing
  secrets are requested from the authority repository with a
  repository_dispatch event (RepositoryDispatcher).
- On a developer machine holding the authority secrets file, the export
  worker runs in-process instead (LocalDispatcher), which is the "direct
  propagation" path. Its tasks are drained before the clients close.
"""

from __future__ import annotations

from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from secretsync.sync.authority import SecretsFileAuthority
from secretsync.sync.dispatcher import LocalDispatcher, RepositoryDispatcher
from secretsync.sync.registry import GithubSecretRegistry
from secretsync.sync.requester import SecretSyncRequester
from secretsync.sync.worker import ExportWorker
from secretsync.utils.client import GithubClient
from secretsync.utils.logging import AuditLogger
from secretsync.utils.safety import SafetyGuard

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from secretsync.config import SyncSettings
    from secretsync.sync.dispatcher import ExportDispatcher

logger = structlog.get_logger(__name__)


@dataclass
class SyncSession:
    """Components of one run. Only valid inside ``open_session``."""

    settings: SyncSettings
    client: GithubClient
    guard: SafetyGuard
    audit_logger: AuditLogger
    _registries: dict[str, GithubSecretRegistry] = field(default_factory=dict)
    _dispatcher: ExportDispatcher | None = None
    _dispatch_client: GithubClient | None = None
    _stack: AsyncExitStack | None = None

    def registry_for(self, target: str) -> GithubSecretRegistry:
        registry = self._registries.get(target)
        if registry is None:
            registry = GithubSecretRegistry(self.client, target)
            self._registries[target] = registry
        return registry

    def worker(self, authority: SecretsFileAuthority | None = None) -> ExportWorker:
        """Export worker backed by ``authority`` (loaded from settings by default)."""
        if authority is None:
            authority = SecretsFileAuthority.from_settings(self.settings)
        return ExportWorker(
            authority,
            self.registry_for,
            audit_logger=self.audit_logger,
            guard=self.guard,
        )

    @property
    def uses_local_authority(self) -> bool:
        return not self.settings.ci and self.settings.has_local_authority

    async def dispatcher(self) -> ExportDispatcher:
        """Build the dispatcher on first use; remote dispatch needs its own token."""
        if self._dispatcher is not None:
            return self._dispatcher

        if self.uses_local_authority:
            logger.info("Authority secrets available locally; using direct propagation")
            self._dispatcher = LocalDispatcher(self.worker())
            return self._dispatcher

        source, token = self.settings.dispatch_token()
        logger.debug("Using dispatch token", source=source)
        client = GithubClient(
            token,
            api_url=self.settings.api_url,
            timeout=self.settings.api_timeout,
            mask_secrets=self.settings.security.mask_secrets,
            name="dispatch",
        )
        if self._stack is None:
            raise RuntimeError("Session not opened. Use 'async with open_session(...)'.")
        await self._stack.enter_async_context(client)
        self._dispatch_client = client
        self._dispatcher = RepositoryDispatcher(
            client,
            self.settings.authority_repo,
            event_type=self.settings.event_type,
            audit_logger=self.audit_logger,
        )
        return self._dispatcher

    async def requester(self) -> SecretSyncRequester:
        dispatcher = await self.dispatcher()
        # A local worker starts writing immediately; there is no workflow to wait for.
        initial_delay = 0.0 if isinstance(dispatcher, LocalDispatcher) else self.settings.initial_delay
        return SecretSyncRequester(
            self.registry_for,
            dispatcher,
            timeout=self.settings.poll_timeout,
            poll_interval=self.settings.poll_interval,
            initial_delay=initial_delay,
        )

    async def drain(self) -> None:
        if isinstance(self._dispatcher, LocalDispatcher):
            await self._dispatcher.drain()


@asynccontextmanager
async def open_session(settings: SyncSettings) -> AsyncIterator[SyncSession]:
    """
    Open the GitHub clients for one run and close them afterwards.

    Raises:
        ConfigError: If no GitHub token is configured.
    """
    async with AsyncExitStack() as stack:
        client = GithubClient(
            settings.api_token(),
            api_url=settings.api_url,
            timeout=settings.api_timeout,
            mask_secrets=settings.security.mask_secrets,
        )
        await stack.enter_async_context(client)

        session = SyncSession(
            settings=settings,
            client=client,
            guard=SafetyGuard(settings.security),
            audit_logger=AuditLogger(settings.security.audit_log),
            _stack=stack,
        )
        try:
            yield session
        finally:
            await session.drain()

# ABOUTME: Sync protocol package for secretsync
# ABOUTME: Re-exports the requester, dispatchers, worker, poller and stores

"""
The secret sync protocol.

    SecretSyncRequester -> ExportDispatcher -> ExportWorker
            ^                                       |
            +---- CompletionPoller <--- ConsumerRegistry
"""

from secretsync.sync.authority import SecretAuthority, SecretsFileAuthority
from secretsync.sync.dispatcher import ExportDispatcher, LocalDispatcher, RepositoryDispatcher
from secretsync.sync.models import (
    DispatchResult,
    DispatchStatus,
    ExportRequest,
    ExportResult,
    ExportStatus,
    PollResult,
    SyncOutcome,
    SyncReport,
    SyncResult,
)
from secretsync.sync.poller import CompletionPoller
from secretsync.sync.registry import ConsumerRegistry, GithubSecretRegistry, InMemoryRegistry
from secretsync.sync.requester import SecretSyncRequester
from secretsync.sync.worker import ExportWorker

__all__ = [
    "CompletionPoller",
    "ConsumerRegistry",
    "DispatchResult",
    "DispatchStatus",
    "ExportDispatcher",
    "ExportRequest",
    "ExportResult",
    "ExportStatus",
    "ExportWorker",
    "GithubSecretRegistry",
    "InMemoryRegistry",
    "LocalDispatcher",
    "PollResult",
    "RepositoryDispatcher",
    "SecretAuthority",
    "SecretSyncRequester",
    "SecretsFileAuthority",
    "SyncOutcome",
    "SyncReport",
    "SyncResult",
]

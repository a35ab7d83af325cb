# ABOUTME: Pytest fixtures and configuration for secretsync tests
# ABOUTME: Provides shared fixtures for unit and integration tests

import os
from collections.abc import AsyncIterator, Iterator
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import SecretStr

from secretsync.config import SecuritySettings, SyncSettings
from secretsync.sync.authority import SecretsFileAuthority
from secretsync.sync.registry import InMemoryRegistry
from secretsync.utils.client import GithubClient
from secretsync.utils.logging import AuditLogger
from secretsync.utils.safety import SafetyGuard

API_URL = "https://api.github.com"

# Environment variables that would leak into SyncSettings from a CI runner.
SETTINGS_ENV = (
    "GITHUB_REPOSITORY",
    "GITHUB_TOKEN",
    "GH_PAT",
    "PROPAGATE_TRIGGER_TOKEN",
    "PROPAGATE_SECRETS",
    "PROPAGATE_SECRETS_FILE",
    "CI",
    "GITHUB_ACTIONS",
    "GITHUB_EVENT_PATH",
    "SECRETSYNC_ENV_FILE",
    "MCP_READ_ONLY",
    "MCP_ALLOWED_OWNERS",
    "MCP_AUDIT_LOG",
)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[pytest.MonkeyPatch]:
    """Remove CI and token variables so settings only see what a test sets."""
    for name in SETTINGS_ENV:
        monkeypatch.delenv(name, raising=False)
    yield monkeypatch


@pytest.fixture
def mock_security_settings() -> SecuritySettings:
    """Create security settings for testing."""
    return SecuritySettings(
        read_only=False,
        audit_log=None,
        mask_secrets=True,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def read_only_security_settings() -> SecuritySettings:
    """Create read-only security settings for testing."""
    return SecuritySettings(
        read_only=True,
        audit_log=None,
        mask_secrets=True,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def sync_settings(
    clean_env: pytest.MonkeyPatch,  # noqa: ARG001
    mock_security_settings: SecuritySettings,
) -> SyncSettings:
    """Settings for a build of Bengo-Hub/app using remote dispatch."""
    return SyncSettings(
        authority_repo="Bengo-Hub/devops-k8s",
        target_repo="Bengo-Hub/app",
        gh_pat=SecretStr("ghp_test_token_1234"),
        propagate_trigger_token=SecretStr("ghp_trigger_token_5678"),
        poll_timeout=1.0,
        poll_interval=0.01,
        initial_delay=0.0,
        security=mock_security_settings,
    )


@pytest.fixture
def safety_guard(mock_security_settings: SecuritySettings) -> SafetyGuard:
    """Create a safety guard for testing."""
    return SafetyGuard(mock_security_settings)


@pytest.fixture
def read_only_safety_guard(read_only_security_settings: SecuritySettings) -> SafetyGuard:
    """Create a read-only safety guard for testing."""
    return SafetyGuard(read_only_security_settings)


@pytest.fixture
def authority() -> SecretsFileAuthority:
    """Authority holding the secrets most tests ask for."""
    return SecretsFileAuthority.from_mapping(
        {
            "DB_PASS": "postgres-s3cr3t",
            "API_KEY": "key-abc123",
            "REDIS_PASSWORD": "redis-pw",
        }
    )


@pytest.fixture
def registries() -> dict[str, InMemoryRegistry]:
    """Registries created on demand, keyed by target."""
    return {}


@pytest.fixture
def registry_for(registries: dict[str, InMemoryRegistry]):
    """Registry factory backed by the ``registries`` fixture."""

    def factory(target: str) -> InMemoryRegistry:
        if target not in registries:
            registries[target] = InMemoryRegistry(target)
        return registries[target]

    return factory


@pytest.fixture
def mock_audit_logger() -> MagicMock:
    return MagicMock(spec=AuditLogger)


@pytest.fixture
def mock_context() -> MagicMock:
    """Create a mock MCP context."""
    ctx = MagicMock()
    ctx.request_id = "test-request-123"
    ctx.report_progress = AsyncMock()
    return ctx


# Integration test fixtures


@pytest.fixture
def it_token() -> str | None:
    """Get the integration test token from the environment."""
    return os.environ.get("SECRETSYNC_IT_TOKEN")


@pytest.fixture
def it_repo() -> str | None:
    """Repository the integration tests may read and write secrets in."""
    return os.environ.get("SECRETSYNC_IT_REPO")


@pytest.fixture
async def live_github_client(it_token: str | None) -> AsyncIterator[GithubClient | None]:
    """Create a live GitHub client for integration tests."""
    if not it_token:
        yield None
        return

    client = GithubClient(SecretStr(it_token), api_url=API_URL, name="integration-test")
    async with client:
        yield client

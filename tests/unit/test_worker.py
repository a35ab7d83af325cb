# ABOUTME: Unit tests for the export worker
# ABOUTME: Tests validation, authority lookups, idempotent writes, and audit entries

from unittest.mock import MagicMock

import pytest
from pydantic import SecretStr

from secretsync.config import SecuritySettings
from secretsync.errors import RegistryError
from secretsync.sync.authority import SecretsFileAuthority
from secretsync.sync.models import ExportRequest, ExportStatus
from secretsync.sync.registry import InMemoryRegistry
from secretsync.sync.worker import ExportWorker
from secretsync.utils.safety import SafetyGuard


class FailingRegistry(InMemoryRegistry):
    """Registry whose writes always fail."""

    async def set_secret(self, name: str, value: SecretStr) -> None:
        raise RegistryError(f"Could not write secret {name} to {self.target}: 503")


@pytest.fixture
def worker(authority, registry_for, mock_audit_logger: MagicMock) -> ExportWorker:
    return ExportWorker(authority, registry_for, audit_logger=mock_audit_logger)


@pytest.mark.unit
class TestExportWorkerRun:
    """Tests for a single export."""

    async def test_exports_secret(self, worker: ExportWorker, registries):
        result = await worker.run(ExportRequest(secret_name="DB_PASS", target="svc-b"))

        assert result.status is ExportStatus.EXPORTED
        assert result.ok
        assert registries["svc-b"].snapshot() == {"DB_PASS": "postgres-s3cr3t"}

    async def test_idempotent(self, worker: ExportWorker, registries):
        request = ExportRequest(secret_name="DB_PASS", target="svc-b")

        await worker.run(request)
        after_first = registries["svc-b"].snapshot()
        await worker.run(request)

        assert registries["svc-b"].snapshot() == after_first
        assert registries["svc-b"].writes == 2

    async def test_overwrites_stale_value(self, authority, mock_audit_logger):
        registry = InMemoryRegistry("svc-b", {"DB_PASS": SecretStr("partial")})
        worker = ExportWorker(authority, lambda _target: registry, audit_logger=mock_audit_logger)

        await worker.run(ExportRequest(secret_name="DB_PASS", target="svc-b"))

        assert registry.snapshot() == {"DB_PASS": "postgres-s3cr3t"}

    async def test_not_found_in_authority(self, worker: ExportWorker, registries):
        result = await worker.run(ExportRequest(secret_name="UNKNOWN", target="svc-b"))

        assert result.status is ExportStatus.NOT_FOUND
        assert result.error == "not held by authority"
        assert "svc-b" not in registries or registries["svc-b"].writes == 0

    async def test_write_failure(self, authority, mock_audit_logger: MagicMock):
        worker = ExportWorker(
            authority, lambda target: FailingRegistry(target), audit_logger=mock_audit_logger
        )

        result = await worker.run(ExportRequest(secret_name="DB_PASS", target="svc-b"))

        assert result.status is ExportStatus.WRITE_FAILED
        assert "503" in result.error

    @pytest.mark.parametrize(
        "payload",
        [
            {"secret_name": "", "target": "svc-b"},
            {"secret_name": "DB_PASS", "target": ""},
            {"secret_name": "bad name", "target": "svc-b"},
            {"secret_name": "GITHUB_TOKEN", "target": "svc-b"},
            {"secret_name": "DB_PASS", "target": "org/repo/extra"},
        ],
    )
    async def test_invalid_request(self, worker: ExportWorker, registries, payload):
        result = await worker.run(payload)

        assert result.status is ExportStatus.INVALID
        assert all(registry.writes == 0 for registry in registries.values())

    async def test_accepts_payload_aliases(self, worker: ExportWorker, registries):
        result = await worker.run({"name": "API_KEY", "target_repo": "Bengo-Hub/app"})

        assert result.ok
        assert registries["Bengo-Hub/app"].snapshot() == {"API_KEY": "key-abc123"}

    async def test_owner_allowlist(self, authority, registry_for, registries):
        guard = SafetyGuard(SecuritySettings(allowed_owners=["Bengo-Hub"]))
        worker = ExportWorker(authority, registry_for, guard=guard)

        blocked = await worker.run(ExportRequest(secret_name="DB_PASS", target="evil/app"))
        allowed = await worker.run(ExportRequest(secret_name="DB_PASS", target="Bengo-Hub/app"))

        assert blocked.status is ExportStatus.INVALID
        assert "evil" in blocked.error
        assert allowed.ok
        assert "evil/app" not in registries


@pytest.mark.unit
class TestExportWorkerAudit:
    """Every attempt is audited, values never are."""

    async def test_audits_success(self, worker: ExportWorker, mock_audit_logger: MagicMock):
        await worker.run(ExportRequest(secret_name="DB_PASS", target="svc-b"))

        mock_audit_logger.log_write.assert_called_once_with(
            "export_secret", "svc-b", "exported", {"secret": "DB_PASS"}
        )

    async def test_audits_failure(self, worker: ExportWorker, mock_audit_logger: MagicMock):
        await worker.run(ExportRequest(secret_name="UNKNOWN", target="svc-b"))

        mock_audit_logger.log_write.assert_called_once_with(
            "export_secret",
            "svc-b",
            "not_found",
            {"secret": "UNKNOWN", "error": "not held by authority"},
        )

    async def test_value_never_audited(self, worker: ExportWorker, mock_audit_logger: MagicMock):
        await worker.run(ExportRequest(secret_name="DB_PASS", target="svc-b"))

        assert "postgres-s3cr3t" not in repr(mock_audit_logger.mock_calls)


@pytest.mark.unit
class TestExportWorkerRunEvent:
    """Tests for batched repository_dispatch payloads."""

    async def test_runs_each_name(self, worker: ExportWorker, registries):
        results = await worker.run_event(
            {"target_repo": "Bengo-Hub/app", "secrets": ["DB_PASS", "API_KEY"]}
        )

        assert [r.status for r in results] == [ExportStatus.EXPORTED, ExportStatus.EXPORTED]
        assert registries["Bengo-Hub/app"].names == ["API_KEY", "DB_PASS"]

    async def test_one_failure_does_not_stop_others(self, worker: ExportWorker, registries):
        results = await worker.run_event(
            {"target_repo": "Bengo-Hub/app", "secrets": ["UNKNOWN", "API_KEY"]}
        )

        assert [r.status for r in results] == [ExportStatus.NOT_FOUND, ExportStatus.EXPORTED]
        assert registries["Bengo-Hub/app"].names == ["API_KEY"]

    async def test_space_separated_names(self, worker: ExportWorker):
        results = await worker.run_event(
            {"target_repo": "Bengo-Hub/app", "secrets": "DB_PASS API_KEY"}
        )
        assert len(results) == 2
        assert all(r.ok for r in results)

    @pytest.mark.parametrize("secrets", [None, [], 42])
    async def test_payload_without_secrets(self, worker: ExportWorker, secrets):
        results = await worker.run_event({"target_repo": "Bengo-Hub/app", "secrets": secrets})

        assert len(results) == 1
        assert results[0].status is ExportStatus.INVALID
        assert results[0].error == "payload lists no secrets"

# ABOUTME: Unit tests for the secretsync command line
# ABOUTME: Runs ensure, export, and publish end to end against a mocked GitHub API

import base64
import json
from pathlib import Path

import httpx
import pytest
import respx
import structlog
from nacl import encoding, public

from secretsync.cli import build_parser, main, read_event_payload
from secretsync.errors import ConfigError

API = "https://api.github.com"
TARGET = "Bengo-Hub/app"
AUTHORITY = "Bengo-Hub/devops-k8s"
SECRET_RE = rf"{API}/repos/{TARGET}/actions/secrets/(?P<name>[A-Z_]+)$"

SECRETS_TEXT = "secret: DB_PASS\nvalue: postgres-s3cr3t\n---\nsecret: API_KEY\nvalue: key-abc123\n"


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch: pytest.MonkeyPatch):
    """Keep CLI runs from binding structlog to a captured stream."""

    def configure(*_args, **_kwargs) -> None:
        structlog.configure(logger_factory=structlog.ReturnLoggerFactory())

    monkeypatch.setattr("secretsync.cli.configure_logging", configure)
    yield
    structlog.reset_defaults()


@pytest.fixture
def cli_env(clean_env: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    clean_env.setenv("GITHUB_REPOSITORY", TARGET)
    clean_env.setenv("GH_PAT", "ghp_test_token")
    clean_env.setenv("PROPAGATE_TRIGGER_TOKEN", "ghp_trigger_token")
    clean_env.setenv("SECRETSYNC_POLL_TIMEOUT", "0.2")
    clean_env.setenv("SECRETSYNC_POLL_INTERVAL", "0.02")
    clean_env.setenv("SECRETSYNC_INITIAL_DELAY", "0")
    return clean_env


@pytest.fixture
def public_key_b64() -> str:
    return public.PrivateKey.generate().public_key.encode(encoding.Base64Encoder()).decode()


def _secret_routes(present: set[str]):
    """Mock the target's secrets endpoints; PUTs add to ``present``."""

    def get_secret(request: httpx.Request, name: str) -> httpx.Response:
        if name in present:
            return httpx.Response(200, json={"name": name})
        return httpx.Response(404, json={"message": "Not Found"})

    def put_secret(request: httpx.Request, name: str) -> httpx.Response:
        present.add(name)
        return httpx.Response(201)

    respx.get(url__regex=SECRET_RE).mock(side_effect=get_secret)
    return respx.put(url__regex=SECRET_RE).mock(side_effect=put_secret)


def _public_key_route(key_b64: str) -> None:
    respx.get(f"{API}/repos/{TARGET}/actions/secrets/public-key").mock(
        return_value=httpx.Response(200, json={"key_id": "k1", "key": key_b64})
    )


@pytest.mark.unit
class TestParser:
    def test_subcommand_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_ensure_requires_names(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["ensure"])

    def test_ensure_options(self):
        args = build_parser().parse_args(
            ["ensure", "DB_PASS", "API_KEY", "--timeout", "30", "--interval", "1", "--json"]
        )
        assert args.names == ["DB_PASS", "API_KEY"]
        assert args.timeout == 30.0
        assert args.interval == 1.0
        assert args.json is True


@pytest.mark.unit
class TestEnsureCommand:
    """Tests for `secretsync ensure`."""

    @respx.mock
    def test_all_present(self, cli_env, capsys):
        _secret_routes({"DB_PASS", "API_KEY"})
        dispatch = respx.post(f"{API}/repos/{AUTHORITY}/dispatches").mock(
            return_value=httpx.Response(204)
        )

        code = main(["ensure", "DB_PASS", "API_KEY"])

        out = capsys.readouterr().out
        assert code == 0
        assert "[OK] DB_PASS" in out
        assert "[OK] API_KEY" in out
        assert dispatch.call_count == 0

    @respx.mock
    def test_missing_secret_arrives(self, cli_env, capsys):
        present = {"DB_PASS"}
        _secret_routes(present)

        def dispatched(request: httpx.Request) -> httpx.Response:
            # The authority workflow "runs" as soon as it is triggered.
            present.update(json.loads(request.content)["client_payload"]["secrets"])
            return httpx.Response(204)

        dispatch = respx.post(f"{API}/repos/{AUTHORITY}/dispatches").mock(side_effect=dispatched)

        code = main(["ensure", "DB_PASS", "API_KEY"])

        out = capsys.readouterr().out
        assert code == 0
        assert "[OK] DB_PASS" in out
        assert "[SYNCED] API_KEY" in out
        assert dispatch.call_count == 1
        request = dispatch.calls.last.request
        assert request.headers["Authorization"] == "Bearer ghp_trigger_token"

    @respx.mock
    def test_timeout_fails_build(self, cli_env, capsys):
        _secret_routes(set())
        respx.post(f"{API}/repos/{AUTHORITY}/dispatches").mock(return_value=httpx.Response(204))

        code = main(["ensure", "API_KEY"])

        captured = capsys.readouterr()
        assert code == 1
        assert "[MISSING] API_KEY" in captured.out
        assert "  - API_KEY" in captured.err
        assert f"Check that {AUTHORITY} holds each of them." in captured.err
        assert "actions/workflows/propagate-secrets.yml" in captured.err

    @respx.mock
    def test_degraded_mode_exits_zero(self, cli_env, capsys):
        cli_env.setenv("SECRETSYNC_ALLOW_DEGRADED", "true")
        _secret_routes(set())
        respx.post(f"{API}/repos/{AUTHORITY}/dispatches").mock(return_value=httpx.Response(204))

        code = main(["ensure", "API_KEY"])

        assert code == 0
        assert "[MISSING] API_KEY" in capsys.readouterr().out

    @respx.mock
    def test_rejected_dispatch(self, cli_env, capsys):
        _secret_routes(set())
        respx.post(f"{API}/repos/{AUTHORITY}/dispatches").mock(
            return_value=httpx.Response(404, json={"message": "Not Found"})
        )

        code = main(["ensure", "API_KEY"])

        out = capsys.readouterr().out
        assert code == 1
        assert "dispatch rejected: GitHub API error (404)" in out

    @respx.mock
    def test_json_output(self, cli_env, capsys):
        _secret_routes({"DB_PASS"})

        code = main(["ensure", "DB_PASS", "--json"])

        report = json.loads(capsys.readouterr().out)
        assert code == 0
        assert report["target"] == TARGET
        assert report["secrets"]["DB_PASS"]["outcome"] == "already_present"

    @respx.mock
    def test_target_option_overrides_env(self, cli_env, capsys):
        route = respx.get(f"{API}/repos/org/other/actions/secrets/DB_PASS").mock(
            return_value=httpx.Response(200, json={"name": "DB_PASS"})
        )

        code = main(["ensure", "DB_PASS", "--target", "org/other"])

        assert code == 0
        assert route.call_count == 1

    @respx.mock
    def test_direct_propagation(self, cli_env, capsys, public_key_b64: str):
        """With the authority secrets available locally, no dispatch is sent."""
        cli_env.setenv("PROPAGATE_SECRETS", base64.b64encode(SECRETS_TEXT.encode()).decode())
        _public_key_route(public_key_b64)
        put = _secret_routes(set())
        dispatch = respx.post(f"{API}/repos/{AUTHORITY}/dispatches").mock(
            return_value=httpx.Response(204)
        )

        code = main(["ensure", "DB_PASS"])

        assert code == 0
        assert "[SYNCED] DB_PASS" in capsys.readouterr().out
        assert put.call_count == 1
        assert dispatch.call_count == 0

    def test_no_token(self, clean_env, capsys):
        clean_env.setenv("GITHUB_REPOSITORY", TARGET)

        code = main(["ensure", "DB_PASS"])

        assert code == 2
        assert "No GitHub token configured" in capsys.readouterr().err

    def test_invalid_configuration(self, clean_env, capsys):
        clean_env.setenv("SECRETSYNC_AUTHORITY_REPO", "not-a-repo")

        assert main(["ensure", "DB_PASS"]) == 2
        assert "Invalid configuration" in capsys.readouterr().err


@pytest.mark.unit
class TestExportCommand:
    """Tests for `secretsync export`."""

    @pytest.fixture
    def authority_env(self, cli_env):
        cli_env.setenv("PROPAGATE_SECRETS", base64.b64encode(SECRETS_TEXT.encode()).decode())
        return cli_env

    @respx.mock
    def test_export_from_event_file(
        self, authority_env, tmp_path: Path, capsys, public_key_b64: str
    ):
        _public_key_route(public_key_b64)
        put = _secret_routes(set())
        event = tmp_path / "event.json"
        event.write_text(
            json.dumps(
                {
                    "action": "propagate-secrets",
                    "client_payload": {"target_repo": TARGET, "secrets": ["DB_PASS", "API_KEY"]},
                }
            )
        )
        authority_env.setenv("GITHUB_EVENT_PATH", str(event))

        code = main(["export"])

        out = capsys.readouterr().out
        assert code == 0
        assert put.call_count == 2
        assert "Summary: 2 succeeded, 0 failed" in out
        assert "postgres-s3cr3t" not in out

    @respx.mock
    def test_export_names_from_arguments(self, authority_env, capsys, public_key_b64: str):
        _public_key_route(public_key_b64)
        put = _secret_routes(set())

        code = main(["export", "--target", TARGET, "API_KEY"])

        assert code == 0
        assert put.call_count == 1

    @respx.mock
    def test_export_unknown_secret_fails(self, authority_env, capsys, public_key_b64: str):
        _public_key_route(public_key_b64)
        _secret_routes(set())

        code = main(["export", "--target", TARGET, "API_KEY", "UNKNOWN"])

        out = capsys.readouterr().out
        assert code == 1
        assert "[NOT_FOUND] UNKNOWN" in out
        assert "Summary: 1 succeeded, 1 failed" in out

    def test_names_without_target(self, cli_env, capsys):
        assert main(["export", "API_KEY"]) == 2
        assert "--target is required" in capsys.readouterr().err

    def test_without_event_file(self, cli_env, capsys):
        assert main(["export"]) == 2
        assert "No event file" in capsys.readouterr().err


@pytest.mark.unit
class TestReadEventPayload:
    def test_reads_client_payload(self, tmp_path: Path):
        event = tmp_path / "event.json"
        event.write_text('{"client_payload": {"target_repo": "a/b", "secrets": ["X"]}}')
        assert read_event_payload(str(event)) == {"target_repo": "a/b", "secrets": ["X"]}

    def test_invalid_json(self, tmp_path: Path):
        event = tmp_path / "event.json"
        event.write_text("{not json")
        with pytest.raises(ConfigError, match="not valid JSON"):
            read_event_payload(str(event))

    def test_missing_payload(self, tmp_path: Path):
        event = tmp_path / "event.json"
        event.write_text('{"action": "push"}')
        with pytest.raises(ConfigError, match="no client_payload"):
            read_event_payload(str(event))


@pytest.mark.unit
class TestPublishCommand:
    """Tests for `secretsync publish`."""

    @respx.mock
    def test_publish(self, cli_env, tmp_path: Path, capsys):
        keypair = public.PrivateKey.generate()
        key_b64 = keypair.public_key.encode(encoding.Base64Encoder()).decode()
        secrets_file = tmp_path / "secrets.txt"
        secrets_file.write_text(SECRETS_TEXT)

        base = f"{API}/repos/{AUTHORITY}/actions/secrets"
        respx.get(f"{base}/public-key").mock(
            return_value=httpx.Response(200, json={"key_id": "k1", "key": key_b64})
        )
        put = respx.put(f"{base}/PROPAGATE_SECRETS").mock(return_value=httpx.Response(204))
        respx.get(f"{base}/PROPAGATE_SECRETS").mock(
            return_value=httpx.Response(200, json={"name": "PROPAGATE_SECRETS"})
        )

        code = main(["publish", str(secrets_file)])

        out = capsys.readouterr().out
        assert code == 0
        assert f"Set PROPAGATE_SECRETS in {AUTHORITY} (2 secrets)" in out
        assert "postgres-s3cr3t" not in out

        body = json.loads(put.calls.last.request.content)
        sealed = base64.b64decode(body["encrypted_value"])
        decoded = base64.b64decode(public.SealedBox(keypair).decrypt(sealed)).decode()
        assert decoded == SECRETS_TEXT

    def test_publish_empty_file(self, cli_env, tmp_path: Path, capsys):
        secrets_file = tmp_path / "secrets.txt"
        secrets_file.write_text("# nothing here\n")

        assert main(["publish", str(secrets_file)]) == 2
        assert "No secrets found" in capsys.readouterr().err

    def test_publish_missing_file(self, cli_env, tmp_path: Path, capsys):
        assert main(["publish", str(tmp_path / "missing.txt")]) == 2
        assert "Secrets file not readable" in capsys.readouterr().err

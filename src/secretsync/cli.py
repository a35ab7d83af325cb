# ABOUTME: Command line entry point for secretsync
# ABOUTME: ensure (build side), export (authority side), publish, and serve subcommands

"""
secretsync command line.

Application builds run:

    secretsync ensure DB_PASS API_KEY

The authority repository's propagate workflow runs:

    secretsync export            # reads client_payload from GITHUB_EVENT_PATH

Operators refresh the authority store with:

    secretsync publish secrets.txt

Results go to stdout; logs go to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import base64
import json
import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import SecretStr, ValidationError

from secretsync import __version__
from secretsync.config import SyncSettings, load_settings
from secretsync.errors import ConfigError, SecretSyncError
from secretsync.session import open_session
from secretsync.sync.authority import parse_secrets_text
from secretsync.utils.logging import configure_logging

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from secretsync.sync.models import ExportResult, SyncReport

logger = structlog.get_logger(__name__)

# Name of the authority secret holding the base64 secrets file.
AUTHORITY_SECRET = "PROPAGATE_SECRETS"

MARKERS = {"already_present": "[OK]", "synced": "[SYNCED]", "timed_out": "[MISSING]"}


# =============================================================================
# ensure
# =============================================================================


def _print_report(report: SyncReport, as_json: bool) -> None:
    if as_json:
        print(json.dumps(report.to_dict(), indent=2))
        return

    for name, result in report.results.items():
        line = f"{MARKERS[result.outcome.value]} {name}"
        if result.error:
            line += f" ({result.error})"
        print(line)


def _print_failure_help(report: SyncReport, settings: SyncSettings) -> None:
    err = sys.stderr
    print(f"Timeout waiting for secrets to be propagated to {report.target}.", file=err)
    print("The following secrets are still missing:", file=err)
    for name in report.missing:
        print(f"  - {name}", file=err)
    print(f"Check that {settings.authority_repo} holds each of them.", file=err)
    print(f"Workflow runs: {settings.workflow_runs_url}", file=err)


async def _ensure(args: argparse.Namespace, settings: SyncSettings) -> int:
    target = args.target or settings.resolve_target_repo()
    async with open_session(settings) as session:
        requester = await session.requester()
        report = await requester.ensure_secrets(
            args.names,
            target,
            timeout=args.timeout,
            poll_interval=args.interval,
        )

    _print_report(report, args.json)
    if report.ok:
        return 0

    _print_failure_help(report, settings)
    if settings.allow_degraded:
        logger.warning("Continuing without secrets (degraded mode)", missing=report.missing)
        return 0
    return 1


def ensure_command(args: argparse.Namespace, settings: SyncSettings) -> int:
    return asyncio.run(_ensure(args, settings))


# =============================================================================
# export
# =============================================================================


def read_event_payload(path: str | None) -> Mapping[str, Any]:
    """Load client_payload from a repository_dispatch event file."""
    event_path = path or os.environ.get("GITHUB_EVENT_PATH", "")
    if not event_path:
        raise ConfigError("No event file: pass --event-path or set GITHUB_EVENT_PATH")
    try:
        event = json.loads(Path(event_path).read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Event file not readable: {event_path} ({e.strerror})") from e
    except ValueError as e:
        raise ConfigError(f"Event file is not valid JSON: {event_path}") from e

    payload = event.get("client_payload") if isinstance(event, dict) else None
    if not isinstance(payload, dict):
        raise ConfigError(f"Event file has no client_payload: {event_path}")
    return payload


def _print_export_results(results: Iterable[ExportResult]) -> int:
    failed = 0
    for result in results:
        if result.ok:
            print(f"[OK] {result.secret_name} -> {result.target}")
        else:
            failed += 1
            name = result.secret_name or "<none>"
            print(f"[{result.status.value.upper()}] {name} -> {result.target}: {result.error}")
    return failed


async def _export(args: argparse.Namespace, settings: SyncSettings) -> int:
    if args.names:
        if not args.target:
            raise ConfigError("--target is required when secret names are given")
        payload: Mapping[str, Any] = {"target_repo": args.target, "secrets": list(args.names)}
    else:
        payload = read_event_payload(args.event_path)

    async with open_session(settings) as session:
        results = await session.worker().run_event(payload)

    failed = _print_export_results(results)
    print(f"Summary: {len(results) - failed} succeeded, {failed} failed")
    return 1 if failed else 0


def export_command(args: argparse.Namespace, settings: SyncSettings) -> int:
    return asyncio.run(_export(args, settings))


# =============================================================================
# publish
# =============================================================================


async def _publish(args: argparse.Namespace, settings: SyncSettings) -> int:
    path = Path(args.file)
    try:
        raw = path.read_bytes()
    except OSError as e:
        raise ConfigError(f"Secrets file not readable: {path} ({e.strerror})") from e

    count = len(parse_secrets_text(raw.decode("utf-8", errors="replace")))
    if not count:
        raise ConfigError(f"No secrets found in {path}")

    repo = args.repo or settings.authority_repo
    encoded = SecretStr(base64.b64encode(raw).decode("ascii"))
    logger.info("Publishing authority secrets", repo=repo, count=count)

    async with open_session(settings) as session:
        blocked = session.guard.check_target("publish_secrets", repo)
        if blocked:
            session.audit_logger.log_blocked("publish_secrets", repo, blocked.reason)
            raise ConfigError(blocked.reason)

        registry = session.registry_for(repo)
        await registry.set_secret(AUTHORITY_SECRET, encoded)
        verified = await registry.has_secret(AUTHORITY_SECRET)
        session.audit_logger.log_write(
            "publish_secrets", repo, "success", {"count": count, "verified": verified}
        )

    print(f"Set {AUTHORITY_SECRET} in {repo} ({count} secrets)")
    if not verified:
        logger.warning("Could not verify secret after writing it", repo=repo)
    return 0


def publish_command(args: argparse.Namespace, settings: SyncSettings) -> int:
    return asyncio.run(_publish(args, settings))


# =============================================================================
# serve
# =============================================================================


def serve_command(args: argparse.Namespace, settings: SyncSettings) -> int:  # noqa: ARG001
    from secretsync.server import main as serve_main

    serve_main()
    return 0


# =============================================================================
# PARSER
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="secretsync",
        description="Synchronize GitHub Actions secrets from an authority repository",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    ensure_parser = subparsers.add_parser(
        "ensure", help="Make sure required secrets exist, requesting missing ones"
    )
    ensure_parser.add_argument("names", nargs="+", metavar="NAME", help="Required secret names")
    ensure_parser.add_argument(
        "--target", help="Repository that needs the secrets (default: GITHUB_REPOSITORY)"
    )
    ensure_parser.add_argument("--timeout", type=float, help="Seconds to wait per secret")
    ensure_parser.add_argument("--interval", type=float, help="Seconds between presence checks")
    ensure_parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    ensure_parser.set_defaults(func=ensure_command)

    export_parser = subparsers.add_parser(
        "export", help="Copy secrets from the authority into a target repository"
    )
    export_parser.add_argument(
        "--event-path", help="repository_dispatch event file (default: GITHUB_EVENT_PATH)"
    )
    export_parser.add_argument("--target", help="Target repository, used with NAME arguments")
    export_parser.add_argument("names", nargs="*", metavar="NAME", help="Secret names to export")
    export_parser.set_defaults(func=export_command)

    publish_parser = subparsers.add_parser(
        "publish", help=f"Store a secrets file as {AUTHORITY_SECRET} in the authority repository"
    )
    publish_parser.add_argument("file", help="Secrets file (secret:/value:/--- format)")
    publish_parser.add_argument("--repo", help="Authority repository (default: configured)")
    publish_parser.set_defaults(func=publish_command)

    serve_parser = subparsers.add_parser("serve", help="Run the MCP server on stdio")
    serve_parser.set_defaults(func=serve_command)

    return parser


def main(argv: Iterable[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        settings = load_settings()
    except ValidationError as e:
        print(f"Invalid configuration:\n{e}", file=sys.stderr)
        return 2

    configure_logging(
        level="DEBUG" if args.verbose else settings.log_level,
        json_output=settings.json_logs,
    )

    try:
        return int(args.func(args, settings))
    except ConfigError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 2
    except SecretSyncError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())

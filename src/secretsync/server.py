# ABOUTME: FastMCP server initialization and main entry point
# ABOUTME: Exposes secret presence checks and sync requests as MCP tools

"""secretsync MCP server - inspect and request repository secrets."""

from __future__ import annotations

import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
from mcp.server.fastmcp import Context, FastMCP
from pydantic import BaseModel, Field

from secretsync.config import SyncSettings, load_settings, mask_token
from secretsync.errors import ConfigError, RegistryError, SecretSyncError
from secretsync.session import SyncSession, open_session
from secretsync.sync.models import is_valid_secret_name
from secretsync.sync.requester import unique_names
from secretsync.utils.logging import AuditLogger, configure_logging, set_correlation_id
from secretsync.utils.safety import SafetyGuard

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

MCPContext = Context[Any, Any]
logger = structlog.get_logger(__name__)

# Global state (initialized in lifespan)
_settings: SyncSettings | None = None
_session: SyncSession | None = None


@asynccontextmanager
async def lifespan(_server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    """Manage server lifecycle: load config, open GitHub clients, cleanup on shutdown."""
    global _settings, _session

    logger.info("Starting secretsync MCP server")

    _settings = load_settings()
    configure_logging(level=_settings.log_level, json_output=_settings.json_logs)

    async with open_session(_settings) as session:
        _session = session
        logger.info(
            "Connected to GitHub",
            api_url=_settings.api_url,
            authority=_settings.authority_repo,
        )
        try:
            yield {"settings": _settings, "session": session}
        finally:
            _session = None

    logger.info("secretsync MCP server stopped")


mcp = FastMCP("secretsync", lifespan=lifespan)


def get_settings() -> SyncSettings:
    """Get server settings."""
    if not _settings:
        raise RuntimeError("Server not initialized")
    return _settings


def get_session() -> SyncSession:
    """Get the open sync session."""
    if not _session:
        raise RuntimeError("Server not initialized")
    return _session


def get_safety_guard() -> SafetyGuard:
    return get_session().guard


def get_audit_logger() -> AuditLogger:
    return get_session().audit_logger


def resolve_target(target: str | None) -> str:
    return target or get_settings().resolve_target_repo()


# =============================================================================
# READ OPERATIONS (Always Available)
# =============================================================================


class CheckSecretsParams(BaseModel):
    """Parameters for check_secrets tool."""

    names: list[str] = Field(
        default_factory=list,
        description="Secret names to check; empty lists every secret in the repository",
    )
    target: str | None = Field(
        default=None, description="Repository to inspect (owner/repo, default: GITHUB_REPOSITORY)"
    )


@mcp.tool()
async def check_secrets(params: CheckSecretsParams, ctx: MCPContext) -> str:
    """
    Report which Actions secrets a repository has.

    Only names are ever returned; GitHub does not expose values. Use this
    before ensure_secrets to see what a build would request.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    try:
        target = resolve_target(params.target)
    except ConfigError as e:
        return str(e)

    blocked = get_safety_guard().check_read_operation("check_secrets")
    if blocked:
        get_audit_logger().log_blocked("check_secrets", target, blocked.reason)
        return blocked.format_message()

    registry = get_session().registry_for(target)
    try:
        if not params.names:
            names = await registry.list_secrets()
            get_audit_logger().log_read("check_secrets", target)
            if not names:
                return f"No secrets found in {target}."
            lines = [f"{target} has {len(names)} secret(s):", ""]
            lines.extend(f"- {name}" for name in sorted(names))
            return "\n".join(lines)

        names = unique_names(params.names)
        invalid = [name for name in names if not is_valid_secret_name(name)]
        present = [
            name for name in names if name not in invalid and await registry.has_secret(name)
        ]
        get_audit_logger().log_read("check_secrets", target)

    except RegistryError as e:
        get_audit_logger().log_error("check_secrets", target, str(e))
        return str(e)

    missing = [name for name in names if name not in present and name not in invalid]
    lines = [f"Secrets in {target}:", ""]
    for name in names:
        if name in invalid:
            marker = "[INVALID NAME]"
        else:
            marker = "[OK]" if name in present else "[MISSING]"
        lines.append(f"- {name} {marker}")
    if missing:
        lines.extend(["", f"{len(missing)} missing. Use ensure_secrets to request them."])
    return "\n".join(lines)


# =============================================================================
# WRITE OPERATIONS (Require MCP_READ_ONLY=false)
# =============================================================================


class EnsureSecretsParams(BaseModel):
    """Parameters for ensure_secrets tool."""

    names: list[str] = Field(min_length=1, description="Secret names the repository needs")
    target: str | None = Field(
        default=None, description="Repository that needs them (default: GITHUB_REPOSITORY)"
    )
    timeout: float | None = Field(
        default=None, gt=0, le=600, description="Seconds to wait per secret (default: configured)"
    )


@mcp.tool()
async def ensure_secrets(params: EnsureSecretsParams, ctx: MCPContext) -> str:
    """
    Make sure a repository has the named secrets.

    Secrets already present are left alone. Missing ones are requested from
    the authority repository, and the call waits until they appear or the
    timeout passes. Values are never returned.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    try:
        target = resolve_target(params.target)
    except ConfigError as e:
        return str(e)

    guard = get_safety_guard()
    blocked = guard.check_write_operation("ensure_secrets") or guard.check_target(
        "ensure_secrets", target
    )
    if blocked:
        get_audit_logger().log_blocked("ensure_secrets", target, blocked.reason)
        return blocked.format_message()

    names = unique_names(params.names)
    try:
        await ctx.report_progress(0, 1, f"Checking {len(names)} secret(s) in {target}")
        requester = await get_session().requester()
        report = await requester.ensure_secrets(names, target, timeout=params.timeout)
        await ctx.report_progress(1, 1, "Done")
    except SecretSyncError as e:
        get_audit_logger().log_error("ensure_secrets", target, str(e))
        return str(e)

    get_audit_logger().log_write(
        "ensure_secrets",
        target,
        "success" if report.ok else "incomplete",
        {"outcomes": {name: outcome.value for name, outcome in report.outcomes.items()}},
    )

    lines = [f"Secret sync for {target}:", ""]
    for name, result in report.results.items():
        line = f"- {name}: {result.outcome.value}"
        if result.error:
            line += f" ({result.error})"
        lines.append(line)

    if not report.ok:
        settings = get_settings()
        lines.extend(
            [
                "",
                f"Still missing: {', '.join(report.missing)}",
                f"Check that {settings.authority_repo} holds each of them.",
                f"Workflow runs: {settings.workflow_runs_url}",
            ]
        )
    return "\n".join(lines)


# =============================================================================
# MCP RESOURCES
# =============================================================================


@mcp.resource("secretsync://config")
async def get_config_resource() -> str:
    """Get the active sync configuration (tokens masked)."""
    settings = get_settings()

    try:
        source, token = settings.dispatch_token()
        dispatch = f"{source} ({mask_token(token.get_secret_value())})"
    except ConfigError:
        dispatch = "not configured"

    mode = "direct propagation" if get_session().uses_local_authority else "repository_dispatch"
    return (
        "Sync Configuration:\n"
        f"  Authority repository: {settings.authority_repo}\n"
        f"  Target repository: {settings.target_repo or '(detect)'}\n"
        f"  Dispatch mode: {mode}\n"
        f"  Dispatch token: {dispatch}\n"
        f"  Event type: {settings.event_type}\n"
        f"  Poll timeout: {settings.poll_timeout}s every {settings.poll_interval}s "
        f"(initial delay {settings.initial_delay}s)"
    )


@mcp.resource("secretsync://security")
async def get_security_resource() -> str:
    """Get current security settings."""
    sec = get_settings().security

    owners = ", ".join(sec.allowed_owners) if sec.allowed_owners else "(any)"
    return (
        "Security Settings:\n"
        f"  Read-only mode: {sec.read_only}\n"
        f"  Allowed owners: {owners}\n"
        f"  Secret masking: {sec.mask_secrets}\n"
        f"  Rate limit: {sec.rate_limit_calls} calls per {sec.rate_limit_window}s"
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


def main() -> None:
    """Run the secretsync MCP server."""
    configure_logging(level="INFO")
    logger.info("secretsync MCP server starting")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Server interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("Server error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()

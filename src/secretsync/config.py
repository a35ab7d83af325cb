# ABOUTME: Configuration management for the secret sync tooling
# ABOUTME: Handles environment variables, token precedence, and safety settings

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module handles all configuration for secretsync. It:

1. READS environment variables (like GITHUB_REPOSITORY, PROPAGATE_TRIGGER_TOKEN)
2. VALIDATES them (repository slugs, positive timeouts, log levels)
3. PROVIDES typed access to settings throughout the application

The same settings object drives both sides of the protocol:

- The REQUESTER side runs inside an application repository's build. It needs
  the target repository, a token that can read its Actions secrets, and a
  token that can fire a repository_dispatch at the authority repository.

- The WORKER side runs inside the authority repository's workflow. It needs
  the secrets file (or the base64 blob it was decoded from) and a token that
  can write Actions secrets into target repositories.

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

Repositories:
    SECRETSYNC_AUTHORITY_REPO -> Repository holding the authoritative secrets
    GITHUB_REPOSITORY         -> Repository that needs the secrets (set by Actions)

Tokens (dispatch precedence, first non-empty wins):
    PROPAGATE_TRIGGER_TOKEN   -> Dedicated token for repository_dispatch
    GH_PAT                    -> Personal access token
    GITHUB_TOKEN              -> Workflow token

Polling:
    SECRETSYNC_POLL_TIMEOUT   -> Seconds to wait for secrets to appear (default: 60)
    SECRETSYNC_POLL_INTERVAL  -> Seconds between presence checks (default: 2)
    SECRETSYNC_INITIAL_DELAY  -> Seconds before the first check (default: 5)

Authority store:
    PROPAGATE_SECRETS_FILE    -> Path to the decoded secrets file
    PROPAGATE_SECRETS         -> Base64 encoded secrets file

Security settings (MCP_ prefix):
    MCP_READ_ONLY             -> Block dispatch/export/publish from the MCP server
    MCP_ALLOWED_OWNERS        -> JSON list of owners the worker may export to
    MCP_AUDIT_LOG             -> Path to audit log file
"""

from __future__ import annotations

import os
import re
import shutil
import subprocess
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated

import structlog
from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from secretsync.errors import ConfigError

logger = structlog.get_logger(__name__)

# owner/repo, as GitHub spells it in GITHUB_REPOSITORY
REPO_PATTERN = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,38})/[A-Za-z0-9._-]{1,100}$")

# Order matters: the first configured token is used for dispatch.
DISPATCH_TOKEN_SOURCES = ("PROPAGATE_TRIGGER_TOKEN", "GH_PAT", "GITHUB_TOKEN")


def validate_repo_slug(value: str) -> str:
    """Return ``value`` stripped if it looks like ``owner/repo``, else raise ValueError."""
    value = value.strip()
    if not REPO_PATTERN.match(value):
        raise ValueError(f"Expected 'owner/repo', got '{value}'")
    return value


def mask_token(token: str) -> str:
    """
    Render a token for debug output.

    Shows the first and last four characters so an operator can tell which
    credential was picked without the token itself ending up in build logs.
    Tokens too short to mask safely are fully hidden.
    """
    if len(token) <= 8:
        return "****"
    return f"{token[:4]}****{token[-4:]}"


# =============================================================================
# SECURITY SETTINGS
# =============================================================================


class SecuritySettings(BaseSettings):
    """
    Security-related configuration.

    These settings guard the write paths. The MCP server starts read-only:
    an assistant can inspect which secrets a repository is missing, but it
    cannot fire dispatches until MCP_READ_ONLY=false.

    The owner allowlist is enforced by the export worker itself, so a
    dispatch naming a repository outside the organisation is rejected no
    matter who sent it.
    """

    model_config = SettingsConfigDict(env_prefix="MCP_")

    read_only: bool = Field(
        default=True,
        description="Block dispatch, export and publish from the MCP server",
    )

    audit_log: Path | None = Field(
        default=None,
        description="Path to audit log file",
    )
    # When None, audit entries go through structlog to stderr.

    mask_secrets: bool = Field(
        default=True,
        description="Mask sensitive values in API responses",
    )

    rate_limit_calls: int = Field(default=100, description="Maximum API calls per window")

    rate_limit_window: int = Field(default=60, description="Rate limit window in seconds")

    allowed_owners: list[str] = Field(
        default_factory=list,
        description="Owners the export worker may write to (empty = any)",
    )
    # Set as JSON: MCP_ALLOWED_OWNERS='["Bengo-Hub"]'

    @field_validator("allowed_owners")
    @classmethod
    def normalize_owners(cls, v: list[str]) -> list[str]:
        """GitHub owner names are case-insensitive; compare them lowercased."""
        return [owner.strip().lower() for owner in v if owner.strip()]


# =============================================================================
# MAIN SETTINGS
# =============================================================================


class SyncSettings(BaseSettings):
    """
    Main configuration for both the requester and the export worker.

    USAGE:
    ------
        settings = load_settings()
        settings.authority_repo        # "Bengo-Hub/devops-k8s"
        settings.resolve_target_repo() # "Bengo-Hub/truload-backend"
        source, token = settings.dispatch_token()
    """

    model_config = SettingsConfigDict(
        env_prefix="SECRETSYNC_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    # -------------------------------------------------------------------------
    # REPOSITORIES
    # -------------------------------------------------------------------------

    authority_repo: str = Field(
        default="Bengo-Hub/devops-k8s",
        description="Repository that owns the authoritative secrets",
    )

    target_repo: str = Field(
        default="",
        validation_alias="GITHUB_REPOSITORY",
        description="Repository that needs the secrets",
    )
    # Empty means "detect": see resolve_target_repo().

    api_url: str = Field(default="https://api.github.com", description="GitHub REST API base URL")

    api_timeout: float = Field(default=30.0, gt=0, description="HTTP timeout in seconds")

    # -------------------------------------------------------------------------
    # TOKENS
    # -------------------------------------------------------------------------
    # Each token keeps its conventional environment name. None of them carry
    # the SECRETSYNC_ prefix because CI systems already export them that way.

    propagate_trigger_token: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="PROPAGATE_TRIGGER_TOKEN",
    )

    gh_pat: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="GH_PAT",
    )

    github_token: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="GITHUB_TOKEN",
    )

    event_type: str = Field(
        default="propagate-secrets",
        description="repository_dispatch event type the authority workflow listens for",
    )

    # -------------------------------------------------------------------------
    # POLLING
    # -------------------------------------------------------------------------

    poll_timeout: float = Field(default=60.0, gt=0, description="Seconds to wait per secret")

    poll_interval: float = Field(default=2.0, gt=0, description="Seconds between checks")

    initial_delay: float = Field(
        default=5.0,
        ge=0,
        description="Seconds to wait for the authority workflow to start",
    )
    # GitHub Actions takes a few seconds to pick up a dispatch; checking
    # before then only burns API calls. Counted against poll_timeout.

    # -------------------------------------------------------------------------
    # AUTHORITY STORE
    # -------------------------------------------------------------------------

    secrets_file: Path | None = Field(
        default=None,
        validation_alias="PROPAGATE_SECRETS_FILE",
        description="Decoded authority secrets file",
    )

    encoded_secrets: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="PROPAGATE_SECRETS",
        description="Base64 encoded authority secrets file",
    )

    # -------------------------------------------------------------------------
    # RUNTIME BEHAVIOUR
    # -------------------------------------------------------------------------

    ci: bool = Field(
        default=False,
        validation_alias=AliasChoices("CI", "GITHUB_ACTIONS"),
        description="Running in CI; forces remote dispatch",
    )

    allow_degraded: bool = Field(
        default=False,
        description="Report missing secrets but exit successfully",
    )

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )

    json_logs: bool = Field(default=False, description="Emit JSON log lines")

    security: SecuritySettings = Field(default_factory=SecuritySettings)

    # -------------------------------------------------------------------------
    # VALIDATORS
    # -------------------------------------------------------------------------

    @field_validator("authority_repo")
    @classmethod
    def validate_authority_repo(cls, v: str) -> str:
        return validate_repo_slug(v)

    @field_validator("target_repo")
    @classmethod
    def validate_target_repo(cls, v: str) -> str:
        # Empty is allowed here; detection happens lazily.
        return validate_repo_slug(v) if v.strip() else ""

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            v = f"https://{v}"
        return v.rstrip("/")

    # -------------------------------------------------------------------------
    # COMPUTED VALUES
    # -------------------------------------------------------------------------

    def dispatch_token(self) -> tuple[str, SecretStr]:
        """
        Pick the token used to trigger the authority workflow.

        Precedence follows DISPATCH_TOKEN_SOURCES. A dedicated trigger token
        is preferred because the workflow token of an application repository
        usually cannot dispatch events to another repository.

        Returns:
            (environment variable name, token)

        Raises:
            ConfigError: If no token is configured.
        """
        candidates = {
            "PROPAGATE_TRIGGER_TOKEN": self.propagate_trigger_token,
            "GH_PAT": self.gh_pat,
            "GITHUB_TOKEN": self.github_token,
        }
        for source in DISPATCH_TOKEN_SOURCES:
            token = candidates[source]
            if token.get_secret_value():
                return source, token
        raise ConfigError(
            "No authentication token available for dispatch "
            "(PROPAGATE_TRIGGER_TOKEN, GH_PAT, or GITHUB_TOKEN required)"
        )

    def api_token(self) -> SecretStr:
        """Token for secret reads and writes; GH_PAT first, then GITHUB_TOKEN."""
        for token in (self.gh_pat, self.github_token, self.propagate_trigger_token):
            if token.get_secret_value():
                return token
        raise ConfigError("No GitHub token configured (GH_PAT or GITHUB_TOKEN required)")

    def resolve_target_repo(self) -> str:
        """
        Return the repository that needs the secrets.

        GITHUB_REPOSITORY wins when set. Outside Actions we ask the gh CLI
        about the current checkout, which is how developers usually run the
        build script locally.
        """
        if self.target_repo:
            return self.target_repo

        detected = detect_repository()
        if not detected:
            raise ConfigError(
                "Could not detect repository name. "
                "Set GITHUB_REPOSITORY (owner/repo) or run inside a gh-authenticated checkout"
            )
        return detected

    @property
    def has_local_authority(self) -> bool:
        """True when the authority secrets can be read from this machine."""
        if self.secrets_file is not None and self.secrets_file.is_file():
            return True
        return bool(self.encoded_secrets.get_secret_value())

    @property
    def workflow_runs_url(self) -> str:
        """Where an operator should look when exports never arrive."""
        return (
            f"https://github.com/{self.authority_repo}/actions/workflows/"
            f"{self.event_type}.yml"
        )


def detect_repository() -> str:
    """
    Ask ``gh repo view`` for the current repository.

    Returns an empty string when gh is missing, unauthenticated, or the
    working directory is not a GitHub checkout.
    """
    gh = shutil.which("gh")
    if gh is None:
        logger.debug("gh CLI not found; cannot detect repository")
        return ""

    try:
        result = subprocess.run(
            [gh, "repo", "view", "--json", "nameWithOwner", "-q", ".nameWithOwner"],
            capture_output=True,
            text=True,
            timeout=15,
            check=False,
        )
    except (subprocess.SubprocessError, OSError) as e:
        logger.warning("gh repo view failed", error=str(e))
        return ""

    if result.returncode != 0:
        logger.warning("gh repo view failed or is unauthenticated", returncode=result.returncode)
        return ""

    name = result.stdout.strip()
    try:
        return validate_repo_slug(name)
    except ValueError:
        logger.warning("gh returned an unexpected repository name", value=name)
        return ""


# =============================================================================
# SETTINGS LOADER
# =============================================================================


def load_settings() -> SyncSettings:
    """
    Load settings from the environment with validation.

    If SECRETSYNC_ENV_FILE is set, variables are also read from that file,
    which is handy for running the requester on a workstation.

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    return SyncSettings(
        _env_file=os.environ.get("SECRETSYNC_ENV_FILE"),
    )

# ABOUTME: GitHub REST API client wrapper with retry logic and error handling
# ABOUTME: Provides async access to Actions secrets and repository_dispatch

"""
GitHub API client with retry logic and structured error handling.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module provides the HTTP client secretsync uses to talk to GitHub.
It handles:

1. HTTP COMMUNICATION: Making requests to the GitHub REST API
2. AUTHENTICATION: Attaching Bearer tokens to requests
3. ERROR HANDLING: Converting HTTP errors to GithubError
4. RETRY LOGIC: Retrying requests that timed out
5. SECRET MASKING: Hiding sensitive data in API responses

=============================================================================
ENDPOINTS USED
=============================================================================

    GET  /repos/{repo}/actions/secrets             - List secret names
    GET  /repos/{repo}/actions/secrets/{name}      - Secret metadata (404 if absent)
    GET  /repos/{repo}/actions/secrets/public-key  - Key used to seal new values
    PUT  /repos/{repo}/actions/secrets/{name}      - Create or update a secret
    POST /repos/{repo}/dispatches                  - Fire a repository_dispatch event

GitHub never returns secret values. Reads only tell us whether a name exists,
which is exactly what the presence check and the completion poller need.

Writes must be sealed with the repository's public key before upload; see
secretsync.sync.registry for that step. This client only moves the already
encrypted blob.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from secretsync.errors import GithubError

if TYPE_CHECKING:
    from pydantic import SecretStr

logger = structlog.get_logger(__name__)

GITHUB_API_VERSION = "2022-11-28"

# GitHub caps per_page at 100 for the secrets listing.
PAGE_SIZE = 100


# =============================================================================
# SECRET MASKING PATTERNS
# =============================================================================

SECRET_PATTERNS = [
    (re.compile(r"(token[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(password[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(secret[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(api[_-]?key[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(bearer\s+)[^\s\"']+", re.I), r"\1***MASKED***"),
]

SENSITIVE_KEYS = frozenset(
    [
        "token",
        "password",
        "secret",
        "api_key",
        "apikey",
        "api-key",
        "authorization",
        "auth",
        "credential",
        "credentials",
        "encrypted_value",
        "value",
    ]
)


# =============================================================================
# DATA MODELS
# =============================================================================


@dataclass
class RepoPublicKey:
    """
    Public key GitHub hands out for sealing secret values.

    key_id must be sent back alongside the encrypted value so GitHub knows
    which of its private keys opens the box.
    """

    key_id: str
    key: str

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> RepoPublicKey:
        return cls(key_id=str(data.get("key_id", "")), key=str(data.get("key", "")))


# =============================================================================
# GITHUB CLIENT
# =============================================================================


class GithubClient:
    """
    Async GitHub API client with retry logic.

    ALWAYS use the context manager pattern:
        async with GithubClient(api_url, token) as client:
            exists = await client.repo_secret_exists("owner/repo", "DB_PASS")

    Timeouts are retried with exponential backoff (3 attempts). HTTP errors
    are not retried: a 403 will still be a 403 a second later.
    """

    def __init__(
        self,
        token: SecretStr,
        api_url: str = "https://api.github.com",
        timeout: float = 30.0,
        mask_secrets: bool = True,
        name: str = "github",
    ) -> None:
        """
        Initialize GitHub client.

        Args:
            token: Token sent as a Bearer credential
            api_url: REST API base URL (GitHub Enterprise uses /api/v3)
            timeout: HTTP request timeout in seconds
            mask_secrets: Whether to mask sensitive data in responses
            name: Label used in log lines to tell clients apart
        """
        self._token = token
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout
        self._mask_secrets = mask_secrets
        self._name = name
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> GithubClient:
        self._client = httpx.AsyncClient(
            base_url=self._api_url,
            headers={
                "Authorization": f"Bearer {self._token.get_secret_value()}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": GITHUB_API_VERSION,
            },
            timeout=self._timeout,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _mask_response(self, data: Any) -> Any:
        """
        Mask sensitive values in response data.

        Recurses through dicts and lists; strings are scrubbed with
        SECRET_PATTERNS, dict values under SENSITIVE_KEYS are replaced outright.
        """
        if not self._mask_secrets:
            return data

        if isinstance(data, str):
            masked_str = data
            for pattern, replacement in SECRET_PATTERNS:
                masked_str = pattern.sub(replacement, masked_str)
            return masked_str

        if isinstance(data, dict):
            masked_dict: dict[str, Any] = {}
            for k, v in data.items():
                if k.lower() in SENSITIVE_KEYS:
                    masked_dict[k] = "***MASKED***"
                else:
                    masked_dict[k] = self._mask_response(v)
            return masked_dict

        if isinstance(data, list):
            return [self._mask_response(item) for item in data]

        return data

    @retry(
        retry=retry_if_exception_type(httpx.TimeoutException),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
        mask: bool = True,
    ) -> dict[str, Any]:
        """
        Make HTTP request to the GitHub API.

        Args:
            method: HTTP method ("GET", "PUT", "POST")
            path: API path (e.g., "/repos/owner/repo/dispatches")
            params: URL query parameters (optional)
            json_data: JSON request body (optional)
            mask: Apply response masking. The public-key endpoint opts out
                  because its "key" field is needed verbatim.

        Returns:
            API response as dictionary ({} for empty bodies such as 204)

        Raises:
            GithubError: On API error (4xx, 5xx)
            httpx.TimeoutException: On request timeout (after retries)
            RuntimeError: If client not initialized
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        log = logger.bind(method=method, path=path, client=self._name)
        log.debug("Making GitHub API request")

        response = await self._client.request(
            method,
            path,
            params=params,
            json=json_data,
        )

        if response.status_code >= 400:
            error_body = response.text
            # 404 is an expected answer for presence checks; keep it quiet.
            if response.status_code != 404:
                log.warning("GitHub API error", status=response.status_code, body=error_body[:200])

            message = f"HTTP {response.status_code}"
            details = None
            try:
                error_json = response.json()
                message = error_json.get("message", message)
                details = error_json.get("documentation_url")
            except ValueError:
                details = error_body[:200] if error_body else None

            raise GithubError(
                code=response.status_code,
                message=message,
                details=details,
            )

        result = response.json() if response.content else {}

        if mask:
            result = self._mask_response(result)
        return result if isinstance(result, dict) else {}

    # =========================================================================
    # ACTIONS SECRETS
    # =========================================================================

    async def repo_secret_exists(self, repo: str, name: str) -> bool:
        """
        Check whether a repository Actions secret exists.

        GitHub API: GET /repos/{repo}/actions/secrets/{name}

        Returns:
            True on 200, False on 404.

        Raises:
            GithubError: For anything other than 404 (auth, rate limit, outage).
        """
        try:
            await self._request("GET", f"/repos/{repo}/actions/secrets/{name}")
        except GithubError as e:
            if e.not_found:
                return False
            raise
        return True

    async def list_repo_secret_names(self, repo: str) -> list[str]:
        """
        List every Actions secret name in a repository.

        GitHub API: GET /repos/{repo}/actions/secrets (paginated)
        """
        names: list[str] = []
        page = 1
        while True:
            data = await self._request(
                "GET",
                f"/repos/{repo}/actions/secrets",
                params={"per_page": PAGE_SIZE, "page": page},
            )
            batch = data.get("secrets") or []
            names.extend(str(item.get("name", "")) for item in batch if item.get("name"))

            total = int(data.get("total_count", len(names)))
            if not batch or len(names) >= total:
                return names
            page += 1

    async def get_repo_public_key(self, repo: str) -> RepoPublicKey:
        """
        Fetch the key used to seal secret values for a repository.

        GitHub API: GET /repos/{repo}/actions/secrets/public-key
        """
        data = await self._request("GET", f"/repos/{repo}/actions/secrets/public-key", mask=False)
        return RepoPublicKey.from_api_response(data)

    async def put_repo_secret(
        self,
        repo: str,
        name: str,
        encrypted_value: str,
        key_id: str,
    ) -> None:
        """
        Create or update a repository Actions secret.

        GitHub API: PUT /repos/{repo}/actions/secrets/{name}
        201 means created, 204 means updated; both are success.

        Args:
            repo: Target repository (owner/repo)
            name: Secret name
            encrypted_value: Base64 sealed box of the value
            key_id: Id of the public key the value was sealed with
        """
        await self._request(
            "PUT",
            f"/repos/{repo}/actions/secrets/{name}",
            json_data={"encrypted_value": encrypted_value, "key_id": key_id},
        )

    # =========================================================================
    # REPOSITORY DISPATCH
    # =========================================================================

    async def create_dispatch(
        self,
        repo: str,
        event_type: str,
        client_payload: dict[str, Any],
    ) -> None:
        """
        Fire a repository_dispatch event.

        GitHub API: POST /repos/{repo}/dispatches

        GitHub answers 204 as soon as the event is queued. That says nothing
        about whether a workflow picked it up, let alone finished.
        """
        await self._request(
            "POST",
            f"/repos/{repo}/dispatches",
            json_data={"event_type": event_type, "client_payload": client_payload},
        )

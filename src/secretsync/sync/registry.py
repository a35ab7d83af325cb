# ABOUTME: Consumer registry implementations for the sync protocol
# ABOUTME: GitHub Actions secrets backend with sealed-box encryption, plus an in-memory store

"""
Consumer registries: the per-repository stores that receive exported secrets.

GitHub only accepts new secret values sealed with the repository's public
key (a libsodium sealed box, Curve25519 + XSalsa20-Poly1305). PyNaCl does
the sealing; the plaintext is held as SecretStr until the last moment and
only the ciphertext is sent.
"""

from __future__ import annotations

from base64 import b64encode
from typing import TYPE_CHECKING, Protocol

import httpx
import structlog
from nacl import encoding, public
from nacl.exceptions import CryptoError

from secretsync.errors import GithubError, RegistryError
from secretsync.sync.models import validate_secret_name

if TYPE_CHECKING:
    from collections.abc import Mapping

    from pydantic import SecretStr

    from secretsync.utils.client import GithubClient, RepoPublicKey

logger = structlog.get_logger(__name__)


class ConsumerRegistry(Protocol):
    """Interface of one consumer registry (one target repository)."""

    @property
    def target(self) -> str: ...

    async def has_secret(self, name: str) -> bool:
        """True if the registry currently holds ``name``."""
        ...

    async def set_secret(self, name: str, value: SecretStr) -> None:
        """Create or overwrite ``name``. Raises RegistryError on failure."""
        ...


def seal_secret(public_key: str, value: SecretStr) -> str:
    """
    Encrypt ``value`` for GitHub with the repository's base64 public key.

    Returns the base64 ciphertext expected by the PUT secret endpoint.
    """
    try:
        key = public.PublicKey(public_key.encode("utf-8"), encoding.Base64Encoder())
        sealed = public.SealedBox(key).encrypt(value.get_secret_value().encode("utf-8"))
    except (CryptoError, ValueError, TypeError) as e:
        raise RegistryError(f"Could not seal secret with repository public key: {e}") from e
    return b64encode(sealed).decode("utf-8")


def _require_valid_name(name: str) -> None:
    # Names become URL path segments.
    try:
        validate_secret_name(name)
    except ValueError as e:
        raise RegistryError(str(e)) from e


class GithubSecretRegistry:
    """
    Actions secrets of one GitHub repository.

    The public key is fetched once per registry instance. GitHub rotates
    repository keys rarely, and a stale key_id surfaces as a 422 on write,
    which is reported as a RegistryError like any other write failure.
    """

    def __init__(self, client: GithubClient, repo: str) -> None:
        self._client = client
        self._repo = repo
        self._public_key: RepoPublicKey | None = None

    def __repr__(self) -> str:
        return f"GithubSecretRegistry(repo={self._repo!r})"

    @property
    def target(self) -> str:
        return self._repo

    async def has_secret(self, name: str) -> bool:
        _require_valid_name(name)
        try:
            return await self._client.repo_secret_exists(self._repo, name)
        except (GithubError, httpx.HTTPError) as e:
            raise RegistryError(f"Could not read secret {name} in {self._repo}: {e}") from e

    async def list_secrets(self) -> list[str]:
        try:
            return await self._client.list_repo_secret_names(self._repo)
        except (GithubError, httpx.HTTPError) as e:
            raise RegistryError(f"Could not list secrets in {self._repo}: {e}") from e

    async def _get_public_key(self) -> RepoPublicKey:
        if self._public_key is None:
            self._public_key = await self._client.get_repo_public_key(self._repo)
        return self._public_key

    async def set_secret(self, name: str, value: SecretStr) -> None:
        _require_valid_name(name)
        try:
            key = await self._get_public_key()
            encrypted = seal_secret(key.key, value)
            await self._client.put_repo_secret(self._repo, name, encrypted, key.key_id)
        except (GithubError, httpx.HTTPError) as e:
            raise RegistryError(f"Could not write secret {name} to {self._repo}: {e}") from e

        logger.debug("Secret written", secret=name, target=self._repo)


class InMemoryRegistry:
    """
    Registry held in a dict.

    Used by tests and dry runs. Values are kept as SecretStr; ``writes``
    counts every set_secret call so idempotency can be observed.
    """

    def __init__(self, target: str, secrets: Mapping[str, SecretStr] | None = None) -> None:
        self._target = target
        self._secrets: dict[str, SecretStr] = dict(secrets or {})
        self.writes = 0

    def __repr__(self) -> str:
        return f"InMemoryRegistry(target={self._target!r}, names={sorted(self._secrets)})"

    @property
    def target(self) -> str:
        return self._target

    @property
    def names(self) -> list[str]:
        return sorted(self._secrets)

    def snapshot(self) -> dict[str, str]:
        """Plain copy of the contents, for assertions."""
        return {name: value.get_secret_value() for name, value in self._secrets.items()}

    async def has_secret(self, name: str) -> bool:
        return name in self._secrets

    async def set_secret(self, name: str, value: SecretStr) -> None:
        self._secrets[name] = value
        self.writes += 1

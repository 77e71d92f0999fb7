"""
Secret Store.

Contract used by the orchestrator:
  put(context, name, value)  -> None | raises PermissionDenied
  get(context, name)         -> value | raises SecretNotFound / PermissionDenied

The orchestrator only calls get() to verify its own write. Consumers read
secrets at application runtime through their managed identity, never
through orchestration.

Backends:
  KeyVaultSecretStore: Azure Key Vault (azure-keyvault-secrets)
  InMemorySecretStore: dry runs and tests. NOT for production use.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Tuple

from azure.core.exceptions import (
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
)
from azure.keyvault.secrets import SecretClient

from deployer.credentials import build_credential
from deployer.errors import PermissionDenied, SecretNotFound
from deployer.schemas.resources import DeploymentContext

logger = logging.getLogger(__name__)

# Key Vault needs a moment after purge before the name can be reused
PURGE_SETTLE_SECONDS = float(os.getenv("KEYVAULT_PURGE_SETTLE", "2"))


class SecretStore(ABC):
    """Access-controlled name -> value store. One current value per name."""

    @abstractmethod
    async def put(self, context: DeploymentContext, name: str, value: str) -> None:
        """Write `value` as the current value of `name`."""

    @abstractmethod
    async def get(self, context: DeploymentContext, name: str) -> str:
        """Return the current value of `name`."""


def _is_denied(exc: HttpResponseError) -> bool:
    return getattr(exc, "status_code", None) in (401, 403)


class KeyVaultSecretStore(SecretStore):
    """
    Azure Key Vault backed secret store.

    The SecretClient is synchronous; calls run in the default executor so the
    orchestrator's event loop keeps driving independent branches.
    """

    def __init__(self, vault_url: str, credential=None) -> None:
        self.vault_url = vault_url
        self._credential = credential or build_credential()
        self._client = SecretClient(vault_url=vault_url, credential=self._credential)

    async def put(self, context: DeploymentContext, name: str, value: str) -> None:
        loop = asyncio.get_running_loop()
        tags = dict(context.tags, deployment_id=context.deployment_id)
        try:
            await loop.run_in_executor(
                None, lambda: self._client.set_secret(name, value, tags=tags)
            )
        except ResourceExistsError as exc:
            if "ObjectIsDeletedButRecoverable" not in str(exc):
                raise
            logger.warning("Secret %s is deleted but recoverable; purging", name)
            await loop.run_in_executor(None, lambda: self._client.purge_deleted_secret(name))
            await asyncio.sleep(PURGE_SETTLE_SECONDS)
            await loop.run_in_executor(
                None, lambda: self._client.set_secret(name, value, tags=tags)
            )
        except HttpResponseError as exc:
            if _is_denied(exc):
                raise PermissionDenied("set_secret", name, exc.message) from exc
            raise
        logger.info("Secret written to %s: %s", self.vault_url, name)

    async def get(self, context: DeploymentContext, name: str) -> str:
        loop = asyncio.get_running_loop()
        try:
            secret = await loop.run_in_executor(None, lambda: self._client.get_secret(name))
        except ResourceNotFoundError as exc:
            raise SecretNotFound(name) from exc
        except HttpResponseError as exc:
            if _is_denied(exc):
                raise PermissionDenied("get_secret", name, exc.message) from exc
            raise
        return secret.value


class InMemorySecretStore(SecretStore):
    """
    Local secret store for dry runs and tests.
    Activated when dry-run is on or SECRET_STORE_LOCAL=true.

    write_delay delays every put() before the value becomes visible;
    denied names raise PermissionDenied on both put() and get().
    """

    def __init__(
        self,
        write_delay: float = 0.0,
        denied: Iterable[str] = (),
    ) -> None:
        self._values: Dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._write_delay = write_delay
        self._denied = frozenset(denied)
        # (name, monotonic completion time) for every completed write
        self.writes: List[Tuple[str, float]] = []
        logger.warning("Using LOCAL secret store: NOT FOR PRODUCTION")

    async def put(self, context: DeploymentContext, name: str, value: str) -> None:
        if name in self._denied:
            raise PermissionDenied("set_secret", name)
        if self._write_delay:
            await asyncio.sleep(self._write_delay)
        async with self._lock:
            self._values[name] = value
            self.writes.append((name, time.monotonic()))

    async def get(self, context: DeploymentContext, name: str) -> str:
        if name in self._denied:
            raise PermissionDenied("get_secret", name)
        async with self._lock:
            if name not in self._values:
                raise SecretNotFound(name)
            return self._values[name]

    def names(self) -> List[str]:
        return sorted(self._values)

    def completed_at(self, name: str) -> Optional[float]:
        """Completion time of the most recent write of `name`."""
        for written, ts in reversed(self.writes):
            if written == name:
                return ts
        return None


def build_secret_store(use_local: bool = False, vault_url: str = ""):
    """
    Build a secret store from environment.
    use_local or SECRET_STORE_LOCAL=true → InMemorySecretStore
    Otherwise                            → KeyVaultSecretStore on VAULT_NAME
    """
    if use_local or os.getenv("SECRET_STORE_LOCAL", "false").lower() == "true":
        return InMemorySecretStore()

    if not vault_url:
        vault_name = os.getenv("VAULT_NAME", "")
        if not vault_name:
            raise EnvironmentError(
                "VAULT_NAME must be set in .env when SECRET_STORE_LOCAL=false. "
                "Example: VAULT_NAME=kv-chatbot-dev"
            )
        vault_url = f"https://{vault_name}.vault.azure.net"
    return KeyVaultSecretStore(vault_url=vault_url)

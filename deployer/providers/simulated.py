"""
Simulated Resource Provider (AZURE_DEPLOY_DRY_RUN=true)

Mimics ARM with realistic per-kind delays and ARM-shaped outputs, without
touching Azure. Also plays the identity provider: container instances are
issued a fresh principal id.

Identical repeated calls return the previously issued result. Tests steer
it with per-resource delay overrides and injected failures, and inspect
`calls` / `started_at` / `finished_at`.
"""
from __future__ import annotations

import asyncio
import logging
import secrets
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

from deployer.providers.base import ResourceProvider, arm_id, sql_connection_string
from deployer.schemas.resources import (
    DeploymentContext,
    ProvisionResult,
    ResourceKind,
    parameter_fingerprint,
)

logger = logging.getLogger(__name__)

SIMULATED_DELAYS: Dict[ResourceKind, float] = {
    ResourceKind.KEY_VAULT:          0.3,
    ResourceKind.OPENAI:             0.5,
    ResourceKind.SQL:                0.6,
    ResourceKind.CONTAINER_REGISTRY: 0.3,
    ResourceKind.CONTAINER_INSTANCE: 0.8,
}


def generate_password() -> str:
    # Azure SQL complexity: upper, lower, digit and symbol
    return secrets.token_urlsafe(24) + "aA1!"


class SimulatedResourceProvider(ResourceProvider):

    def __init__(
        self,
        delays:     Optional[Dict[str, float]] = None,
        failures:   Optional[Dict[str, str]]   = None,
        time_scale: float = 1.0,
    ) -> None:
        self._delays = dict(delays or {})
        self._failures = dict(failures or {})
        self._time_scale = time_scale
        self._applied: Dict[str, Tuple[str, ProvisionResult]] = {}
        self._status: Dict[str, str] = {}
        self.calls: List[Tuple[str, str]] = []
        self.started_at: Dict[str, float] = {}
        self.finished_at: Dict[str, float] = {}

    def fail(self, resource_id: str, message: str = "simulated provider failure") -> None:
        self._failures[resource_id] = message

    def heal(self, resource_id: str) -> None:
        self._failures.pop(resource_id, None)

    async def create_or_update(
        self,
        context: DeploymentContext,
        kind: ResourceKind,
        resource_id: str,
        parameters: Dict[str, Any],
    ) -> ProvisionResult:
        if kind not in SIMULATED_DELAYS:
            raise ValueError(f"Provider cannot provision kind '{kind.value}'")

        name = parameters.get("name", resource_id)
        self.calls.append((kind.value, resource_id))
        self.started_at[resource_id] = time.monotonic()
        self._status[name] = "Creating"

        delay = self._delays.get(resource_id, SIMULATED_DELAYS[kind] * self._time_scale)
        await asyncio.sleep(delay)

        if resource_id in self._failures:
            self._status[name] = "Failed"
            self.finished_at[resource_id] = time.monotonic()
            raise RuntimeError(self._failures[resource_id])

        fingerprint = parameter_fingerprint(kind, parameters)
        prior = self._applied.get(resource_id)
        if prior is not None and prior[0] == fingerprint:
            result = prior[1]
        else:
            result = self._build(context, kind, name, parameters)
            self._applied[resource_id] = (fingerprint, result)

        self._status[name] = "Succeeded"
        self.finished_at[resource_id] = time.monotonic()
        logger.info("[%s][DRY-RUN] %s %s: created", context.deployment_id, kind.value, name)
        return ProvisionResult(
            outputs=dict(result.outputs),
            secret_material=dict(result.secret_material),
        )

    async def get_status(self, context: DeploymentContext, kind: ResourceKind, name: str) -> str:
        return self._status.get(name, "NotFound")

    def calls_for(self, resource_id: str) -> int:
        return sum(1 for _, rid in self.calls if rid == resource_id)

    # ── Per-kind output shapes ────────────────────────────────────────────────

    def _build(
        self, context: DeploymentContext, kind: ResourceKind, name: str, p: Dict[str, Any],
    ) -> ProvisionResult:
        base = {"id": arm_id(context, kind, name), "name": name}

        if kind == ResourceKind.KEY_VAULT:
            return ProvisionResult({**base, "vault_uri": f"https://{name}.vault.azure.net/"})

        if kind == ResourceKind.OPENAI:
            return ProvisionResult(
                {
                    **base,
                    "endpoint": f"https://{name}.openai.azure.com/",
                    "deployment_name": p.get("deployment_name", "gpt-4o"),
                },
                {"api_key": secrets.token_hex(16)},
            )

        if kind == ResourceKind.SQL:
            fqdn = f"{name}.database.windows.net"
            database = p.get("database_name", "chatbot")
            login = p.get("admin_login", "sqladmin")
            password = generate_password()
            return ProvisionResult(
                {**base, "fqdn": fqdn, "database_name": database, "admin_login": login},
                {
                    "admin_password": password,
                    "connection_string": sql_connection_string(fqdn, database, login, password),
                },
            )

        if kind == ResourceKind.CONTAINER_REGISTRY:
            return ProvisionResult({**base, "login_server": f"{name}.azurecr.io"})

        # container instance: the identity provider issues the principal here
        label = p.get("dns_name_label", name)
        return ProvisionResult({
            **base,
            "principal_id": str(uuid.uuid4()),
            "ip_address":   f"20.{secrets.randbelow(256)}.{secrets.randbelow(256)}.{secrets.randbelow(254) + 1}",
            "fqdn":         f"{label}.{context.location}.azurecontainer.io",
        })

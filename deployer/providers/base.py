"""
Cloud Resource Provider contract.

  create_or_update(context, kind, resource_id, parameters) -> ProvisionResult
  get_status(context, kind, name)                          -> provisioning state

Implementations must be idempotent on repeated identical calls. Secret
material (generated passwords, account keys) is returned separately from
outputs and is never part of them.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict

from deployer.schemas.resources import DeploymentContext, ProvisionResult, ResourceKind

# ARM resource types per kind
ARM_TYPES: Dict[ResourceKind, str] = {
    ResourceKind.KEY_VAULT:          "Microsoft.KeyVault/vaults",
    ResourceKind.OPENAI:             "Microsoft.CognitiveServices/accounts",
    ResourceKind.SQL:                "Microsoft.Sql/servers",
    ResourceKind.CONTAINER_REGISTRY: "Microsoft.ContainerRegistry/registries",
    ResourceKind.CONTAINER_INSTANCE: "Microsoft.ContainerInstance/containerGroups",
}


class ResourceProvider(ABC):

    @abstractmethod
    async def create_or_update(
        self,
        context: DeploymentContext,
        kind: ResourceKind,
        resource_id: str,
        parameters: Dict[str, Any],
    ) -> ProvisionResult:
        """Create or converge one resource; return its outputs."""

    @abstractmethod
    async def get_status(self, context: DeploymentContext, kind: ResourceKind, name: str) -> str:
        """Current provisioning state, or "NotFound"."""


def arm_id(context: DeploymentContext, kind: ResourceKind, name: str) -> str:
    return f"{context.resource_group_id}/providers/{ARM_TYPES[kind]}/{name}"


def sql_connection_string(fqdn: str, database: str, login: str, password: str) -> str:
    return (
        f"Server=tcp:{fqdn},1433;Initial Catalog={database};"
        f"Persist Security Info=False;User ID={login};Password={password};"
        "MultipleActiveResultSets=False;Encrypt=True;"
        "TrustServerCertificate=False;Connection Timeout=30;"
    )

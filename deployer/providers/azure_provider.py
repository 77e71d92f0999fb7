"""
Azure Resource Provider: deployer/providers/azure_provider.py

Provisions REAL Azure resources for the chatbot topology:
  - Key Vault (RBAC authorization, access via role assignments only)
  - Azure OpenAI account + model deployment (account key → secret material)
  - Azure SQL logical server + database (generated admin password → secret material)
  - Container Registry (admin user disabled)
  - Container Instance with a system-assigned managed identity

  ┌──────────┐     ┌──────────────────────┐     ┌───────────┐     ┌───────────────┐
  │ KeyVault │ ──→ │ SQL · OpenAI · ACR   │ ──→ │ Container │ ──→ │ Role: Secrets │
  └──────────┘     └──────────────────────┘     │ (MSI)     │     │ User on vault │
                                                 └───────────┘     └───────────────┘

The management SDKs are synchronous; every call and poller runs in the
default executor so independent branches provision concurrently.

Auth: see deployer/credentials.py.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Set

from azure.core.exceptions import ResourceNotFoundError
from azure.mgmt.cognitiveservices import CognitiveServicesManagementClient
from azure.mgmt.cognitiveservices.models import (
    Account,
    AccountProperties,
    Deployment,
    DeploymentModel,
    DeploymentProperties,
    Sku as CognitiveSku,
)
from azure.mgmt.containerinstance import ContainerInstanceManagementClient
from azure.mgmt.containerinstance.models import (
    Container,
    ContainerGroup,
    ContainerGroupIdentity,
    ContainerGroupNetworkProtocol,
    ContainerPort,
    EnvironmentVariable,
    ImageRegistryCredential,
    IpAddress,
    OperatingSystemTypes,
    Port,
    ResourceIdentityType,
    ResourceRequests,
    ResourceRequirements,
)
from azure.mgmt.containerregistry import ContainerRegistryManagementClient
from azure.mgmt.containerregistry.models import Registry, Sku as RegistrySku
from azure.mgmt.keyvault import KeyVaultManagementClient
from azure.mgmt.keyvault.models import (
    Sku as VaultSku,
    VaultCreateOrUpdateParameters,
    VaultProperties,
)
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.sql import SqlManagementClient
from azure.mgmt.sql.models import Database, FirewallRule, Server, Sku as SqlSku

from deployer.credentials import build_credential
from deployer.providers.base import ResourceProvider, sql_connection_string
from deployer.providers.simulated import SimulatedResourceProvider, generate_password
from deployer.schemas.resources import DeploymentContext, ProvisionResult, ResourceKind

logger = logging.getLogger(__name__)

CONTAINER_PORT = 8000


class AzureResourceProvider(ResourceProvider):
    """
    One provider per subscription. The resource group is ensured once per
    deployment run before the first resource is created in it.
    """

    def __init__(self, subscription_id: str, credential=None) -> None:
        self._cred = credential or build_credential()
        self._sub  = subscription_id

        self._resource  = ResourceManagementClient(self._cred, self._sub)
        self._vaults    = KeyVaultManagementClient(self._cred, self._sub)
        self._cognitive = CognitiveServicesManagementClient(self._cred, self._sub)
        self._sql       = SqlManagementClient(self._cred, self._sub)
        self._acr       = ContainerRegistryManagementClient(self._cred, self._sub)
        self._aci       = ContainerInstanceManagementClient(self._cred, self._sub)

        self._groups_ready: Set[str] = set()
        self._group_lock = asyncio.Lock()

        self._handlers: Dict[ResourceKind, Callable] = {
            ResourceKind.KEY_VAULT:          self._key_vault,
            ResourceKind.OPENAI:             self._openai,
            ResourceKind.SQL:                self._sql_database,
            ResourceKind.CONTAINER_REGISTRY: self._registry,
            ResourceKind.CONTAINER_INSTANCE: self._container_instance,
        }

    # ── Public API ────────────────────────────────────────────────────────────

    async def create_or_update(
        self,
        context: DeploymentContext,
        kind: ResourceKind,
        resource_id: str,
        parameters: Dict[str, Any],
    ) -> ProvisionResult:
        handler = self._handlers.get(kind)
        if handler is None:
            raise ValueError(f"Provider cannot provision kind '{kind.value}'")
        await self._ensure_resource_group(context)
        name = parameters.get("name", resource_id)
        logger.info("[%s] Provisioning %s: %s", context.deployment_id, kind.value, name)
        result = await handler(context, name, parameters)
        logger.info("[%s] %s ready: %s", context.deployment_id, kind.value, result.outputs.get("id"))
        return result

    async def get_status(self, context: DeploymentContext, kind: ResourceKind, name: str) -> str:
        rg = context.resource_group
        getters: Dict[ResourceKind, Callable[[], str]] = {
            ResourceKind.KEY_VAULT:
                lambda: self._vaults.vaults.get(rg, name).properties.provisioning_state,
            ResourceKind.OPENAI:
                lambda: self._cognitive.accounts.get(rg, name).properties.provisioning_state,
            ResourceKind.SQL:
                lambda: self._sql.servers.get(rg, name).state,
            ResourceKind.CONTAINER_REGISTRY:
                lambda: self._acr.registries.get(rg, name).provisioning_state,
            ResourceKind.CONTAINER_INSTANCE:
                lambda: self._aci.container_groups.get(rg, name).provisioning_state,
        }
        getter = getters.get(kind)
        if getter is None:
            raise ValueError(f"No status for kind '{kind.value}'")
        try:
            return str(await self._run(getter))
        except ResourceNotFoundError:
            return "NotFound"

    # ── Helpers ───────────────────────────────────────────────────────────────

    @staticmethod
    async def _run(fn: Callable):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn)

    async def _wait(self, begin: Callable):
        """Start a long-running operation and wait for its result off-loop."""
        poller = await self._run(begin)
        return await self._run(poller.result)

    async def _ensure_resource_group(self, context: DeploymentContext) -> None:
        key = f"{context.deployment_id}:{context.resource_group}"
        async with self._group_lock:
            if key in self._groups_ready:
                return
            await self._run(lambda: self._resource.resource_groups.create_or_update(
                context.resource_group,
                {"location": context.location, "tags": dict(context.tags)},
            ))
            self._groups_ready.add(key)
            logger.info("[%s] Resource group ensured: %s",
                        context.deployment_id, context.resource_group)

    # ── Per-kind handlers ─────────────────────────────────────────────────────

    async def _key_vault(self, context: DeploymentContext, name: str, p: Dict[str, Any]) -> ProvisionResult:
        tenant_id = p.get("tenant_id")
        if not tenant_id:
            raise ValueError(f"Key Vault '{name}' requires a tenant_id parameter")
        params = VaultCreateOrUpdateParameters(
            location=context.location,
            tags=dict(context.tags),
            properties=VaultProperties(
                tenant_id=tenant_id,
                sku=VaultSku(family="A", name=p.get("sku", "standard")),
                enable_rbac_authorization=True,
                enable_soft_delete=True,
                soft_delete_retention_in_days=p.get("soft_delete_retention_days", 7),
                enable_purge_protection=p.get("purge_protection") or None,
                access_policies=[],
            ),
        )
        vault = await self._wait(
            lambda: self._vaults.vaults.begin_create_or_update(context.resource_group, name, params)
        )
        return ProvisionResult({
            "id":        vault.id,
            "name":      vault.name,
            "vault_uri": vault.properties.vault_uri,
        })

    async def _openai(self, context: DeploymentContext, name: str, p: Dict[str, Any]) -> ProvisionResult:
        rg = context.resource_group
        account = await self._wait(lambda: self._cognitive.accounts.begin_create(
            rg, name,
            Account(
                location=p.get("location", context.location),
                kind="OpenAI",
                sku=CognitiveSku(name=p.get("sku", "S0")),
                properties=AccountProperties(
                    custom_sub_domain_name=name,
                    public_network_access="Enabled",
                ),
                tags=dict(context.tags),
            ),
        ))

        deployment_name = p.get("deployment_name", "gpt-4o")
        await self._wait(lambda: self._cognitive.deployments.begin_create_or_update(
            rg, name, deployment_name,
            Deployment(
                sku=CognitiveSku(
                    name=p.get("deployment_sku", "Standard"),
                    capacity=p.get("capacity", 10),
                ),
                properties=DeploymentProperties(
                    model=DeploymentModel(
                        format="OpenAI",
                        name=p.get("model", "gpt-4o"),
                        version=p.get("model_version", "2024-08-06"),
                    ),
                ),
            ),
        ))

        keys = await self._run(lambda: self._cognitive.accounts.list_keys(rg, name))
        return ProvisionResult(
            {
                "id":              account.id,
                "name":            account.name,
                "endpoint":        account.properties.endpoint,
                "deployment_name": deployment_name,
            },
            {"api_key": keys.key1},
        )

    async def _sql_database(self, context: DeploymentContext, name: str, p: Dict[str, Any]) -> ProvisionResult:
        rg = context.resource_group
        login = p.get("admin_login", "sqladmin")
        password = generate_password()

        server = await self._wait(lambda: self._sql.servers.begin_create_or_update(
            rg, name,
            Server(
                location=context.location,
                administrator_login=login,
                administrator_login_password=password,
                version="12.0",
                minimal_tls_version="1.2",
                tags=dict(context.tags),
            ),
        ))

        database_name = p.get("database_name", "chatbot")
        await self._wait(lambda: self._sql.databases.begin_create_or_update(
            rg, name, database_name,
            Database(
                location=context.location,
                sku=SqlSku(name=p.get("sku", "Basic"), tier=p.get("tier", "Basic")),
                tags=dict(context.tags),
            ),
        ))

        # 0.0.0.0 – 0.0.0.0 is ARM's spelling of "allow Azure services"
        await self._run(lambda: self._sql.firewall_rules.create_or_update(
            rg, name, "AllowAzureServices",
            FirewallRule(start_ip_address="0.0.0.0", end_ip_address="0.0.0.0"),
        ))

        fqdn = server.fully_qualified_domain_name
        return ProvisionResult(
            {
                "id":            server.id,
                "name":          server.name,
                "fqdn":          fqdn,
                "database_name": database_name,
                "admin_login":   login,
            },
            {
                "admin_password":    password,
                "connection_string": sql_connection_string(fqdn, database_name, login, password),
            },
        )

    async def _registry(self, context: DeploymentContext, name: str, p: Dict[str, Any]) -> ProvisionResult:
        registry = await self._wait(lambda: self._acr.registries.begin_create(
            context.resource_group, name,
            Registry(
                location=context.location,
                sku=RegistrySku(name=p.get("sku", "Basic")),
                admin_user_enabled=False,
                tags=dict(context.tags),
            ),
        ))
        return ProvisionResult({
            "id":           registry.id,
            "name":         registry.name,
            "login_server": registry.login_server,
        })

    async def _container_instance(self, context: DeploymentContext, name: str, p: Dict[str, Any]) -> ProvisionResult:
        port = int(p.get("port", CONTAINER_PORT))
        env_list = [
            EnvironmentVariable(name=k, value=str(v))
            for k, v in sorted(p.get("environment", {}).items())
        ]

        registry_credentials: Optional[list] = None
        if p.get("registry_identity"):
            # Pull through a user-assigned identity holding AcrPull
            registry_credentials = [
                ImageRegistryCredential(
                    server=p["image"].split("/", 1)[0],
                    identity=p["registry_identity"],
                )
            ]

        cg_params = ContainerGroup(
            location=context.location,
            identity=ContainerGroupIdentity(type=ResourceIdentityType.SYSTEM_ASSIGNED),
            os_type=OperatingSystemTypes.LINUX,
            restart_policy="Always",
            image_registry_credentials=registry_credentials,
            containers=[
                Container(
                    name=name,
                    image=p["image"],
                    resources=ResourceRequirements(
                        requests=ResourceRequests(
                            cpu=p.get("cpu", 1.0),
                            memory_in_gb=p.get("memory_gb", 1.5),
                        )
                    ),
                    ports=[ContainerPort(port=port, protocol="TCP")],
                    environment_variables=env_list,
                )
            ],
            ip_address=IpAddress(
                ports=[Port(protocol=ContainerGroupNetworkProtocol.TCP, port=port)],
                type="Public",
                dns_name_label=p.get("dns_name_label", name),
            ),
            tags=dict(context.tags),
        )

        cg = await self._wait(lambda: self._aci.container_groups.begin_create_or_update(
            context.resource_group, name, cg_params
        ))
        ip = cg.ip_address
        return ProvisionResult({
            "id":           cg.id,
            "name":         cg.name,
            "principal_id": cg.identity.principal_id if cg.identity else "",
            "ip_address":   ip.ip if ip else "",
            "fqdn":         ip.fqdn if ip else "",
        })


def build_provider(dry_run: bool, subscription_id: str = "") -> ResourceProvider:
    """Simulated provider in dry-run mode, Azure otherwise."""
    if dry_run:
        return SimulatedResourceProvider()
    if not subscription_id:
        raise EnvironmentError("AZURE_SUBSCRIPTION_ID is required for live deployments")
    return AzureResourceProvider(subscription_id)

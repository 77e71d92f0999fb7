"""
Chatbot topology.

    key-vault ──→ sql ───────┐
        │     ──→ openai ────┼──→ chatbot ──→ chatbot-vault-access
        │     ──→ registry ──┘                 (Key Vault Secrets User)
        └──────────────────────────────────────────────↑

The container never receives a secret value. It gets the vault URI and the
names of the secrets it may read once its managed identity is granted
access to the vault.
"""
from __future__ import annotations

import re
from typing import Dict, List, Optional, Tuple

from config.azure_config import AZURE_CONFIG, AzureConfig
from deployer.schemas.resources import (
    Interpolate,
    OutputRef,
    ResourceDescriptor,
    ResourceKind,
    SecretRef,
)

KEY_VAULT    = "key-vault"
SQL          = "sql"
OPENAI       = "openai"
REGISTRY     = "registry"
CONTAINER    = "chatbot"
VAULT_ACCESS = "chatbot-vault-access"

SQL_ADMIN_PASSWORD    = "sql-admin-password"
SQL_CONNECTION_STRING = "sql-connection-string"
OPENAI_API_KEY        = "openai-api-key"

# SKU / capacity per environment
ENVIRONMENT_PROFILES: Dict[str, Dict[str, Dict]] = {
    "dev": {
        "key_vault": {"sku": "standard", "soft_delete_retention_days": 7,  "purge_protection": False},
        "sql":       {"sku": "Basic", "tier": "Basic"},
        "openai":    {"sku": "S0", "deployment_sku": "Standard", "capacity": 10},
        "registry":  {"sku": "Basic"},
        "container": {"cpu": 1.0, "memory_gb": 1.5},
    },
    "prod": {
        "key_vault": {"sku": "premium",  "soft_delete_retention_days": 90, "purge_protection": True},
        "sql":       {"sku": "S1", "tier": "Standard"},
        "openai":    {"sku": "S0", "deployment_sku": "Standard", "capacity": 50},
        "registry":  {"sku": "Standard"},
        "container": {"cpu": 2.0, "memory_gb": 4.0},
    },
}


def resource_names(prefix: str, environment: str, vault_name: str = "") -> Dict[str, str]:
    """Azure-legal names: vaults <= 24 chars, registries alphanumeric only."""
    slug = re.sub(r"[^a-z0-9-]", "", f"{prefix}-{environment}".lower()).strip("-")
    return {
        KEY_VAULT: vault_name or f"kv-{slug}"[:24].rstrip("-"),
        SQL:       f"sql-{slug}",
        OPENAI:    f"oai-{slug}",
        REGISTRY:  f"acr{slug.replace('-', '')}"[:50],
        CONTAINER: f"aci-{slug}",
    }


def build_chatbot_graph(
    config: AzureConfig = AZURE_CONFIG,
    environment: str = "dev",
    existing_registry: Optional[Tuple[str, str]] = None,
) -> List[ResourceDescriptor]:
    """
    Descriptors for one chatbot environment.

    existing_registry is (ARM id, login server) of a registry created
    outside this deployment; it is bound read-only instead of provisioned.
    """
    if environment not in ENVIRONMENT_PROFILES:
        raise ValueError(
            f"Unknown environment '{environment}'. "
            f"Expected one of: {sorted(ENVIRONMENT_PROFILES)}"
        )
    profile = ENVIRONMENT_PROFILES[environment]
    names = resource_names(config.name_prefix, environment, config.vault_name)
    vault_id = OutputRef(resource_id=KEY_VAULT, attribute="id")

    vault = ResourceDescriptor(
        id=KEY_VAULT,
        kind=ResourceKind.KEY_VAULT,
        parameters={
            "name": names[KEY_VAULT],
            "tenant_id": config.tenant_id,
            **profile["key_vault"],
        },
    )

    sql = ResourceDescriptor(
        id=SQL,
        kind=ResourceKind.SQL,
        parameters={
            "name": names[SQL],
            "database_name": "chatbot",
            "admin_login": "sqladmin",
            "key_vault": vault_id,
            **profile["sql"],
        },
        secrets={
            SQL_ADMIN_PASSWORD: "admin_password",
            SQL_CONNECTION_STRING: "connection_string",
        },
    )

    openai = ResourceDescriptor(
        id=OPENAI,
        kind=ResourceKind.OPENAI,
        parameters={
            "name": names[OPENAI],
            "deployment_name": "gpt-4o",
            "model": "gpt-4o",
            "model_version": "2024-08-06",
            "key_vault": vault_id,
            **profile["openai"],
        },
        secrets={OPENAI_API_KEY: "api_key"},
    )

    if existing_registry is not None:
        registry_arm_id, login_server = existing_registry
        registry = ResourceDescriptor.existing_resource(
            REGISTRY,
            ResourceKind.CONTAINER_REGISTRY,
            {
                "id": registry_arm_id,
                "name": registry_arm_id.rstrip("/").rsplit("/", 1)[-1],
                "login_server": login_server,
            },
        )
    else:
        registry = ResourceDescriptor(
            id=REGISTRY,
            kind=ResourceKind.CONTAINER_REGISTRY,
            parameters={"name": names[REGISTRY], **profile["registry"]},
        )

    container = ResourceDescriptor(
        id=CONTAINER,
        kind=ResourceKind.CONTAINER_INSTANCE,
        parameters={
            "name": names[CONTAINER],
            "dns_name_label": names[CONTAINER],
            "image": Interpolate(
                template=f"{{registry}}/{config.image_name}:{config.image_tag}",
                refs={"registry": OutputRef(resource_id=REGISTRY, attribute="login_server")},
            ),
            "environment": {
                "KEY_VAULT_URI":        OutputRef(resource_id=KEY_VAULT, attribute="vault_uri"),
                "OPENAI_ENDPOINT":      OutputRef(resource_id=OPENAI, attribute="endpoint"),
                "OPENAI_DEPLOYMENT":    OutputRef(resource_id=OPENAI, attribute="deployment_name"),
                "SQL_SERVER_FQDN":      OutputRef(resource_id=SQL, attribute="fqdn"),
                "SQL_DATABASE":         OutputRef(resource_id=SQL, attribute="database_name"),
                "SQL_PASSWORD_SECRET":  SecretRef(name=SQL_ADMIN_PASSWORD),
                "SQL_CONNECTION_SECRET": SecretRef(name=SQL_CONNECTION_STRING),
                "OPENAI_KEY_SECRET":    SecretRef(name=OPENAI_API_KEY),
            },
            **profile["container"],
        },
    )

    access = ResourceDescriptor(
        id=VAULT_ACCESS,
        kind=ResourceKind.ROLE_ASSIGNMENT,
        parameters={
            "principal": OutputRef(resource_id=CONTAINER, attribute="principal_id"),
            "target": vault_id,
            "role": "Key Vault Secrets User",
        },
    )

    return [vault, sql, openai, registry, container, access]

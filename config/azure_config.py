"""
Azure deployment configuration.
All values sourced from environment, never hardcoded.

Authentication note:
  Two Azure auth modes are supported:
    1. Azure CLI login (az login): recommended for local dev.
       AZURE_SUBSCRIPTION_ID, AZURE_TENANT_ID and VAULT_NAME are required;
       the tenant is stamped on the Key Vault the deployer creates.
    2. Service-principal env vars: for CI/CD pipelines.
       Set AZURE_SUBSCRIPTION_ID, AZURE_TENANT_ID, AZURE_CLIENT_ID,
       AZURE_CLIENT_SECRET, RESOURCE_GROUP_NAME, VAULT_NAME.

All fields default to "" (or a safe dry-run value) so the module always
imports cleanly. Live deployments fail with a clear EnvironmentError if
required credentials are missing, not at import time.
"""
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv(override=False)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class AzureConfig:
    # ── Service-principal creds (optional when using az login) ───────────────
    subscription_id: str = field(default_factory=lambda: os.getenv("AZURE_SUBSCRIPTION_ID", ""))
    tenant_id:       str = field(default_factory=lambda: os.getenv("AZURE_TENANT_ID", ""))
    client_id:       str = field(default_factory=lambda: os.getenv("AZURE_CLIENT_ID", ""))
    client_secret:   str = field(default_factory=lambda: os.getenv("AZURE_CLIENT_SECRET", ""))

    # ── Required for any deployment ──────────────────────────────────────────
    resource_group: str = field(default_factory=lambda: os.getenv("RESOURCE_GROUP_NAME", "rg-chatbot"))
    location:       str = field(default_factory=lambda: os.getenv("LOCATION", "eastus"))
    vault_name:     str = field(default_factory=lambda: os.getenv("VAULT_NAME", ""))

    # ── Naming ───────────────────────────────────────────────────────────────
    name_prefix: str = field(default_factory=lambda: os.getenv("NAME_PREFIX", "chatbot"))
    environment: str = field(default_factory=lambda: os.getenv("DEPLOY_ENVIRONMENT", "dev"))

    # ── Chatbot image ────────────────────────────────────────────────────────
    image_name: str = field(default_factory=lambda: os.getenv("CHATBOT_IMAGE", "chatbot"))
    image_tag:  str = field(default_factory=lambda: os.getenv("CHATBOT_IMAGE_TAG", "latest"))

    def require_azure_creds(self) -> None:
        """
        Call this before any real Azure API call.
        VAULT_NAME, AZURE_SUBSCRIPTION_ID and AZURE_TENANT_ID are always
        required. AZURE_CLIENT_ID and AZURE_CLIENT_SECRET come as a pair.
        """
        missing: list[str] = []
        if not self.vault_name:
            missing.append("VAULT_NAME")
        if not self.subscription_id:
            missing.append("AZURE_SUBSCRIPTION_ID")
        if not self.tenant_id:
            missing.append("AZURE_TENANT_ID")
        # one client field without the other is a partial SP config
        sp_fields = {
            "AZURE_CLIENT_ID":     self.client_id,
            "AZURE_CLIENT_SECRET": self.client_secret,
        }
        sp_set = sum(1 for v in sp_fields.values() if v)
        if 0 < sp_set < len(sp_fields):
            missing.extend(k for k, v in sp_fields.items() if not v)
        if missing:
            raise EnvironmentError(
                f"Missing Azure configuration: {missing}. "
                "Either use 'az login' (CLI mode) and set VAULT_NAME, "
                "AZURE_SUBSCRIPTION_ID and AZURE_TENANT_ID, or set all service-principal variables "
                "in your .env file."
            )

    @property
    def using_sp_auth(self) -> bool:
        """True when all service-principal fields are present."""
        return bool(self.tenant_id and self.client_id and self.client_secret)

    @property
    def vault_url(self) -> str:
        return f"https://{self.vault_name}.vault.azure.net" if self.vault_name else ""


@dataclass(frozen=True)
class OrchestratorConfig:
    """Runtime knobs for the deployment orchestrator. No external dependencies."""
    # Per-call timeouts (seconds). Exceeding one is treated as a provider failure.
    provider_timeout_seconds: float = field(default_factory=lambda: float(os.getenv("PROVIDER_TIMEOUT", "900")))
    grant_timeout_seconds:    float = field(default_factory=lambda: float(os.getenv("GRANT_TIMEOUT", "120")))
    secret_timeout_seconds:   float = field(default_factory=lambda: float(os.getenv("SECRET_TIMEOUT", "60")))

    # Independent branches provisioned concurrently
    max_parallel: int = field(default_factory=lambda: int(os.getenv("MAX_PARALLEL_PROVISIONS", "4")))

    # Simulated provider + in-memory stores when true
    dry_run: bool = field(default_factory=lambda: _env_bool("AZURE_DEPLOY_DRY_RUN", "true"))


AZURE_CONFIG        = AzureConfig()
ORCHESTRATOR_CONFIG = OrchestratorConfig()

"""
Azure credential selection shared by the provider, the secret store and the
role-assignment service.

Priority:
  1. Managed Identity  (AZURE_USE_MANAGED_IDENTITY=true)
  2. Service Principal (AZURE_TENANT_ID + AZURE_CLIENT_ID + AZURE_CLIENT_SECRET)
  3. Azure CLI login   (fallback, works after `az login`)
"""
from __future__ import annotations

import logging
import os

from azure.identity import (
    AzureCliCredential,
    ClientSecretCredential,
    ManagedIdentityCredential,
)

logger = logging.getLogger(__name__)
logging.getLogger("azure").setLevel(logging.WARNING)


def build_credential():
    if os.getenv("AZURE_USE_MANAGED_IDENTITY", "false").lower() == "true":
        logger.info("Azure auth: ManagedIdentityCredential")
        return ManagedIdentityCredential()

    tenant = os.getenv("AZURE_TENANT_ID", "")
    client = os.getenv("AZURE_CLIENT_ID", "")
    secret = os.getenv("AZURE_CLIENT_SECRET", "")

    if tenant and client and secret:
        logger.info("Azure auth: ClientSecretCredential (service principal)")
        return ClientSecretCredential(
            tenant_id=tenant,
            client_id=client,
            client_secret=secret,
        )

    logger.info("Azure auth: AzureCliCredential (az login)")
    return AzureCliCredential()

"""
Role Assignment Service.

  assign(context, principal_id, target_id, role_id) -> grant_id

Idempotent per (target, principal, role): the assignment name is a uuid5 of
the triple, so a repeated call addresses the same ARM object, and Azure's
RoleAssignmentExists conflict is treated as success.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Tuple

from azure.core.exceptions import HttpResponseError, ResourceExistsError
from azure.mgmt.authorization import AuthorizationManagementClient
from azure.mgmt.authorization.models import RoleAssignmentCreateParameters

from deployer.credentials import build_credential
from deployer.errors import PermissionDenied
from deployer.schemas.resources import DeploymentContext, grant_id_for

logger = logging.getLogger(__name__)

# Built-in role definition GUIDs (identical in every Azure tenant)
BUILTIN_ROLES: Dict[str, str] = {
    "Key Vault Secrets User":        "4633458b-17de-408a-b874-0445c86b69e6",
    "Key Vault Secrets Officer":     "b86a8fe4-44ce-4948-aee5-eccb2c155cd7",
    "AcrPull":                       "7f951dda-4ed3-4680-a7ca-43fe172d538d",
    "Cognitive Services OpenAI User": "5e0bd9bd-7b93-4f28-af87-19fc36ad61bd",
    "Reader":                        "acdd72a7-3385-48ef-bd42-f606fba81ae7",
}


class RoleAssignmentService(ABC):

    @abstractmethod
    async def assign(
        self, context: DeploymentContext, principal_id: str, target_id: str, role_id: str,
    ) -> str:
        """Ensure the assignment exists and return its grant id."""


class AzureRoleAssignmentService(RoleAssignmentService):
    """Creates role assignments at the target resource's scope."""

    def __init__(self, subscription_id: str, credential=None) -> None:
        self._cred = credential or build_credential()
        self._client = AuthorizationManagementClient(self._cred, subscription_id)

    async def assign(
        self, context: DeploymentContext, principal_id: str, target_id: str, role_id: str,
    ) -> str:
        name = grant_id_for(target_id, principal_id, role_id)
        params = RoleAssignmentCreateParameters(
            role_definition_id=(
                f"/subscriptions/{context.subscription_id}"
                f"/providers/Microsoft.Authorization/roleDefinitions/{role_id}"
            ),
            principal_id=principal_id,
            principal_type="ServicePrincipal",
        )
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None,
                lambda: self._client.role_assignments.create(target_id, name, params),
            )
            logger.info("Role assignment created: %s on %s", role_id, target_id)
        except ResourceExistsError:
            logger.info("Role assignment already present: %s on %s", role_id, target_id)
        except HttpResponseError as exc:
            if getattr(exc, "status_code", None) in (401, 403):
                raise PermissionDenied("create_role_assignment", target_id, exc.message) from exc
            raise
        return name


class InMemoryRoleAssignmentService(RoleAssignmentService):
    """Dry-run / test double. Records assignments keyed by the triple."""

    def __init__(self, denied_targets: Iterable[str] = (), delay: float = 0.0) -> None:
        self.assignments: Dict[Tuple[str, str, str], str] = {}
        self.calls = 0
        self._denied = frozenset(denied_targets)
        self._delay = delay

    async def assign(
        self, context: DeploymentContext, principal_id: str, target_id: str, role_id: str,
    ) -> str:
        self.calls += 1
        if self._delay:
            await asyncio.sleep(self._delay)
        if target_id in self._denied:
            raise PermissionDenied("create_role_assignment", target_id)
        key = (target_id, principal_id, role_id)
        return self.assignments.setdefault(key, grant_id_for(target_id, principal_id, role_id))


def build_role_service(dry_run: bool, subscription_id: str = "") -> RoleAssignmentService:
    if dry_run:
        return InMemoryRoleAssignmentService()
    if not subscription_id:
        raise EnvironmentError("AZURE_SUBSCRIPTION_ID is required for live role assignments")
    return AzureRoleAssignmentService(subscription_id)

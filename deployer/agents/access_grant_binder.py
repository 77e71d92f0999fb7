"""
Access Grant Binder

Ensures a single AccessGrant exists for (target, principal, role).

  - Idempotent: a repeated bind() with the same triple returns the recorded
    grant without calling the role-assignment service again.
  - Concurrent binds of the same triple are serialised on a per-key lock.
  - Failures (permission denied, target not found, unknown role) are raised
    as GrantFailure and never retried here; retry policy belongs to the caller.
  - bind_resources() refuses to run unless both the principal's owner and
    the target descriptor are Ready.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Dict, List, Optional, Tuple

from deployer.errors import GrantFailure
from deployer.providers.role_assignments import BUILTIN_ROLES, RoleAssignmentService
from deployer.schemas.resources import (
    AccessGrant,
    DeploymentContext,
    IdentityPrincipal,
    ResourceDescriptor,
    ResourceState,
)
from logs.audit import AuditLogger, get_audit

logger = logging.getLogger(__name__)


def resolve_role(role: str) -> Optional[str]:
    """Built-in role name or raw role-definition GUID -> GUID. None if unknown."""
    if role in BUILTIN_ROLES:
        return BUILTIN_ROLES[role]
    try:
        return str(uuid.UUID(role))
    except ValueError:
        return None


class AccessGrantBinder:

    def __init__(
        self,
        service: RoleAssignmentService,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self._service = service
        self._audit = audit or get_audit()
        self._grants: Dict[Tuple[str, str, str], AccessGrant] = {}
        self._locks: Dict[Tuple[str, str, str], asyncio.Lock] = {}

    async def bind(
        self,
        context: DeploymentContext,
        principal: IdentityPrincipal,
        target_resource_id: str,
        role: str,
    ) -> AccessGrant:
        role_id = resolve_role(role)
        if role_id is None:
            raise GrantFailure(principal.id, target_resource_id, f"unknown role '{role}'")

        key = (target_resource_id, principal.id, role_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            existing = self._grants.get(key)
            if existing is not None:
                logger.debug("Grant already bound: %s", existing.grant_id)
                return existing

            try:
                await self._service.assign(context, principal.id, target_resource_id, role_id)
            except Exception as exc:
                logger.error(
                    "[%s] Grant failed: %s -> %s (%s): %s",
                    context.deployment_id, principal.id, target_resource_id, role, exc,
                )
                raise GrantFailure(principal.id, target_resource_id, exc) from exc

            grant = AccessGrant(
                principal_id=principal.id,
                target_resource_id=target_resource_id,
                role=role_id,
            )
            self._grants[key] = grant

        self._audit.grant_created(
            context.deployment_id, principal.id, target_resource_id, role, grant.grant_id,
        )
        logger.info(
            "[%s] Granted %s on %s to principal %s (owner %s)",
            context.deployment_id, role, target_resource_id,
            principal.id, principal.owner_resource_id,
        )
        return grant

    async def bind_resources(
        self,
        context: DeploymentContext,
        owner: ResourceDescriptor,
        target: ResourceDescriptor,
        role: str,
    ) -> AccessGrant:
        """Grant `owner`'s managed identity `role` on `target`. Both must be Ready."""
        principal_id = owner.outputs.get("principal_id", "")
        target_id = target.outputs.get("id", target.id)
        for d in (owner, target):
            if d.state != ResourceState.READY:
                raise GrantFailure(
                    principal_id or owner.id, target_id,
                    f"'{d.id}' is {d.state.value}, not ready",
                )
        if not principal_id:
            raise GrantFailure(owner.id, target_id, f"'{owner.id}' has no managed identity")

        principal = IdentityPrincipal(id=principal_id, owner_resource_id=owner.id)
        return await self.bind(context, principal, target_id, role)

    def grants(self) -> List[AccessGrant]:
        return list(self._grants.values())

"""
Deployment graph data model.

  ResourceDescriptor: one provisionable unit (mutable; owned by the orchestrator)
  OutputRef / SecretRef / Interpolate:
                        reference values placed inside descriptor parameters;
                        every reference is a static dependency edge
  Secret / IdentityPrincipal / AccessGrant / DependencyEdge:
                        immutable records exchanged between components
  DeploymentContext: subscription / resource-group scope threaded through
                        every provider, store and role-assignment call

Secrets never travel by value through parameters or outputs: consumers hold a
SecretRef (a name), producers hand secret material to the orchestrator in
ProvisionResult.secret_material, which writes it to the SecretStore.
"""
from __future__ import annotations

import hashlib
import json
import secrets
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Union

from pydantic import BaseModel, Field, SecretStr, field_validator

from deployer.errors import OutputsAlreadySet


class ResourceState(str, Enum):
    PENDING      = "pending"
    PROVISIONING = "provisioning"
    READY        = "ready"
    FAILED       = "failed"
    SKIPPED      = "skipped"


class ResourceKind(str, Enum):
    KEY_VAULT          = "key_vault"
    OPENAI             = "openai"
    SQL                = "sql"
    CONTAINER_REGISTRY = "container_registry"
    CONTAINER_INSTANCE = "container_instance"
    ROLE_ASSIGNMENT    = "role_assignment"


# Output attributes each kind exposes once Ready. References to anything else
# are rejected when the graph is built.
KIND_OUTPUTS: Dict[ResourceKind, FrozenSet[str]] = {
    ResourceKind.KEY_VAULT:          frozenset({"id", "name", "vault_uri"}),
    ResourceKind.OPENAI:             frozenset({"id", "name", "endpoint", "deployment_name"}),
    ResourceKind.SQL:                frozenset({"id", "name", "fqdn", "database_name", "admin_login"}),
    ResourceKind.CONTAINER_REGISTRY: frozenset({"id", "name", "login_server"}),
    ResourceKind.CONTAINER_INSTANCE: frozenset({"id", "name", "principal_id", "ip_address", "fqdn"}),
    ResourceKind.ROLE_ASSIGNMENT:    frozenset({"id", "grant_id", "principal_id", "target_resource_id", "role"}),
}


# ══════════════════════════════════════════════════════════════════════════════
# Reference values
# ══════════════════════════════════════════════════════════════════════════════

class OutputRef(BaseModel):
    """Reads `attribute` from another descriptor's outputs once it is Ready."""
    resource_id: str
    attribute: str

    class Config:
        frozen = True

    def __str__(self) -> str:
        return f"{self.resource_id}.{self.attribute}"


class SecretRef(BaseModel):
    """
    Refers to a secret by name. Resolves to the name itself; the value is
    only read at application runtime by a principal holding a grant.
    """
    name: str

    class Config:
        frozen = True


class Interpolate(BaseModel):
    """str.format-style template over output references, e.g. an image path."""
    template: str
    refs: Dict[str, OutputRef] = Field(default_factory=dict)

    class Config:
        frozen = True

    @field_validator("template")
    @classmethod
    def validate_template(cls, v: str) -> str:
        if not v:
            raise ValueError("Interpolate template must not be empty")
        return v


Reference = Union[OutputRef, SecretRef]


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every OutputRef / SecretRef nested anywhere inside `value`."""
    if isinstance(value, (OutputRef, SecretRef)):
        yield value
    elif isinstance(value, Interpolate):
        yield from value.refs.values()
    elif isinstance(value, dict):
        for v in value.values():
            yield from iter_references(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from iter_references(v)


# ══════════════════════════════════════════════════════════════════════════════
# Descriptor
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class ResourceDescriptor:
    id:          str
    kind:        ResourceKind
    parameters:  Dict[str, Any] = field(default_factory=dict)
    # secret name -> key in the provider's secret material
    secrets:     Dict[str, str] = field(default_factory=dict)
    existing:    bool = False
    outputs:     Dict[str, Any] = field(default_factory=dict)
    state:       ResourceState = ResourceState.PENDING
    error:       Optional[str] = None
    error_kind:  Optional[str] = None
    fingerprint: Optional[str] = None
    _sealed:     bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        self.kind = ResourceKind(self.kind)
        if self.existing:
            if self.secrets:
                raise ValueError(f"Existing resource '{self.id}' cannot produce secrets")
            self.state = ResourceState.READY
            self._sealed = True

    @classmethod
    def existing_resource(
        cls, resource_id: str, kind: ResourceKind, outputs: Dict[str, Any],
    ) -> "ResourceDescriptor":
        """Read-only binding to a resource created outside this run."""
        return cls(id=resource_id, kind=kind, existing=True, outputs=dict(outputs))

    def references(self) -> List[Reference]:
        return list(iter_references(self.parameters))

    def set_outputs(self, outputs: Dict[str, Any]) -> None:
        """Populate outputs. Allowed once per provisioning pass."""
        if self._sealed:
            raise OutputsAlreadySet(self.id)
        self.outputs = dict(outputs)
        self._sealed = True

    def reset_for_update(self) -> None:
        """Unseal outputs ahead of re-provisioning on a parameter diff."""
        if self.existing:
            raise OutputsAlreadySet(self.id)
        self._sealed = False

    @property
    def has_outputs(self) -> bool:
        return self._sealed

    @property
    def produces_secrets(self) -> bool:
        return bool(self.secrets)


# ══════════════════════════════════════════════════════════════════════════════
# Immutable records
# ══════════════════════════════════════════════════════════════════════════════

class Secret(BaseModel):
    name: str
    value: SecretStr
    producer_resource_id: str

    class Config:
        frozen = True


class IdentityPrincipal(BaseModel):
    """Platform-issued identity; exists only once its owner resource is Ready."""
    id: str
    owner_resource_id: str

    class Config:
        frozen = True

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not v:
            raise ValueError("principal id must be non-empty")
        return v


def grant_id_for(target_resource_id: str, principal_id: str, role: str) -> str:
    """Deterministic grant id derived from the idempotency triple."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{target_resource_id}|{principal_id}|{role}"))


class AccessGrant(BaseModel):
    principal_id: str
    target_resource_id: str
    role: str

    class Config:
        frozen = True

    @property
    def grant_id(self) -> str:
        return grant_id_for(self.target_resource_id, self.principal_id, self.role)

    @property
    def key(self) -> tuple:
        return (self.target_resource_id, self.principal_id, self.role)


def parameter_fingerprint(kind: ResourceKind, parameters: Dict[str, Any]) -> str:
    """SHA-256 over kind + resolved parameters; equal fingerprints mean no diff."""
    stable = {"kind": ResourceKind(kind).value, "parameters": parameters}
    serialised = json.dumps(stable, sort_keys=True, default=str).encode()
    return hashlib.sha256(serialised).hexdigest()


class DependencyEdge(BaseModel):
    """`source` must reach Ready before `target` starts provisioning."""
    source: str
    target: str

    class Config:
        frozen = True


@dataclass
class ProvisionResult:
    outputs:         Dict[str, Any]
    secret_material: Dict[str, str] = field(default_factory=dict, repr=False)


class DeploymentContext(BaseModel):
    """Explicit scope for one deployment run, no ambient globals."""
    subscription_id: str
    resource_group: str
    location: str
    tags: Dict[str, str] = Field(default_factory=dict)
    deployment_id: str = Field(default_factory=lambda: secrets.token_hex(8))

    class Config:
        frozen = True

    @classmethod
    def from_config(cls, config, **overrides) -> "DeploymentContext":
        values = {
            "subscription_id": config.subscription_id or "00000000-0000-0000-0000-000000000000",
            "resource_group":  config.resource_group,
            "location":        config.location,
            "tags": {
                "managed_by":  "chatbot-infra-orchestrator",
                "environment": config.environment,
            },
        }
        values.update(overrides)
        return cls(**values)

    @property
    def resource_group_id(self) -> str:
        return f"/subscriptions/{self.subscription_id}/resourceGroups/{self.resource_group}"

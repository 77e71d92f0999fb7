"""
Deployment error hierarchy.

Graph-validation errors are fatal: they are raised before any provider call
is made. Per-resource errors (ProvisionFailure, GrantFailure, ...) are caught
by the orchestrator, recorded on the failing descriptor and surfaced in the
DeploymentReport; they never abort independent branches.

Every error carries a `kind`, the stable name written to the report and
the audit log.
"""
from __future__ import annotations

from typing import Iterable, List, Optional


class DeploymentError(Exception):
    """
    Base class for every error raised by the deployer.
    Catching this catches validation, provisioning, grant and store errors.
    """
    kind = "DeploymentError"


# ══════════════════════════════════════════════════════════════════════════════
# Graph validation (fatal, raised before provisioning)
# ══════════════════════════════════════════════════════════════════════════════

class GraphValidationError(DeploymentError):
    """The descriptor set has an invalid shape; nothing may be provisioned."""
    kind = "GraphValidationError"


class CycleDetected(GraphValidationError):
    kind = "CycleDetected"

    def __init__(self, members: Iterable[str]) -> None:
        self.members: List[str] = list(members)
        loop = self.members + self.members[:1]
        super().__init__(f"Dependency cycle detected: {' -> '.join(loop)}")


class DanglingReference(GraphValidationError):
    """A parameter references an output or secret nobody in the graph produces."""
    kind = "DanglingReference"

    def __init__(self, resource_id: str, target: str) -> None:
        self.resource_id = resource_id
        self.target = target
        super().__init__(
            f"Resource '{resource_id}' references '{target}', "
            "which is not produced by any resource in the graph"
        )


class DuplicateResource(GraphValidationError):
    kind = "DuplicateResource"

    def __init__(self, resource_id: str) -> None:
        self.resource_id = resource_id
        super().__init__(f"Resource id '{resource_id}' declared more than once")


class DuplicateSecretProducer(GraphValidationError):
    kind = "DuplicateSecretProducer"

    def __init__(self, name: str, producers: Iterable[str]) -> None:
        self.name = name
        self.producers = sorted(producers)
        super().__init__(
            f"Secret '{name}' has more than one producer: {', '.join(self.producers)}"
        )


class UnorderedSecretWrite(GraphValidationError):
    """A secret producer does not depend on the vault that backs the secret store."""
    kind = "UnorderedSecretWrite"

    def __init__(self, resource_id: str, store_resource_id: str) -> None:
        self.resource_id = resource_id
        self.store_resource_id = store_resource_id
        super().__init__(
            f"Resource '{resource_id}' writes secrets but does not depend on "
            f"secret store resource '{store_resource_id}'"
        )


# ══════════════════════════════════════════════════════════════════════════════
# Per-resource errors (contained to one branch)
# ══════════════════════════════════════════════════════════════════════════════

class ProvisionFailure(DeploymentError):
    kind = "ProvisionFailure"

    def __init__(self, resource_id: str, cause: object) -> None:
        self.resource_id = resource_id
        self.cause = cause
        super().__init__(f"Provisioning '{resource_id}' failed: {cause}")


class ProvisionTimeout(ProvisionFailure):
    kind = "Timeout"

    def __init__(self, resource_id: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(resource_id, f"timed out after {timeout:g}s")


class ProvisionCancelled(ProvisionFailure):
    kind = "Cancelled"

    def __init__(self, resource_id: str) -> None:
        super().__init__(resource_id, "deployment cancelled while provisioning")


class GrantFailure(DeploymentError):
    kind = "GrantFailure"

    def __init__(self, principal_id: str, target_id: str, cause: object) -> None:
        self.principal_id = principal_id
        self.target_id = target_id
        self.cause = cause
        super().__init__(
            f"Granting principal '{principal_id}' access to '{target_id}' failed: {cause}"
        )


class PermissionDenied(DeploymentError):
    kind = "PermissionDenied"

    def __init__(self, operation: str, target: str, detail: Optional[str] = None) -> None:
        self.operation = operation
        self.target = target
        msg = f"Permission denied: {operation} on '{target}'"
        super().__init__(f"{msg}: {detail}" if detail else msg)


class SecretNotFound(DeploymentError):
    kind = "NotFound"

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Secret '{name}' not found")


# ══════════════════════════════════════════════════════════════════════════════
# Programming errors
# ══════════════════════════════════════════════════════════════════════════════

class InvalidTransition(DeploymentError):
    kind = "InvalidTransition"

    def __init__(self, resource_id: str, current: str, requested: str) -> None:
        self.resource_id = resource_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Resource '{resource_id}': illegal state transition {current} -> {requested}"
        )


class OutputsAlreadySet(DeploymentError):
    kind = "OutputsAlreadySet"

    def __init__(self, resource_id: str) -> None:
        self.resource_id = resource_id
        super().__init__(f"Outputs of '{resource_id}' are immutable once set")


def error_kind(exc: BaseException) -> str:
    """Stable report name for any exception."""
    return getattr(exc, "kind", type(exc).__name__)

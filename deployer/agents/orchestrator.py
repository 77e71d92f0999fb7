"""
Deployment Orchestrator: deployer/agents/orchestrator.py

Drives a validated descriptor graph to Ready:
  1. Validates the graph (fatal errors abort before any provider call)
  2. Starts one task per descriptor; each waits for all of its producers
  3. Resolves references, provisions through the provider (or binds a
     grant through the AccessGrantBinder for role assignments)
  4. Writes declared secrets to the SecretStore and reads each one back
  5. Publishes outputs and marks the descriptor Ready; only then are
     consumers released

A Failed descriptor marks every descendant Skipped; independent branches
carry on. Re-running with unchanged parameters makes no provider calls.

State machine:
    pending      -> provisioning | skipped | ready (unchanged since last run)
    provisioning -> ready | failed
    ready        -> provisioning (parameter diff) | skipped (producer failed)
    failed       -> pending  (next run)
    skipped      -> pending  (next run)
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Set, Tuple

from config.azure_config import ORCHESTRATOR_CONFIG, OrchestratorConfig
from deployer.agents.access_grant_binder import AccessGrantBinder
from deployer.errors import (
    DeploymentError,
    GraphValidationError,
    InvalidTransition,
    ProvisionCancelled,
    ProvisionFailure,
    ProvisionTimeout,
    error_kind,
)
from deployer.graph.resolver import DependencyResolver, resolve_parameters
from deployer.providers.base import ResourceProvider
from deployer.schemas.resources import (
    AccessGrant,
    DeploymentContext,
    ResourceDescriptor,
    ResourceKind,
    ResourceState,
    Secret,
    parameter_fingerprint,
)
from deployer.stores.secret_store import SecretStore
from logs.audit import AuditLogger, get_audit

logger = logging.getLogger(__name__)

S = ResourceState
ALLOWED_TRANSITIONS: Dict[ResourceState, Set[ResourceState]] = {
    S.PENDING:      {S.PROVISIONING, S.SKIPPED, S.READY},
    S.PROVISIONING: {S.READY, S.FAILED},
    S.READY:        {S.PROVISIONING, S.SKIPPED},
    S.FAILED:       {S.PENDING},
    S.SKIPPED:      {S.PENDING},
}


# ══════════════════════════════════════════════════════════════════════════════
# Report dataclasses
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class ResourceOutcome:
    resource_id:      str
    kind:             str
    state:            str
    error:            Optional[str] = None
    error_kind:       Optional[str] = None
    changed:          bool          = False   # provider / binder was called this run
    duration_seconds: float         = 0.0


@dataclass
class DeploymentReport:
    deployment_id:    str
    outcomes:         List[ResourceOutcome]
    batches:          List[List[str]]
    grants:           List[AccessGrant]
    duration_seconds: float
    finished_at:      float = field(default_factory=time.time)

    @property
    def succeeded(self) -> bool:
        return all(o.state == S.READY.value for o in self.outcomes)

    @property
    def provider_calls(self) -> int:
        return sum(1 for o in self.outcomes if o.changed)

    def outcome(self, resource_id: str) -> ResourceOutcome:
        for o in self.outcomes:
            if o.resource_id == resource_id:
                return o
        raise KeyError(resource_id)

    def failed(self) -> List[ResourceOutcome]:
        return [o for o in self.outcomes if o.state == S.FAILED.value]

    def skipped(self) -> List[ResourceOutcome]:
        return [o for o in self.outcomes if o.state == S.SKIPPED.value]

    def counts(self) -> Dict[str, int]:
        return dict(Counter(o.state for o in self.outcomes))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deployment_id":    self.deployment_id,
            "succeeded":        self.succeeded,
            "duration_seconds": self.duration_seconds,
            "batches":          self.batches,
            "counts":           self.counts(),
            "resources":        [asdict(o) for o in self.outcomes],
            "grants": [
                {**g.model_dump(), "grant_id": g.grant_id} for g in self.grants
            ],
        }

    def summary(self) -> str:
        lines = [
            f"Deployment {self.deployment_id}: "
            f"{'SUCCEEDED' if self.succeeded else 'FAILED'} in {self.duration_seconds:.1f}s",
        ]
        for o in self.outcomes:
            line = f"  {o.resource_id:<28} {o.kind:<20} {o.state:<10}"
            if o.error:
                line += f" {o.error_kind}: {o.error}" if o.error_kind else f" {o.error}"
            elif o.state == S.READY.value and not o.changed:
                line += " (unchanged)"
            lines.append(line.rstrip())
        return "\n".join(lines)


# ══════════════════════════════════════════════════════════════════════════════
# Orchestrator
# ══════════════════════════════════════════════════════════════════════════════

class DeploymentOrchestrator:
    """
    Provisions a descriptor graph in dependency order with bounded
    parallelism. deploy() raises only for an invalid graph; every
    per-resource failure is captured in the DeploymentReport.
    """

    def __init__(
        self,
        provider:      ResourceProvider,
        secret_store:  SecretStore,
        binder:        AccessGrantBinder,
        context:       DeploymentContext,
        config:        Optional[OrchestratorConfig] = None,
        audit:         Optional[AuditLogger]        = None,
        secret_store_resource_id: Optional[str]     = None,
    ) -> None:
        self._provider = provider
        self._store    = secret_store
        self._binder   = binder
        self._context  = context
        self._config   = config or ORCHESTRATOR_CONFIG
        self._audit    = audit or get_audit()
        self._store_id = secret_store_resource_id
        self._slots    = asyncio.Semaphore(max(1, self._config.max_parallel))
        # one in-flight operation per resource id, across overlapping runs
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def context(self) -> DeploymentContext:
        return self._context

    # ── Public entry points ───────────────────────────────────────────────────

    def plan(self, descriptors: Iterable[ResourceDescriptor]) -> List[List[str]]:
        """Validate and return the provisioning batches. No remote calls."""
        return self._validate(list(descriptors)).batches()

    async def deploy(self, descriptors: Iterable[ResourceDescriptor]) -> DeploymentReport:
        descriptors = list(descriptors)
        ctx = self._context
        t0 = time.time()

        resolver = self._validate(descriptors)
        by_id    = resolver.descriptors
        batches  = resolver.batches()

        self._audit.deployment_started(ctx.deployment_id, len(descriptors), batches)
        logger.info(
            "[%s] Deployment starting: %d resources in %d batches (max_parallel=%d)",
            ctx.deployment_id, len(descriptors), len(batches), self._config.max_parallel,
        )

        settled: Dict[str, asyncio.Event] = {rid: asyncio.Event() for rid in by_id}
        outcomes: Dict[str, Tuple[bool, float]] = {}
        await asyncio.gather(*(
            self._drive(d, by_id, resolver.producers_of(d.id), settled, outcomes)
            for d in descriptors
        ))

        duration = round(time.time() - t0, 2)
        report = DeploymentReport(
            deployment_id=ctx.deployment_id,
            outcomes=[self._outcome(by_id[rid], *outcomes[rid]) for rid in resolver.order()],
            batches=batches,
            grants=self._binder.grants(),
            duration_seconds=duration,
        )
        self._audit.deployment_complete(
            ctx.deployment_id, report.succeeded, report.counts(), duration,
        )
        log = logger.info if report.succeeded else logger.error
        log(
            "[%s] Deployment %s in %.1fs: %s",
            ctx.deployment_id, "complete" if report.succeeded else "finished with failures",
            duration, report.counts(),
        )
        return report

    async def status(self, descriptors: Iterable[ResourceDescriptor]) -> Dict[str, str]:
        """Provider-side provisioning state of every named, managed resource."""
        states: Dict[str, str] = {}
        for d in descriptors:
            if d.existing or d.kind == ResourceKind.ROLE_ASSIGNMENT:
                continue
            name = d.outputs.get("name") or d.parameters.get("name")
            if isinstance(name, str):
                states[d.id] = await self._provider.get_status(self._context, d.kind, name)
        return states

    # ── Per-descriptor task ───────────────────────────────────────────────────

    def _validate(self, descriptors: List[ResourceDescriptor]) -> DependencyResolver:
        resolver = DependencyResolver(descriptors, self._store_id)
        try:
            resolver.validate()
        except GraphValidationError as exc:
            self._audit.graph_rejected(self._context.deployment_id, exc.kind, str(exc))
            logger.error("[%s] Graph rejected: %s", self._context.deployment_id, exc)
            raise
        return resolver

    async def _drive(
        self,
        d:         ResourceDescriptor,
        by_id:     Dict[str, ResourceDescriptor],
        producers: Set[str],
        settled:   Dict[str, asyncio.Event],
        outcomes:  Dict[str, Tuple[bool, float]],
    ) -> None:
        try:
            if d.existing:
                outcomes[d.id] = (False, 0.0)
                return
            for pid in sorted(producers):
                await settled[pid].wait()
            t0 = time.monotonic()
            async with self._locks.setdefault(d.id, asyncio.Lock()):
                changed = await self._converge(d, by_id, producers)
            outcomes[d.id] = (changed, round(time.monotonic() - t0, 3))
        finally:
            # consumers wake only after outputs and secrets are visible
            settled[d.id].set()

    async def _converge(
        self,
        d:         ResourceDescriptor,
        by_id:     Dict[str, ResourceDescriptor],
        producers: Set[str],
    ) -> bool:
        """Bring one descriptor to a terminal state. True if a remote call was made."""
        if d.state in (S.FAILED, S.SKIPPED):
            self._transition(d, S.PENDING)

        blocked = sorted(p for p in producers if by_id[p].state != S.READY)
        if blocked:
            self._transition(
                d, S.SKIPPED,
                error=f"dependency '{blocked[0]}' is {by_id[blocked[0]].state.value}",
            )
            return False

        try:
            params = resolve_parameters(d, by_id)
            fingerprint = parameter_fingerprint(d.kind, params)
        except Exception as exc:
            failure = exc if isinstance(exc, DeploymentError) else ProvisionFailure(d.id, exc)
            self._transition(d, S.PROVISIONING)
            self._transition(d, S.FAILED, error=str(failure), kind=error_kind(failure))
            return False

        if d.has_outputs and d.fingerprint == fingerprint:
            if d.state != S.READY:
                self._transition(d, S.READY)
            logger.info("[%s] %s unchanged; skipping provider call", self._context.deployment_id, d.id)
            return False

        if d.has_outputs:
            logger.info("[%s] %s parameters changed; re-provisioning", self._context.deployment_id, d.id)
            d.reset_for_update()
        self._transition(d, S.PROVISIONING)

        try:
            async with self._slots:
                outputs, material = await self._provision(d, params, by_id)
                self._check_outputs(d, outputs, material)
                await self._write_secrets(d, material)
        except asyncio.CancelledError:
            cancelled = ProvisionCancelled(d.id)
            self._transition(d, S.FAILED, error=str(cancelled), kind=cancelled.kind)
            raise
        except DeploymentError as exc:
            self._transition(d, S.FAILED, error=str(exc), kind=error_kind(exc))
            return True
        except Exception as exc:
            failure = ProvisionFailure(d.id, exc)
            self._transition(d, S.FAILED, error=str(failure), kind=failure.kind)
            return True

        d.set_outputs(outputs)
        d.fingerprint = fingerprint
        self._transition(d, S.READY)
        return True

    async def _provision(
        self,
        d:      ResourceDescriptor,
        params: Dict[str, Any],
        by_id:  Dict[str, ResourceDescriptor],
    ) -> Tuple[Dict[str, Any], Dict[str, str]]:
        if d.kind == ResourceKind.ROLE_ASSIGNMENT:
            grant = await self._bounded(
                d,
                self._binder.bind_resources(
                    self._context,
                    owner=by_id[d.parameters["principal"].resource_id],
                    target=by_id[d.parameters["target"].resource_id],
                    role=params["role"],
                ),
                self._config.grant_timeout_seconds,
            )
            return {
                "id":                 grant.grant_id,
                "grant_id":           grant.grant_id,
                "principal_id":       grant.principal_id,
                "target_resource_id": grant.target_resource_id,
                "role":               grant.role,
            }, {}

        result = await self._bounded(
            d,
            self._provider.create_or_update(self._context, d.kind, d.id, params),
            self._config.provider_timeout_seconds,
        )
        return result.outputs, result.secret_material

    async def _bounded(self, d: ResourceDescriptor, call: Awaitable, timeout: float):
        try:
            return await asyncio.wait_for(call, timeout)
        except asyncio.TimeoutError:
            raise ProvisionTimeout(d.id, timeout) from None

    def _check_outputs(
        self, d: ResourceDescriptor, outputs: Dict[str, Any], material: Dict[str, str],
    ) -> None:
        missing = sorted(key for key in d.secrets.values() if not material.get(key))
        if missing:
            raise ProvisionFailure(d.id, f"provider returned no secret material for {missing}")

        rendered = [str(v) for v in outputs.values()]
        for key, value in material.items():
            if value and any(value in r for r in rendered):
                raise ProvisionFailure(d.id, f"secret material '{key}' appears in outputs")

        unused = sorted(set(material) - set(d.secrets.values()))
        if unused:
            logger.debug("[%s] %s: discarding undeclared secret material %s",
                         self._context.deployment_id, d.id, unused)

    async def _write_secrets(self, d: ResourceDescriptor, material: Dict[str, str]) -> None:
        """Write then read back every declared secret before Ready is published."""
        timeout = self._config.secret_timeout_seconds
        for name, key in sorted(d.secrets.items()):
            secret = Secret(name=name, value=material[key], producer_resource_id=d.id)
            value = secret.value.get_secret_value()
            await self._bounded(d, self._store.put(self._context, secret.name, value), timeout)
            stored = await self._bounded(d, self._store.get(self._context, secret.name), timeout)
            if stored != value:
                raise ProvisionFailure(d.id, f"secret '{name}' did not read back after write")
            self._audit.secret_written(self._context.deployment_id, d.id, name)
            logger.info("[%s] %s: secret stored: %s", self._context.deployment_id, d.id, name)

    # ── State machine ─────────────────────────────────────────────────────────

    def _transition(
        self,
        d:     ResourceDescriptor,
        state: ResourceState,
        error: Optional[str] = None,
        kind:  Optional[str] = None,
    ) -> None:
        previous = d.state
        if state not in ALLOWED_TRANSITIONS[previous]:
            raise InvalidTransition(d.id, previous.value, state.value)

        d.state = state
        d.error = error
        d.error_kind = kind

        self._audit.resource_state(
            self._context.deployment_id, d.id, d.kind.value,
            previous.value, state.value, error,
        )
        if state == S.FAILED:
            logger.error("[%s] %s: %s -> failed: %s",
                         self._context.deployment_id, d.id, previous.value, error)
        elif state == S.SKIPPED:
            logger.warning("[%s] %s: %s -> skipped (%s)",
                           self._context.deployment_id, d.id, previous.value, error)
        else:
            logger.info("[%s] %s: %s -> %s",
                        self._context.deployment_id, d.id, previous.value, state.value)

    @staticmethod
    def _outcome(d: ResourceDescriptor, changed: bool, duration: float) -> ResourceOutcome:
        return ResourceOutcome(
            resource_id=d.id,
            kind=d.kind.value,
            state=d.state.value,
            error=d.error,
            error_kind=d.error_kind,
            changed=changed,
            duration_seconds=duration,
        )

"""
Dependency Resolver

Builds the provisioning DAG by static reference analysis: every OutputRef,
SecretRef or Interpolate found anywhere in a descriptor's parameters becomes
an edge from the producer to the consumer. Nothing is executed here.

validate() rejects, in order:
  1. duplicate resource ids
  2. secrets declared by more than one producer
  3. references to resources / outputs / secrets that nobody produces,
     and template placeholders with no matching reference
  4. role assignments without principal + target output references
  5. cycles (the error names the members in cycle order)
  6. secret producers not ordered after the vault backing the secret store

order() and batches() are only available on a valid graph.
"""
from __future__ import annotations

import logging
import re
import string
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Set

from deployer.errors import (
    CycleDetected,
    DanglingReference,
    DuplicateResource,
    DuplicateSecretProducer,
    GraphValidationError,
    ProvisionFailure,
    UnorderedSecretWrite,
)
from deployer.schemas.resources import (
    KIND_OUTPUTS,
    DependencyEdge,
    Interpolate,
    OutputRef,
    ResourceDescriptor,
    ResourceKind,
    ResourceState,
    SecretRef,
)

logger = logging.getLogger(__name__)


class DependencyResolver:
    """Computes a valid provisioning order from a descriptor set."""

    def __init__(
        self,
        descriptors: Iterable[ResourceDescriptor],
        secret_store_resource_id: Optional[str] = None,
    ) -> None:
        self._descriptors: List[ResourceDescriptor] = list(descriptors)
        self._store_id = secret_store_resource_id
        self._by_id: Dict[str, ResourceDescriptor] = {}
        self._secret_producer: Dict[str, str] = {}
        # producer id -> consumer ids, and the reverse
        self._consumers: Dict[str, Set[str]] = defaultdict(set)
        self._producers: Dict[str, Set[str]] = defaultdict(set)
        self._validated = False

    # ── Public API ────────────────────────────────────────────────────────────

    @property
    def descriptors(self) -> Dict[str, ResourceDescriptor]:
        self.validate()
        return dict(self._by_id)

    def validate(self) -> None:
        """Raise GraphValidationError if the graph may not be provisioned."""
        if self._validated:
            return
        self._index()
        self._index_secrets()
        self._build_edges()
        self._check_role_assignments()
        self._check_cycles()
        self._check_secret_store_order()
        self._validated = True
        logger.debug(
            "Graph valid: %d resources, %d edges",
            len(self._by_id), sum(len(c) for c in self._consumers.values()),
        )

    def edges(self) -> List[DependencyEdge]:
        self.validate()
        return [
            DependencyEdge(source=src, target=dst)
            for src in sorted(self._consumers)
            for dst in sorted(self._consumers[src])
        ]

    def producers_of(self, resource_id: str) -> Set[str]:
        self.validate()
        return set(self._producers.get(resource_id, ()))

    def consumers_of(self, resource_id: str) -> Set[str]:
        self.validate()
        return set(self._consumers.get(resource_id, ()))

    def ancestors(self, resource_id: str) -> Set[str]:
        self.validate()
        return self._walk(resource_id, self._producers)

    def descendants(self, resource_id: str) -> Set[str]:
        self.validate()
        return self._walk(resource_id, self._consumers)

    def secret_producer(self, name: str) -> str:
        self.validate()
        return self._secret_producer[name]

    def batches(self) -> List[List[str]]:
        """
        Kahn's algorithm, one layer at a time. Every resource in a batch has
        all of its producers in earlier batches, so a batch may be
        provisioned in parallel.
        """
        self.validate()
        indegree = {rid: len(self._producers.get(rid, ())) for rid in self._by_id}
        ready = sorted(rid for rid, deg in indegree.items() if deg == 0)
        batches: List[List[str]] = []
        while ready:
            batches.append(ready)
            nxt: List[str] = []
            for rid in ready:
                for consumer in self._consumers.get(rid, ()):
                    indegree[consumer] -= 1
                    if indegree[consumer] == 0:
                        nxt.append(consumer)
            ready = sorted(nxt)
        return batches

    def order(self) -> List[str]:
        """Strict total order: every producer precedes its consumers."""
        return [rid for batch in self.batches() for rid in batch]

    # ── Validation steps ──────────────────────────────────────────────────────

    def _index(self) -> None:
        self._by_id.clear()
        for d in self._descriptors:
            if d.id in self._by_id:
                raise DuplicateResource(d.id)
            self._by_id[d.id] = d

    def _index_secrets(self) -> None:
        owners: Dict[str, List[str]] = defaultdict(list)
        for d in self._descriptors:
            for name in d.secrets:
                owners[name].append(d.id)
        for name, ids in owners.items():
            if len(ids) > 1:
                raise DuplicateSecretProducer(name, ids)
        self._secret_producer = {name: ids[0] for name, ids in owners.items()}

    def _build_edges(self) -> None:
        self._consumers.clear()
        self._producers.clear()
        for d in self._descriptors:
            self._check_templates(d)
            for ref in d.references():
                producer = self._producer_for(d, ref)
                if producer == d.id:
                    raise CycleDetected([d.id])
                self._consumers[producer].add(d.id)
                self._producers[d.id].add(producer)

    def _check_templates(self, d: ResourceDescriptor) -> None:
        for template in _iter_templates(d.parameters):
            try:
                fields = [f for _, f, _, _ in string.Formatter().parse(template.template)]
            except ValueError as exc:
                raise GraphValidationError(
                    f"Resource '{d.id}' has a malformed template {template.template!r}: {exc}"
                ) from exc
            for field in fields:
                if field is None:
                    continue
                name = re.split(r"[.\[]", field, maxsplit=1)[0]
                if name not in template.refs:
                    raise DanglingReference(d.id, f"{{{field}}}")

    def _producer_for(self, consumer: ResourceDescriptor, ref) -> str:
        if isinstance(ref, SecretRef):
            producer = self._secret_producer.get(ref.name)
            if producer is None:
                raise DanglingReference(consumer.id, f"secret:{ref.name}")
            return producer

        producer = self._by_id.get(ref.resource_id)
        if producer is None:
            raise DanglingReference(consumer.id, str(ref))
        known = (
            set(producer.outputs) if producer.existing
            else KIND_OUTPUTS.get(producer.kind, frozenset())
        )
        if ref.attribute not in known:
            raise DanglingReference(consumer.id, str(ref))
        return producer.id

    def _check_role_assignments(self) -> None:
        for d in self._descriptors:
            if d.kind != ResourceKind.ROLE_ASSIGNMENT or d.existing:
                continue
            for name, attribute in (("principal", "principal_id"), ("target", "id")):
                ref = d.parameters.get(name)
                if not isinstance(ref, OutputRef) or ref.attribute != attribute:
                    raise GraphValidationError(
                        f"Role assignment '{d.id}' needs parameter '{name}' to "
                        f"reference another resource's '{attribute}' output"
                    )
            if not d.parameters.get("role"):
                raise GraphValidationError(f"Role assignment '{d.id}' has no role")

    def _check_cycles(self) -> None:
        """Iterative three-colour DFS; reports the first cycle found."""
        WHITE, GREY, BLACK = 0, 1, 2
        colour = {rid: WHITE for rid in self._by_id}

        for root in sorted(self._by_id):
            if colour[root] != WHITE:
                continue
            path: List[str] = [root]
            stack = [iter(sorted(self._consumers.get(root, ())))]
            colour[root] = GREY
            while stack:
                child = next(stack[-1], None)
                if child is None:
                    colour[path.pop()] = BLACK
                    stack.pop()
                    continue
                if colour[child] == GREY:
                    raise CycleDetected(path[path.index(child):])
                if colour[child] == WHITE:
                    colour[child] = GREY
                    path.append(child)
                    stack.append(iter(sorted(self._consumers.get(child, ()))))

    def _check_secret_store_order(self) -> None:
        if not self._store_id:
            return
        writers = sorted(d.id for d in self._descriptors if d.produces_secrets)
        if not writers:
            return
        if self._store_id not in self._by_id:
            raise DanglingReference(writers[0], self._store_id)
        for rid in writers:
            if rid != self._store_id and self._store_id not in self._walk(rid, self._producers):
                raise UnorderedSecretWrite(rid, self._store_id)

    @staticmethod
    def _walk(start: str, adjacency: Dict[str, Set[str]]) -> Set[str]:
        seen: Set[str] = set()
        todo = list(adjacency.get(start, ()))
        while todo:
            rid = todo.pop()
            if rid in seen:
                continue
            seen.add(rid)
            todo.extend(adjacency.get(rid, ()))
        return seen


# ══════════════════════════════════════════════════════════════════════════════
# Parameter resolution
# ══════════════════════════════════════════════════════════════════════════════

def resolve_parameters(
    descriptor: ResourceDescriptor,
    by_id: Dict[str, ResourceDescriptor],
) -> Dict[str, Any]:
    """
    Substitute every reference in `descriptor.parameters` with its concrete
    value. SecretRefs become the secret's name. Reading an output of a
    producer that is not Ready raises ProvisionFailure.
    """
    def _resolve(value: Any) -> Any:
        if isinstance(value, OutputRef):
            producer = by_id[value.resource_id]
            if producer.state != ResourceState.READY:
                raise ProvisionFailure(
                    descriptor.id,
                    f"output {value} read while producer is {producer.state.value}",
                )
            return producer.outputs[value.attribute]
        if isinstance(value, SecretRef):
            return value.name
        if isinstance(value, Interpolate):
            return value.template.format(
                **{k: _resolve(ref) for k, ref in value.refs.items()}
            )
        if isinstance(value, dict):
            return {k: _resolve(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [_resolve(v) for v in value]
        return value

    return {k: _resolve(v) for k, v in descriptor.parameters.items()}


def _iter_templates(value: Any) -> Iterable[Interpolate]:
    if isinstance(value, Interpolate):
        yield value
    elif isinstance(value, dict):
        for v in value.values():
            yield from _iter_templates(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from _iter_templates(v)

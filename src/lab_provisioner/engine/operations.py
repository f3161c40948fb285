"""Apply operations.

Terraform runs apply by executing a graph of operations (resource nodes + other
nodes). This module implements a minimal version of that idea: each operation
knows how to apply itself and lists dependencies on other operations.

Operation keys are ``"<address>:<action>"`` so a replacement can hold both a
delete and a create node for the same address.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from lab_provisioner.core.state import State
from lab_provisioner.engine.graph import DependencyGraph
from lab_provisioner.engine.types import Action

if TYPE_CHECKING:
    import threading
    from collections.abc import Iterable

    from lab_provisioner.engine.handlers import EngineContext
    from lab_provisioner.engine.registry import ResourceTypeRegistry
    from lab_provisioner.engine.types import ResourceChange

BARRIER_KEY = "__engine__.apply_barrier"
_DELETE_PRIORITY_BASE = 1000


class Operation(Protocol):
    key: str
    deps: list[str]
    change: ResourceChange | None

    def run(
        self,
        *,
        ctx: EngineContext,
        state: State,
        registry: ResourceTypeRegistry,
        lock: threading.Lock,
    ) -> bool:
        """Execute this operation.

        Returns:
            True if state should be persisted (serial bump + write).
        """


def operation_key(change: ResourceChange) -> str:
    return f"{change.address}:{change.action.value}"


@dataclass
class BarrierOperation:
    """A no-op node used to enforce ordering between operation phases."""

    key: str
    deps: list[str] = field(default_factory=list)
    change: ResourceChange | None = None

    def run(
        self,
        *,
        ctx: EngineContext,
        state: State,
        registry: ResourceTypeRegistry,
        lock: threading.Lock,
    ) -> bool:
        _ = ctx, state, registry, lock
        return False


@dataclass
class NoopOperation:
    """An unchanged resource; keeps transitive ordering through it intact."""

    key: str
    change: ResourceChange | None
    deps: list[str] = field(default_factory=list)

    def run(
        self,
        *,
        ctx: EngineContext,
        state: State,
        registry: ResourceTypeRegistry,
        lock: threading.Lock,
    ) -> bool:
        _ = ctx, state, registry, lock
        return False


def _desired_object(change: ResourceChange, reg: Any, *, action: str) -> Any:
    if change.desired is None:
        raise ValueError(f"Missing desired config for {action}: {change.address}")

    desired_obj = reg.model.model_validate(change.desired)
    if desired_obj.address != change.address:
        raise ValueError(
            f"Desired address mismatch for {action}: {change.address} != {desired_obj.address}"
        )
    return desired_obj


@dataclass
class CreateOperation:
    key: str
    change: ResourceChange | None
    deps: list[str] = field(default_factory=list)

    def run(
        self,
        *,
        ctx: EngineContext,
        state: State,
        registry: ResourceTypeRegistry,
        lock: threading.Lock,
    ) -> bool:
        assert self.change is not None
        reg = registry.get(self.change.resource_type)
        handler = reg.handler
        desired_obj = _desired_object(self.change, reg, action="create")

        attrs = handler.create(ctx, desired_obj)
        with lock:
            state.record(
                address=self.change.address,
                kind=self.change.kind,
                resource_type=self.change.resource_type,
                name=desired_obj.name,
                attributes=attrs,
                dependencies=list(desired_obj.depends_on),
                protected=handler.is_protected(attrs),
            )
        return True


@dataclass
class UpdateOperation:
    key: str
    change: ResourceChange | None
    deps: list[str] = field(default_factory=list)

    def run(
        self,
        *,
        ctx: EngineContext,
        state: State,
        registry: ResourceTypeRegistry,
        lock: threading.Lock,
    ) -> bool:
        assert self.change is not None
        reg = registry.get(self.change.resource_type)
        handler = reg.handler
        desired_obj = _desired_object(self.change, reg, action="update")

        with lock:
            prior_inst = state.resources[self.change.address]
        attrs = handler.update(ctx, desired_obj, prior_inst, self.change.diff or {})

        with lock:
            prior_inst.dependencies = list(desired_obj.depends_on)
            prior_inst.observe(attrs, protected=handler.is_protected(attrs))
        return True


@dataclass
class DeleteOperation:
    key: str
    change: ResourceChange | None
    deps: list[str] = field(default_factory=list)

    def run(
        self,
        *,
        ctx: EngineContext,
        state: State,
        registry: ResourceTypeRegistry,
        lock: threading.Lock,
    ) -> bool:
        assert self.change is not None
        reg = registry.get(self.change.resource_type)
        handler = reg.handler

        with lock:
            prior_inst = state.resources[self.change.address]
        handler.delete(ctx, prior_inst)
        with lock:
            state.forget(self.change.address)
        return True


def _new_operation(change: ResourceChange) -> Operation:
    key = operation_key(change)
    match change.action:
        case Action.NOOP:
            return NoopOperation(key=key, change=change)
        case Action.CREATE:
            return CreateOperation(key=key, change=change)
        case Action.UPDATE:
            return UpdateOperation(key=key, change=change)
        case Action.DELETE:
            return DeleteOperation(key=key, change=change)
        case _:
            raise ValueError(f"Unknown action: {change.action}")


def _declared_deps(change: ResourceChange) -> list[str]:
    if change.desired is None:
        raise ValueError(f"Missing desired config for {change.action.value}: {change.address}")
    deps = change.desired.get("depends_on", [])
    if deps is None:
        deps = []
    if not isinstance(deps, list) or not all(isinstance(d, str) for d in deps):
        raise ValueError(f"Invalid depends_on for {change.address}: expected list[str]")
    return deps


def _predecessors(ops: dict[str, Operation], start: Iterable[str]) -> set[str]:
    """All operation keys that *start* transitively waits on."""
    seen: set[str] = set()
    stack = [d for k in start for d in ops[k].deps]
    while stack:
        key = stack.pop()
        if key in seen:
            continue
        seen.add(key)
        stack.extend(ops[key].deps)
    return seen


def build_operations(changes: Iterable[ResourceChange], state: State) -> dict[str, Operation]:
    """Build the apply operation graph for *changes*.

    - create/update/no-op: dependencies run before dependents
    - delete: dependents are deleted before dependencies (edges inverted)
    - replacement: the old resource is deleted before the new one is created
    - plain deletes run after every create/update
    """
    ops: dict[str, Operation] = {}
    forward: dict[str, str] = {}  # address -> create/update/no-op key
    deletes: dict[str, str] = {}  # address -> delete key

    for c in changes:
        op = _new_operation(c)
        if op.key in ops:
            raise ValueError(f"Duplicate operation key in plan: {op.key}")
        ops[op.key] = op
        if c.action == Action.DELETE:
            deletes[c.address] = op.key
        else:
            forward[c.address] = op.key

    for addr, key in forward.items():
        op = ops[key]
        assert op.change is not None
        op.deps.extend(forward[d] for d in _declared_deps(op.change) if d in forward)
        if addr in deletes:
            op.deps.append(deletes[addr])

    for addr, key in deletes.items():
        inst = state.resources.get(addr)
        if inst is None:
            raise ValueError(f"Missing state for delete operation: {addr}")
        for dep in inst.dependencies:
            if dep in deletes:
                ops[deletes[dep]].deps.append(key)

    # Create/update runs before plain deletes (Terraform-like default ordering),
    # except deletes that a replacement has to wait for.
    changing = sorted(
        key
        for key in forward.values()
        if (change := ops[key].change) is not None and change.action != Action.NOOP
    )
    replacement_deletes = [key for addr, key in deletes.items() if addr in forward]
    exempt = _predecessors(ops, replacement_deletes)
    plain_deletes = [
        key for addr, key in deletes.items() if addr not in forward and key not in exempt
    ]
    if changing and plain_deletes:
        if BARRIER_KEY in ops:
            raise ValueError(f"Barrier operation key conflicts with plan: {BARRIER_KEY}")
        ops[BARRIER_KEY] = BarrierOperation(key=BARRIER_KEY, deps=changing)
        for key in plain_deletes:
            ops[key].deps.append(BARRIER_KEY)

    return ops


def operation_graph(ops: dict[str, Operation], registry: ResourceTypeRegistry) -> DependencyGraph:
    """Dependency graph over *ops*; ties go by resource name, then kind priority."""
    priorities: dict[str, int] = {}
    names: dict[str, str] = {}
    for key, op in ops.items():
        if op.change is None:
            continue
        priority = registry.get(op.change.resource_type).model.plan_priority
        if op.change.action == Action.DELETE:
            # Reverse kind order for deletes: backends before balancers before VMs.
            priority = _DELETE_PRIORITY_BASE - priority
        priorities[key] = priority
        names[key] = op.change.name
    return DependencyGraph(
        ops.keys(), {k: op.deps for k, op in ops.items()}, priorities=priorities, names=names
    )

"""Diff/plan: desired resources vs. observed state -> ordered changes.

Everything here is pure: no provider calls, no file I/O.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from lab_provisioner.engine.errors import (
    DuplicateAddressError,
    PlanError,
    ValidationError,
)
from lab_provisioner.engine.graph import DependencyGraph
from lab_provisioner.engine.handlers import planned_attributes
from lab_provisioner.engine.operations import build_operations, operation_graph
from lab_provisioner.engine.types import Action, ResourceChange
from lab_provisioner.resources.markers import CompareStrategy, collect_compare_strategies

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from lab_provisioner.core.state import State
    from lab_provisioner.engine.registry import ResourceTypeRegistry
    from lab_provisioner.resources.base import Resource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedChanges:
    changes: list[ResourceChange]
    # Orphans kept in place because they are protected.
    retained: list[str] = field(default_factory=list)


def _values_differ(
    desired: Any,
    prior: Any,
    *,
    strategy: CompareStrategy | None = None,
) -> bool:
    """Check whether a desired value differs from the prior (stored) value.

    Comparison semantics depend on *strategy*:

    - ``strategy="set"``:
      - If both values are lists, they are compared as sets (order-insensitive).
      - Other types fall back to strict equality.
    - ``strategy="exact"``:
      - Values are compared with strict equality.
      - For dicts, extra or missing keys are treated as differences.
    - ``strategy=None`` or ``"partial"``:
      - For dict values, only keys present in *desired* are compared.
      - Extra keys present only in *prior* (provider-added defaults) are ignored.
      - Non-dict values use strict equality.
    """
    if strategy == "set":
        if isinstance(desired, list) and isinstance(prior, list):
            return set(map(_canonical_json, desired)) != set(map(_canonical_json, prior))
        return desired != prior

    if strategy == "exact":
        return desired != prior

    if isinstance(desired, dict) and isinstance(prior, dict):
        return any(_values_differ(v, prior.get(k), strategy="partial") for k, v in desired.items())
    return desired != prior


def _canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def _sha256_hex(payload: str) -> str:
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def compute_config_digest(resources: Sequence[Resource]) -> str:
    items: list[dict[str, Any]] = [
        {
            "address": r.address,
            "resource_type": r.resource_type,
            "planned": planned_attributes(r),
            "exports": dict(r.exports),
        }
        for r in resources
    ]
    items.sort(key=lambda x: x["address"])
    return _sha256_hex(_canonical_json(items))


def index_resources(
    resources: Iterable[Resource], registry: ResourceTypeRegistry
) -> dict[str, Resource]:
    """Map address -> resource, rejecting duplicates and unregistered types."""
    desired_by_addr: dict[str, Resource] = {}
    for r in resources:
        if r.address in desired_by_addr:
            raise DuplicateAddressError(r.address)
        registry.get(r.resource_type)
        desired_by_addr[r.address] = r
    return desired_by_addr


def resolve_deps(desired_by_addr: dict[str, Resource]) -> dict[str, list[str]]:
    """Build dependency map: explicit depends_on + implicit from ``Ref`` markers.

    ``depends_on`` entries are addresses or bare names; a bare name must match
    exactly one resource across all kinds. Returns addr -> full dep list
    without mutating the Resource objects.
    """
    name_to_addrs: dict[str, list[str]] = {}
    for addr, r in desired_by_addr.items():
        name_to_addrs.setdefault(r.name, []).append(addr)

    errors: list[str] = []
    dep_map: dict[str, list[str]] = {}
    for addr, r in desired_by_addr.items():
        deps: list[str] = []
        for entry in r.depends_on:
            if entry in desired_by_addr:
                target = entry
            else:
                candidates = sorted(name_to_addrs.get(entry, []))
                if not candidates:
                    errors.append(f"Resource '{addr}' depends on unknown resource '{entry}'")
                    continue
                if len(candidates) > 1:
                    errors.append(
                        f"Resource '{addr}' depends on ambiguous name '{entry}' "
                        f"(matches {', '.join(candidates)})"
                    )
                    continue
                target = candidates[0]
            if target not in deps:
                deps.append(target)

        for ref in r.references():
            if ref.address is not None:
                ref_addrs = [ref.address]
            else:
                ref_addrs = name_to_addrs.get(ref.name, [])
            if not ref_addrs or any(a not in desired_by_addr for a in ref_addrs):
                errors.append(f"Resource '{addr}' references unknown resource '{ref.name}'")
                continue
            for ref_addr in ref_addrs:
                if ref_addr not in deps:
                    deps.append(ref_addr)
        dep_map[addr] = deps

    if errors:
        raise ValidationError(errors)
    return dep_map


def _ref_addresses(resource: Resource) -> set[str]:
    return {ref.address for ref in resource.references() if ref.address is not None}


def _is_protected(
    addr: str, state: State, registry: ResourceTypeRegistry, protect: frozenset[str]
) -> bool:
    inst = state.resources[addr]
    if addr in protect or inst.protected:
        return True
    return registry.get(inst.resource_type).handler.is_protected(inst.attributes)


def _classify(
    resource: Resource,
    state: State,
    replaced: set[str],
) -> tuple[Action, dict[str, Any], dict[str, Any] | None, bool]:
    """Return (action, planned, diff, replace) for one desired resource."""
    planned = planned_attributes(resource)
    prior_inst = state.resources.get(resource.address)
    if prior_inst is None:
        return Action.CREATE, planned, None, False

    prior = prior_inst.attributes
    strategies = collect_compare_strategies(resource)
    diff = {
        k: {"from": prior.get(k), "to": v}
        for k, v in planned.items()
        if _values_differ(v, prior.get(k), strategy=strategies.get(k))
    }

    immutable_changed = sorted(set(diff) & resource.immutable_fields())
    replaced_refs = sorted(_ref_addresses(resource) & replaced)
    if immutable_changed or replaced_refs:
        reason = immutable_changed or replaced_refs
        logger.debug("Classified %s as replacement (%s)", resource.address, ", ".join(reason))
        return Action.CREATE, planned, diff or None, True

    return (Action.UPDATE if diff else Action.NOOP), planned, diff or None, False


def _delete_change(addr: str, state: State, *, replace: bool = False) -> ResourceChange:
    inst = state.resources[addr]
    return ResourceChange(
        address=addr,
        kind=inst.kind,
        resource_type=inst.resource_type,
        action=Action.DELETE,
        prior=dict(inst.attributes),
        replace=replace,
    )


def order_changes(
    changes: list[ResourceChange], state: State, registry: ResourceTypeRegistry
) -> list[ResourceChange]:
    """Order *changes* the way apply will run them (see ``build_operations``)."""
    ops = build_operations(changes, state)
    order = operation_graph(ops, registry).topological_order()
    return [ops[k].change for k in order if ops[k].change is not None]  # type: ignore[misc]


def build_changes(
    resources: Sequence[Resource],
    state: State,
    registry: ResourceTypeRegistry,
    *,
    destroy: bool = False,
    protect: Iterable[str] = (),
) -> PlannedChanges:
    """Compute the ordered change set taking *state* to *resources*.

    Raises:
        DuplicateAddressError: Two resources share a kind and name.
        ValidationError: A dependency or reference names an unknown resource.
        DependencyCycleError: The dependency graph has a cycle.
        PlanError: A protected resource would have to be replaced.
    """
    protected = frozenset(protect)
    desired_by_addr = {} if destroy else index_resources(resources, registry)
    dep_map = resolve_deps(desired_by_addr)

    priorities = {addr: r.plan_priority for addr, r in desired_by_addr.items()}
    names = {addr: r.name for addr, r in desired_by_addr.items()}
    order = DependencyGraph(
        desired_by_addr, dep_map, priorities=priorities, names=names
    ).topological_order()

    changes: list[ResourceChange] = []
    replaced: set[str] = set()
    for addr in order:
        resource = desired_by_addr[addr]
        action, planned, diff, replace = _classify(resource, state, replaced)
        desired = resource.model_dump(mode="json", exclude_none=True, exclude={"address"})
        desired["depends_on"] = dep_map[addr]

        if replace:
            if _is_protected(addr, state, registry, protected):
                raise PlanError(f"Resource '{addr}' is protected and cannot be replaced")
            replaced.add(addr)
            changes.append(_delete_change(addr, state, replace=True))
        else:
            logger.debug("Classified %s as %s", addr, action.value)

        prior_inst = state.resources.get(addr)
        changes.append(
            ResourceChange(
                address=addr,
                kind=resource.kind.value,
                resource_type=resource.resource_type,
                action=action,
                desired=desired,
                prior=dict(prior_inst.attributes) if prior_inst is not None else None,
                planned=planned,
                diff=diff,
                replace=replace,
            )
        )

    retained: list[str] = []
    for addr in sorted(set(state.resources) - set(desired_by_addr)):
        registry.get(state.resources[addr].resource_type)  # fail early if unknown
        if _is_protected(addr, state, registry, protected):
            logger.info("Retaining protected resource %s", addr)
            retained.append(addr)
            continue
        changes.append(_delete_change(addr, state))

    return PlannedChanges(changes=order_changes(changes, state, registry), retained=retained)

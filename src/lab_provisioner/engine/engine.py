"""Plan/apply engine."""

from __future__ import annotations

import contextlib
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from lab_provisioner import __version__
from lab_provisioner.core.state import State, compute_state_digest
from lab_provisioner.engine.errors import (
    DestructiveChangeError,
    ProviderError,
    StalePlanError,
    StateStackMismatchError,
    ValidationError,
)
from lab_provisioner.engine.executor import ApplyExecutor, ProgressCallback
from lab_provisioner.engine.graph import DependencyGraph
from lab_provisioner.engine.handlers import EngineContext, PlanContext
from lab_provisioner.engine.lock import StateLock
from lab_provisioner.engine.operations import build_operations
from lab_provisioner.engine.outputs import OutputStore
from lab_provisioner.engine.planner import (
    build_changes,
    compute_config_digest,
    index_resources,
    resolve_deps,
)
from lab_provisioner.engine.types import ApplyResult, Plan, PlanMetadata

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence
    from pathlib import Path

    from lab_provisioner.core.provider import ProviderSet
    from lab_provisioner.engine.registry import ResourceTypeRegistry
    from lab_provisioner.resources.base import Resource

logger = logging.getLogger(__name__)

__all__ = ["LabEngine", "ProgressCallback"]


class LabEngine:
    """Terraform-like plan/apply engine for homelab fleet resources."""

    def __init__(
        self,
        *,
        providers: ProviderSet,
        stack: str,
        state_path: Path,
        registry: ResourceTypeRegistry,
        lock_timeout: float | None = None,
    ) -> None:
        self._providers = providers
        self._stack = stack
        self._state_path = state_path
        self._registry = registry
        self._lock_timeout = lock_timeout

    @property
    def stack(self) -> str:
        return self._stack

    @property
    def state_path(self) -> Path:
        return self._state_path

    def _ctx(self) -> EngineContext:
        return EngineContext(providers=self._providers, stack=self._stack)

    def _lock(self) -> StateLock:
        return StateLock(self._state_path, timeout=self._lock_timeout)

    def _load_state(self) -> State:
        state = State.load_or_create(self._state_path, stack=self._stack)
        if state.stack != self._stack:
            raise StateStackMismatchError(self._stack, state.stack)
        logger.debug("State loaded: serial=%d, %d resources", state.serial, len(state.resources))
        return state

    def _load_state_for_apply(self, plan: Plan) -> State:
        if self._state_path.exists():
            return self._load_state()
        # If no state exists, bootstrap from the plan metadata (saved-plan semantics).
        return State(
            stack=self._stack,
            lineage=plan.metadata.state_lineage,
            serial=plan.metadata.state_serial,
        )

    def _refresh_state_in_place(self, state: State) -> bool:
        logger.debug("Refreshing state from providers")
        changed = False
        ctx = self._ctx()

        for address, inst in list(state.resources.items()):
            handler = self._registry.get(inst.resource_type).handler
            try:
                attrs = handler.read(ctx, inst)
            except Exception as e:
                raise ProviderError(
                    kind=inst.kind, name=inst.name, action="read", message=str(e)
                ) from e
            if attrs is None:
                logger.info("%s no longer exists at the provider", address)
                state.forget(address)
                changed = True
                continue

            if inst.observe(attrs, protected=handler.is_protected(attrs)):
                changed = True

        logger.debug("State refreshed, changed=%s", changed)
        return changed

    def refresh(self, *, persist: bool = False) -> tuple[State, State]:
        """Refresh state from the providers. Returns (pre_refresh, post_refresh)."""
        with self._lock():
            state = self._load_state()
            snapshot = state.model_copy(deep=True)
            changed = self._refresh_state_in_place(state)
            if changed and persist:
                state.serial += 1
                state.save(self._state_path)
            return snapshot, state

    def check(self, resources: Sequence[Resource]) -> None:
        """Structural checks that need no provider: addresses, references, cycles."""
        desired_by_addr = index_resources(resources, self._registry)
        dep_map = resolve_deps(desired_by_addr)
        priorities = {addr: r.plan_priority for addr, r in desired_by_addr.items()}
        DependencyGraph(desired_by_addr, dep_map, priorities=priorities).topological_order()

    def validate(self, resources: Sequence[Resource], state: State | None = None) -> None:
        """Run structural checks plus handler-level validation.

        Raises:
            ValidationError: With every collected message.
        """
        self.check(resources)
        if state is None:
            state = self._load_state()
        ctx = self._ctx()
        desired_by_addr = {r.address: r for r in resources}
        errors: list[str] = []
        for r in resources:
            errors.extend(self._registry.get(r.resource_type).handler.validate(ctx, r))
        plan_ctx = PlanContext(desired_by_addr, state)
        for r in resources:
            reg = self._registry.get(r.resource_type)
            errors.extend(reg.handler.validate_plan(ctx, r, plan_ctx))
        if errors:
            raise ValidationError(errors)

    def plan(
        self,
        resources: Sequence[Resource],
        *,
        destroy: bool = False,
        refresh: bool = True,
        protect: Iterable[str] = (),
        outputs: Mapping[str, Any] | None = None,
    ) -> Plan:
        """Compute the change set for *resources*.

        *outputs* are stack-level exports recorded on apply next to the
        resources' own exports. Destroy plans carry none.
        """
        logger.info(
            "Planning %d resources (destroy=%s, refresh=%s)", len(resources), destroy, refresh
        )
        # Config and plan errors surface before the first provider call.
        if not destroy:
            self.check(resources)

        # Only lock when refresh may write state.
        lock_cm = self._lock() if refresh else contextlib.nullcontext()
        with lock_cm:
            state = self._load_state()

            if refresh:
                changed = self._refresh_state_in_place(state)
                if changed:
                    state.serial += 1
                    state.save(self._state_path)

            if not destroy:
                self.validate(resources, state)

            planned = build_changes(
                resources, state, self._registry, destroy=destroy, protect=protect
            )

            metadata = PlanMetadata(
                stack=self._stack,
                created_at=datetime.now(UTC),
                destroy=destroy,
                refresh=refresh,
                state_lineage=state.lineage,
                state_serial=state.serial,
                state_digest=compute_state_digest(state),
                config_digest=compute_config_digest([] if destroy else resources),
                engine_version=__version__,
            )

            plan = Plan(
                metadata=metadata,
                changes=planned.changes,
                retained=planned.retained,
                outputs={} if destroy else dict(outputs or {}),
            )
            logger.info("Plan: %s", plan.summary())
            return plan

    def apply(
        self,
        plan: Plan,
        *,
        allow_replace: bool = False,
        parallelism: int = 1,
        continue_on_error: bool = False,
        timeout: float | None = None,
        progress: ProgressCallback | None = None,
    ) -> ApplyResult:
        """Apply *plan*.

        Raises:
            DestructiveChangeError: The plan replaces resources and
                ``allow_replace`` is False.
            StalePlanError: State changed since the plan was computed.
            ApplyError: Some operations failed or were not attempted. Applied
                operations are already persisted to state.
        """
        if plan.replacements and not allow_replace:
            raise DestructiveChangeError(plan.replacements)

        with self._lock():
            state = self._load_state_for_apply(plan)
            if state.stack != self._stack:
                raise StateStackMismatchError(self._stack, state.stack)

            # Stale plan detection
            if state.lineage != plan.metadata.state_lineage:
                raise StalePlanError("State lineage changed; re-run plan")
            if state.serial != plan.metadata.state_serial:
                raise StalePlanError("State serial changed; re-run plan")
            if compute_state_digest(state) != plan.metadata.state_digest:
                raise StalePlanError("State digest changed; re-run plan")

            ops = build_operations(plan.changes, state)
            outputs = OutputStore()
            for key, value in sorted(plan.outputs.items()):
                outputs.put(key, value)
            executor = ApplyExecutor(
                ctx=self._ctx(),
                state=state,
                registry=self._registry,
                outputs=outputs,
                persist=lambda s: s.save(self._state_path),
                parallelism=parallelism,
                continue_on_error=continue_on_error,
                timeout=timeout,
                progress=progress,
            )
            result = executor.run(ops)

            outputs.seal()
            snapshot = dict(outputs.snapshot())
            if snapshot != state.outputs:
                state.outputs = snapshot
                state.serial += 1
                state.save(self._state_path)
            result.outputs = snapshot
            return result

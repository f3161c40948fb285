"""Engine-facing handler (provider adapter) interfaces."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from lab_provisioner.core.state import ResourceInstance
from lab_provisioner.resources.base import Resource

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from lab_provisioner.core.provider import ProviderSet
    from lab_provisioner.core.state import State

R = TypeVar("R", bound=Resource)

# Fields that drive planning but are never sent to (or read from) a provider.
ENGINE_FIELDS = frozenset({"address", "depends_on", "exports"})


def planned_attributes(resource: Resource) -> dict[str, Any]:
    """JSON-compatible provider-facing attributes of *resource*.

    Handlers store these (plus provider identifiers) as the resource's
    attributes so the planner can compare them field by field.
    """
    return resource.model_dump(mode="json", exclude_none=True, exclude=set(ENGINE_FIELDS))


def _resolve_nothing(address: str) -> Mapping[str, Any] | None:
    _ = address
    return None


@dataclass(frozen=True)
class EngineContext:
    """Context passed to handlers.

    ``resolver`` returns the current attributes of an already-applied
    resource by address, or ``None`` if it has not been applied.
    """

    providers: ProviderSet
    stack: str
    resolver: Callable[[str], Mapping[str, Any] | None] = _resolve_nothing

    def attributes_of(self, address: str) -> dict[str, Any]:
        """Attributes of a referenced resource; raises if it is not applied yet."""
        attrs = self.resolver(address)
        if attrs is None:
            raise LookupError(f"Referenced resource '{address}' has not been applied")
        return dict(attrs)


class PlanContext:
    """Merged view of desired and existing resources for plan-level validation.

    Lookups are by address, with desired taking precedence over state.
    """

    def __init__(self, all_desired: Mapping[str, Resource], state: State) -> None:
        self._desired = dict(all_desired)
        self._state = dict(state.resources)

    def address_exists(self, address: str) -> bool:
        """Check if an address exists in desired."""
        return address in self._desired

    def desired(self, address: str) -> Resource | None:
        return self._desired.get(address)

    def get_attr(self, address: str, attr: str) -> Any:
        """Look up an attribute from the desired resource, falling back to state."""
        if address in self._desired:
            return getattr(self._desired[address], attr, None)
        inst: ResourceInstance | None = self._state.get(address)
        if inst is not None:
            return inst.attributes.get(attr)
        return None


class ResourceHandler(Generic[R]):
    """Base class for resource handlers.

    Handlers translate resources into provider API calls. Subclass and
    override the CRUD methods. Validation methods are optional.

    ``create`` must be idempotent: when the resource already exists at the
    provider, return its attributes instead of failing.
    """

    def validate(self, ctx: EngineContext, desired: R) -> list[str]:
        """Single-resource validation. No cross-resource context needed.

        Return list of error messages (empty = valid).
        """
        _ = ctx, desired
        return []

    def validate_plan(
        self,
        ctx: EngineContext,
        desired: R,
        plan_ctx: PlanContext,
    ) -> list[str]:
        """Cross-resource validation with access to all resources.

        Return list of error messages (empty = valid).
        """
        _ = ctx, desired, plan_ctx
        return []

    def is_protected(self, attrs: Mapping[str, Any]) -> bool:
        """Whether the provider marks the resource as delete-protected."""
        return bool(attrs.get("protected", False))

    def read(self, ctx: EngineContext, prior: ResourceInstance) -> dict[str, Any] | None:
        """Read the resource from the provider. Return None if it no longer exists."""
        raise NotImplementedError

    def create(self, ctx: EngineContext, desired: R) -> dict[str, Any]:
        """Create the resource. Return stored attributes."""
        raise NotImplementedError

    def update(
        self,
        ctx: EngineContext,
        desired: R,
        prior: ResourceInstance,
        diff: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Update the changed fields in *diff*. Return stored attributes."""
        raise NotImplementedError

    def delete(self, ctx: EngineContext, prior: ResourceInstance) -> None:
        """Delete the resource from the provider."""
        raise NotImplementedError

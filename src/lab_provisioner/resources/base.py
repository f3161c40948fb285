"""Base resource class for fleet resources."""

from enum import Enum
from typing import Annotated, ClassVar

from pydantic import BaseModel, ConfigDict, Field, computed_field

from lab_provisioner.resources.markers import (
    Compare,
    ResourceRef,
    collect_immutable_fields,
    collect_ref_specs,
    collect_refs,
)


class Kind(str, Enum):
    """Provider-independent resource category. Names are unique per kind."""

    VM = "vm"
    LOAD_BALANCER = "load_balancer"
    LB_CONFIG = "lb_config"
    LB_NODE = "lb_node"


class Resource(BaseModel):
    """Base class for all fleet resources.

    Resources are pure data - they define the desired state.
    Handlers know how to CRUD resources.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    resource_type: ClassVar[str]
    kind: ClassVar[Kind]
    plan_priority: ClassVar[int] = 100

    name: str = Field(pattern=r"^[a-zA-Z0-9][a-zA-Z0-9_-]*$")
    description: str = ""
    tags: Annotated[list[Annotated[str, Field(min_length=1)]], Compare("set")] = Field(
        default_factory=list
    )

    # Lifecycle
    depends_on: list[str] = []

    # export key -> attribute name in the applied resource's attributes
    exports: dict[str, str] = Field(default_factory=dict)

    def reference_names(self) -> list[str]:
        """Names of other resources this one references (auto-collected from Ref markers)."""
        return collect_refs(self)

    def references(self) -> list[ResourceRef]:
        """Typed references declared on this resource."""
        return collect_ref_specs(self)

    @classmethod
    def immutable_fields(cls) -> frozenset[str]:
        return collect_immutable_fields(cls)

    @computed_field
    @property
    def address(self) -> str:
        """Unique address for this resource (e.g., 'vm.k3s-master-01')."""
        return f"{self.kind.value}.{self.name}"

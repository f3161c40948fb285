"""Plan and apply engine for homelab fleet resources."""

from lab_provisioner.engine.engine import LabEngine
from lab_provisioner.engine.errors import (
    ApplyCanceled,
    ApplyError,
    ApplyTimeoutError,
    ConfigError,
    DependencyCycleError,
    DestructiveChangeError,
    DuplicateAddressError,
    DuplicateExportError,
    EngineError,
    PlanError,
    ProviderError,
    StalePlanError,
    StateLockError,
    StateStackMismatchError,
    UnknownResourceTypeError,
    ValidationError,
)
from lab_provisioner.engine.handlers import EngineContext, PlanContext, ResourceHandler
from lab_provisioner.engine.outputs import OutputStore
from lab_provisioner.engine.registry import ResourceTypeRegistration, ResourceTypeRegistry
from lab_provisioner.engine.types import Action, ApplyResult, Plan, PlanMetadata, ResourceChange

__all__ = [
    "Action",
    "ApplyCanceled",
    "ApplyError",
    "ApplyResult",
    "ApplyTimeoutError",
    "ConfigError",
    "DependencyCycleError",
    "DestructiveChangeError",
    "DuplicateAddressError",
    "DuplicateExportError",
    "EngineContext",
    "EngineError",
    "LabEngine",
    "OutputStore",
    "Plan",
    "PlanContext",
    "PlanError",
    "PlanMetadata",
    "ProviderError",
    "ResourceChange",
    "ResourceHandler",
    "ResourceTypeRegistration",
    "ResourceTypeRegistry",
    "StalePlanError",
    "StateLockError",
    "StateStackMismatchError",
    "UnknownResourceTypeError",
    "ValidationError",
]

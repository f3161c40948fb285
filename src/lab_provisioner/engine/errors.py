"""Engine error types.

Every error carries the ``phase`` it belongs to so operators can tell
"fix your input" (config) from "fix your plan" (plan) from "fix your
cluster" (apply).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, ClassVar, Literal

if TYPE_CHECKING:
    from lab_provisioner.engine.types import ApplyResult

Phase = Literal["config", "plan", "apply", "state"]


class EngineError(Exception):
    """Base exception for engine errors."""

    phase: ClassVar[Phase] = "apply"


# ── Config phase ────────────────────────────────────────────────────


class ConfigError(EngineError):
    """Raised for invalid or missing desired-state input. No provider calls are made."""

    phase: ClassVar[Phase] = "config"


class UnknownResourceTypeError(ConfigError):
    """Raised when a resource type has no registration/handler."""

    def __init__(self, resource_type: str) -> None:
        super().__init__(f"Unknown resource type: {resource_type}")
        self.resource_type = resource_type


class DuplicateAddressError(ConfigError):
    """Raised when multiple desired resources share the same kind and name."""

    def __init__(self, address: str) -> None:
        super().__init__(f"Duplicate resource address: {address}")
        self.address = address


class ValidationError(ConfigError):
    """One or more resources failed validation."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        msg = "Validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        super().__init__(msg)


# ── Plan phase ──────────────────────────────────────────────────────


class PlanError(EngineError):
    """Raised when a plan cannot be computed or must not be applied as-is."""

    phase: ClassVar[Phase] = "plan"


class DependencyCycleError(PlanError):
    """Raised when dependencies contain a cycle."""

    def __init__(self, addresses: list[str]) -> None:
        msg = "Dependency cycle detected"
        if addresses:
            msg += f": {', '.join(addresses)}"
        super().__init__(msg)
        self.addresses = addresses


class DestructiveChangeError(PlanError):
    """Raised when a plan replaces resources and the caller did not confirm it."""

    def __init__(self, addresses: list[str]) -> None:
        super().__init__(
            "Plan replaces existing resources (immutable fields changed): "
            f"{', '.join(addresses)}; re-run with replacement allowed to proceed"
        )
        self.addresses = addresses


class StalePlanError(PlanError):
    """Raised when applying a plan against a different state than planned."""


class StateStackMismatchError(PlanError):
    """Raised when the on-disk state belongs to a different stack."""

    def __init__(self, expected: str, got: str) -> None:
        super().__init__(f"State stack mismatch: expected {expected}, got {got}")
        self.expected = expected
        self.got = got


# ── Apply phase ─────────────────────────────────────────────────────


class ProviderError(EngineError):
    """Wraps an adapter failure for one resource.

    The original exception is chained via ``__cause__``.
    """

    def __init__(self, *, kind: str, name: str, action: str, message: str) -> None:
        self.kind = kind
        self.name = name
        self.action = action
        self.message = message
        super().__init__(f"{action} {kind}.{name} failed: {message}")

    @property
    def address(self) -> str:
        return f"{self.kind}.{self.name}"


class DuplicateExportError(EngineError):
    """Raised when two operations export different values under the same key.

    Fatal for the whole apply. When raised by the executor, ``result`` holds
    the partial run; the operation that produced the conflicting value counts
    as applied because its resource already exists.
    """

    def __init__(self, key: str, existing: object, new: object) -> None:
        super().__init__(
            f"Export '{key}' already set to {existing!r}; refusing to overwrite with {new!r}"
        )
        self.key = key
        self.existing = existing
        self.new = new
        self.result: ApplyResult | None = None


class ApplyError(EngineError):
    """Raised when an apply stops before every operation succeeded.

    Carries the partial result (what was applied, what failed, what was never
    attempted) so callers can report progress. Already-applied resources are
    left in place for the next plan to pick up.
    """

    def __init__(self, result: ApplyResult, message: str | None = None) -> None:
        self.result = result
        first = result.failures[0] if result.failures else None
        self.address = first.address if first is not None else None
        if message is None:
            if first is not None:
                message = (
                    f"Apply failed on {first.address} ({first.action.value}): {first.message}"
                )
            else:
                message = "Apply did not complete"
            if len(result.failures) > 1:
                message += f" (+{len(result.failures) - 1} more failure(s))"
        super().__init__(message)


class ApplyTimeoutError(ApplyError):
    """Raised when the apply deadline passed before every operation was started."""


class ApplyCanceled(EngineError):
    """Raised when an apply is canceled (e.g., Ctrl-C)."""


# ── State ───────────────────────────────────────────────────────────


class StateLockError(EngineError):
    """Raised when the state lock cannot be acquired or released."""

    phase: ClassVar[Phase] = "state"

"""Engine types (plan, changes, metadata, apply results)."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "no-op"


class PlanMetadata(BaseModel):
    stack: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    destroy: bool
    refresh: bool
    state_lineage: str
    state_serial: int
    state_digest: str
    config_digest: str
    engine_version: str


class ResourceChange(BaseModel):
    address: str
    kind: str
    resource_type: str
    action: Action
    desired: dict[str, Any] | None = None
    prior: dict[str, Any] | None = None
    planned: dict[str, Any] | None = None
    diff: dict[str, Any] | None = None
    # Part of a delete + create pair forced by an immutable field change.
    replace: bool = False

    @property
    def name(self) -> str:
        return self.address.split(".", 1)[1] if "." in self.address else self.address


class Plan(BaseModel):
    metadata: PlanMetadata
    changes: list[ResourceChange]
    # Orphaned resources kept because they are protected.
    retained: list[str] = Field(default_factory=list)
    # Stack-level exports that belong to no single resource.
    outputs: dict[str, Any] = Field(default_factory=dict)

    @property
    def replacements(self) -> list[str]:
        """Addresses of resources this plan destroys and recreates."""
        return sorted({c.address for c in self.changes if c.replace})

    def summary(self) -> dict[str, int]:
        counts = {a.value: 0 for a in Action}
        for c in self.changes:
            counts[c.action.value] += 1
        return counts

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode="json")
        path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> Plan:
        path = Path(path)
        return cls.model_validate_json(path.read_text(encoding="utf-8"))


class OperationFailure(BaseModel):
    address: str
    kind: str
    name: str
    action: Action
    message: str


class ApplyResult(BaseModel):
    applied: list[ResourceChange] = Field(default_factory=list)
    failures: list[OperationFailure] = Field(default_factory=list)
    not_attempted: list[ResourceChange] = Field(default_factory=list)
    outputs: dict[str, Any] = Field(default_factory=dict)
    timed_out: bool = False

    @property
    def total(self) -> int:
        return len(self.applied) + len(self.failures) + len(self.not_attempted)

    @property
    def complete(self) -> bool:
        return not self.failures and not self.not_attempted and not self.timed_out

    def summary(self) -> dict[str, int]:
        counts = {a.value: 0 for a in Action}
        for c in self.applied:
            counts[c.action.value] += 1
        return counts

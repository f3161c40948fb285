"""Observed state: what the providers last reported for every managed resource.

The state file is JSON, written atomically with a ``.backup`` of the previous
copy. ``serial`` increases on every write and ``lineage`` identifies one
history of a stack, both feeding stale-plan detection.
"""

import contextlib
import hashlib
import json
import logging
import os
import tempfile
import uuid
from collections.abc import Iterator, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class UnsupportedStateVersionError(ValueError):
    """The state file was written by a newer, incompatible release."""


def _now() -> datetime:
    return datetime.now(UTC)


def _canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def compute_attributes_hash(attrs: Mapping[str, Any]) -> str:
    """SHA-256 of the canonical JSON encoding of *attrs*."""
    return hashlib.sha256(_canonical_json(attrs).encode("utf-8")).hexdigest()


class ResourceInstance(BaseModel):
    """One managed resource as last observed.

    Attributes:
        address: ``<kind>.<name>``, e.g. ``vm.k3s-master-01``
        kind: Resource kind, e.g. ``vm`` or ``lb_node``
        resource_type: Registered type, e.g. ``proxmox_vm``
        name: Resource name, unique per kind
        attributes: Planned attributes merged with provider identifiers
            (VMID, Linode IDs, assigned IPs)
        attributes_hash: Hash of ``attributes``
        dependencies: Addresses this resource depended on when applied;
            deletes run in the reverse order
        protected: The provider reports the resource as delete-protected
    """

    address: str
    kind: str
    resource_type: str
    name: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    attributes_hash: str = ""
    dependencies: list[str] = Field(default_factory=list)
    protected: bool = False
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def observe(self, attrs: dict[str, Any], *, protected: bool) -> bool:
        """Store freshly read or written *attrs*. Returns True if anything changed."""
        new_hash = compute_attributes_hash(attrs)
        if (attrs, new_hash, protected) == (self.attributes, self.attributes_hash, self.protected):
            return False
        self.attributes = attrs
        self.attributes_hash = new_hash
        self.protected = protected
        self.updated_at = _now()
        return True


class State(BaseModel):
    """The JSON state file of one stack.

    Attributes:
        version: File format version
        stack: Stack the state belongs to; a mismatch with the config aborts
        serial: Bumped on every write
        lineage: Random ID fixed when the state is first created
        resources: Managed resources by address
        outputs: Exports recorded by the last successful apply
    """

    version: int = STATE_VERSION
    stack: str
    serial: int = 0
    lineage: str = Field(default_factory=lambda: str(uuid.uuid4()))
    resources: dict[str, ResourceInstance] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)

    def record(
        self,
        *,
        address: str,
        kind: str,
        resource_type: str,
        name: str,
        attributes: dict[str, Any],
        dependencies: list[str],
        protected: bool = False,
    ) -> ResourceInstance:
        """Track a newly created resource."""
        now = _now()
        inst = ResourceInstance(
            address=address,
            kind=kind,
            resource_type=resource_type,
            name=name,
            attributes=attributes,
            attributes_hash=compute_attributes_hash(attributes),
            dependencies=dependencies,
            protected=protected,
            created_at=now,
            updated_at=now,
        )
        self.resources[address] = inst
        return inst

    def forget(self, address: str) -> ResourceInstance | None:
        return self.resources.pop(address, None)

    def of_type(self, resource_type: str) -> Iterator[ResourceInstance]:
        """Instances of *resource_type*, sorted by address."""
        for address in sorted(self.resources):
            inst = self.resources[address]
            if inst.resource_type == resource_type:
                yield inst

    def save(self, path: Path) -> None:
        """Write the state atomically (temp file + rename).

        The file being replaced is copied to ``<path>.backup`` first.
        """
        path.parent.mkdir(parents=True, exist_ok=True)

        backup_path = Path(str(path) + ".backup")
        with contextlib.suppress(FileNotFoundError):
            backup_path.write_bytes(path.read_bytes())

        content = json.dumps(self.model_dump(mode="json"), indent=2, sort_keys=True) + "\n"

        fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
        tmp_file = Path(tmp_path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            tmp_file.replace(path)
        finally:
            with contextlib.suppress(FileNotFoundError):
                tmp_file.unlink()
        logger.debug("State saved: serial=%d path=%s", self.serial, path)

    @classmethod
    def load(cls, path: Path) -> "State":
        """Read a state file.

        Raises:
            UnsupportedStateVersionError: The file format is newer than this release.
        """
        state = cls.model_validate_json(path.read_text(encoding="utf-8"))
        if state.version > STATE_VERSION:
            raise UnsupportedStateVersionError(
                f"{path}: state format version {state.version} is newer than "
                f"supported version {STATE_VERSION}"
            )
        logger.debug("State loaded from %s (%d resources)", path, len(state.resources))
        return state

    @classmethod
    def load_or_create(cls, path: Path, stack: str) -> "State":
        """Read *path*, or start an empty state for *stack* if it does not exist yet."""
        if path.exists():
            return cls.load(path)
        logger.debug("No state at %s; starting empty state for stack %s", path, stack)
        return cls(stack=stack)


def compute_state_digest(state: State) -> str:
    """Digest of everything a plan depends on.

    Timestamps and outputs are left out: neither changes what an apply would do.
    """
    resources = [
        {
            "address": address,
            "kind": inst.kind,
            "resource_type": inst.resource_type,
            "name": inst.name,
            "attributes_hash": inst.attributes_hash,
            "dependencies": sorted(inst.dependencies),
            "protected": inst.protected,
        }
        for address, inst in sorted(state.resources.items())
    ]
    digestable = {
        "version": state.version,
        "stack": state.stack,
        "lineage": state.lineage,
        "serial": state.serial,
        "resources": resources,
    }
    return hashlib.sha256(_canonical_json(digestable).encode("utf-8")).hexdigest()

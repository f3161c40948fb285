"""Export/output store filled during apply."""

from __future__ import annotations

import logging
import threading
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from lab_provisioner.engine.errors import DuplicateExportError

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)

_MISSING = object()


class OutputStore:
    """Append-only key/value store, safe to write from concurrent operations.

    Writing the same value twice is accepted; writing a different value under
    an existing key raises ``DuplicateExportError``.
    """

    def __init__(self) -> None:
        self._values: dict[str, Any] = {}
        self._lock = threading.Lock()
        self._sealed = False

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            if self._sealed:
                raise RuntimeError("Output store is read-only after apply")
            existing = self._values.get(key, _MISSING)
            if existing is _MISSING:
                self._values[key] = value
                logger.debug("Export %s = %r", key, value)
                return
            if existing != value:
                raise DuplicateExportError(key, existing, value)

    def record(self, exports: Mapping[str, str], attrs: Mapping[str, Any]) -> None:
        """Record ``exports`` (export key -> attribute name) from *attrs*."""
        for key, attr in sorted(exports.items()):
            self.put(key, attrs.get(attr))

    def seal(self) -> None:
        with self._lock:
            self._sealed = True

    def snapshot(self) -> Mapping[str, Any]:
        """Read-only copy of the exported values, sorted by key."""
        with self._lock:
            return MappingProxyType(dict(sorted(self._values.items())))

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._values

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)

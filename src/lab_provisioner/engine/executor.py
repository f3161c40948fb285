"""Apply executor: runs an operation graph against the providers."""

from __future__ import annotations

import heapq
import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Literal

from lab_provisioner.engine.errors import (
    ApplyCanceled,
    ApplyError,
    ApplyTimeoutError,
    DuplicateExportError,
    ProviderError,
)
from lab_provisioner.engine.operations import operation_graph
from lab_provisioner.engine.types import Action, ApplyResult, OperationFailure, ResourceChange

if TYPE_CHECKING:
    from collections.abc import Mapping

    from lab_provisioner.core.state import State
    from lab_provisioner.engine.handlers import EngineContext
    from lab_provisioner.engine.operations import Operation
    from lab_provisioner.engine.outputs import OutputStore
    from lab_provisioner.engine.registry import ResourceTypeRegistry

logger = logging.getLogger(__name__)

ProgressEvent = Literal["start", "done", "failed"]
ProgressCallback = Callable[[ResourceChange, ProgressEvent], None]


class ApplyExecutor:
    """Execute operations in dependency order.

    Independent operations run concurrently when ``parallelism > 1``; an
    operation starts only after all of its dependencies succeeded. State is
    persisted (serial bump + write) after every operation that changed it.

    Failure policy:

    - fail-fast (default): stop starting operations, let in-flight ones
      finish, raise ``ApplyError``
    - ``continue_on_error``: skip everything downstream of a failure, keep
      running independent branches, raise ``ApplyError`` with all failures
    - ``timeout``: no new operation starts after the deadline; raises
      ``ApplyTimeoutError``
    - an export conflict stops the run in every mode and raises
      ``DuplicateExportError``; the conflicting operation counts as applied

    Nothing is rolled back: applied operations stay applied.
    """

    def __init__(
        self,
        *,
        ctx: EngineContext,
        state: State,
        registry: ResourceTypeRegistry,
        outputs: OutputStore,
        persist: Callable[[State], None],
        parallelism: int = 1,
        continue_on_error: bool = False,
        timeout: float | None = None,
        progress: ProgressCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if parallelism < 1:
            raise ValueError("parallelism must be >= 1")
        self._state = state
        self._registry = registry
        self._outputs = outputs
        self._persist = persist
        self._parallelism = parallelism
        self._continue_on_error = continue_on_error
        self._timeout = timeout
        self._progress = progress
        self._clock = clock
        self._lock = threading.Lock()
        self._ctx = replace(ctx, resolver=self._resolve)

    def _resolve(self, address: str) -> Mapping[str, Any] | None:
        with self._lock:
            inst = self._state.resources.get(address)
            return dict(inst.attributes) if inst is not None else None

    def _notify(self, change: ResourceChange | None, event: ProgressEvent) -> None:
        if self._progress is not None and change is not None and change.action != Action.NOOP:
            self._progress(change, event)

    def _execute(self, op: Operation) -> bool:
        """Run one operation in a worker thread. Returns whether state changed."""
        change = op.change
        self._notify(change, "start")
        logger.debug("Applying %s: %s", op.key, type(op).__name__)
        try:
            did_change = op.run(
                ctx=self._ctx, state=self._state, registry=self._registry, lock=self._lock
            )
        except Exception as e:
            if change is None:
                raise
            raise ProviderError(
                kind=change.kind,
                name=change.name,
                action=change.action.value,
                message=str(e) or type(e).__name__,
            ) from e

        if did_change:
            with self._lock:
                self._state.serial += 1
                self._persist(self._state)

        if change is not None and change.action != Action.DELETE and change.desired:
            exports = change.desired.get("exports") or {}
            if exports:
                with self._lock:
                    attrs = dict(self._state.resources[change.address].attributes)
                self._outputs.record(exports, attrs)
        return did_change

    def run(self, ops: dict[str, Operation]) -> ApplyResult:
        """Execute *ops*; returns the result or raises ``ApplyError`` on a partial run.

        Raises:
            DuplicateExportError: Two operations exported different values
                under one key. Takes precedence over other failures.
            ApplyError: Some operations failed or were not attempted.
        """
        graph = operation_graph(ops, self._registry)
        order = graph.topological_order()
        position = {k: i for i, k in enumerate(order)}
        waiting = {k: set(graph.dependencies(k)) for k in order}
        deadline = self._clock() + self._timeout if self._timeout is not None else None

        logger.info(
            "Applying %d operations (parallelism=%d)",
            sum(1 for op in ops.values() if op.change is not None),
            self._parallelism,
        )

        ready: list[tuple[int, str]] = [(position[k], k) for k in order if not waiting[k]]
        heapq.heapify(ready)
        started: set[str] = set()
        skipped: set[str] = set()
        applied: list[ResourceChange] = []
        failures: list[OperationFailure] = []
        first_error: BaseException | None = None
        export_error: DuplicateExportError | None = None
        stop = False
        timed_out = False

        pool = ThreadPoolExecutor(max_workers=self._parallelism, thread_name_prefix="apply")
        pending: dict[Future[bool], str] = {}
        try:
            while True:
                while ready and not stop and len(pending) < self._parallelism:
                    if deadline is not None and self._clock() >= deadline:
                        logger.warning("Apply deadline reached; not starting new operations")
                        timed_out = stop = True
                        break
                    _, key = heapq.heappop(ready)
                    if key in skipped:
                        continue
                    started.add(key)
                    pending[pool.submit(self._execute, ops[key])] = key

                if not pending:
                    break

                finished, _ = wait(pending, return_when=FIRST_COMPLETED)
                for fut in sorted(finished, key=lambda f: position[pending[f]]):
                    key = pending.pop(fut)
                    change = ops[key].change
                    try:
                        did_change = fut.result()
                    except DuplicateExportError as e:
                        # The resource was written to state before its exports were recorded.
                        export_error = export_error or e
                        logger.error("%s: %s", key, e)
                        if change is not None and change.action != Action.NOOP:
                            applied.append(change)
                            self._notify(change, "done")
                        stop = True
                        continue
                    except Exception as e:
                        if first_error is None:
                            first_error = e
                        self._notify(change, "failed")
                        failures.append(_failure(key, change, e))
                        logger.error("%s", e)
                        if self._continue_on_error:
                            skipped |= graph.descendants(key)
                        else:
                            stop = True
                        continue

                    if did_change and change is not None:
                        applied.append(change)
                        self._notify(change, "done")
                    for child in sorted(graph.dependents(key)):
                        waiting[child].discard(key)
                        if not waiting[child] and child not in skipped:
                            heapq.heappush(ready, (position[child], child))
        except KeyboardInterrupt as e:  # pragma: no cover
            pool.shutdown(wait=True, cancel_futures=True)
            raise ApplyCanceled("Apply canceled") from e
        finally:
            pool.shutdown(wait=True)

        not_attempted = [
            c
            for k in order
            if k not in started and (c := ops[k].change) is not None and c.action != Action.NOOP
        ]
        result = ApplyResult(
            applied=applied,
            failures=failures,
            not_attempted=not_attempted,
            timed_out=timed_out,
        )
        logger.info(
            "Apply finished: %d applied, %d failed, %d not attempted",
            len(applied),
            len(failures),
            len(not_attempted),
        )

        if export_error is not None:
            export_error.result = result
            raise export_error
        if failures:
            raise ApplyError(result) from first_error
        if timed_out:
            raise ApplyTimeoutError(
                result,
                f"Apply timed out after {self._timeout}s: "
                f"{len(applied)} of {result.total} operations applied",
            )
        return result


def _failure(key: str, change: ResourceChange | None, exc: BaseException) -> OperationFailure:
    if change is None:
        raise RuntimeError(f"Internal operation {key} failed") from exc
    message = exc.message if isinstance(exc, ProviderError) else str(exc)
    return OperationFailure(
        address=change.address,
        kind=change.kind,
        name=change.name,
        action=change.action,
        message=message,
    )

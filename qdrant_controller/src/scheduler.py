from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from qdrant_controller.src.gate import SchedulingGate
from qdrant_controller.src.metrics import METRICS
from qdrant_controller.src.models import ReconcileRequest, ResourceKey, ResourceKind

LOGGER = logging.getLogger(__name__)

Slot = tuple[ResourceKind, ResourceKey]


class Reconciler(Protocol):
    kind: ResourceKind

    async def reconcile(self, request: ReconcileRequest) -> None: ...


@dataclass
class ScheduledEntry:
    key: ResourceKey
    kind: ResourceKind
    handle: asyncio.TimerHandle


class ReconcileScheduler:
    """Debounced, deduplicated dispatch of reconcile passes.

    A key is either idle, pending (debounce timer armed), or active
    (reconciler running). Events arriving for a pending key are dropped, not
    merged: the reconcilers re-read the latest object anyway. A timer that
    fires while its key is still active is dropped as well, so one key never
    has two passes in flight.

    Every method must be called from the event loop thread.
    """

    def __init__(self, gate: SchedulingGate, *, debounce_seconds: float = 1.0) -> None:
        self.gate = gate
        self.debounce_seconds = debounce_seconds
        self._reconcilers: dict[ResourceKind, Reconciler] = {}
        self._pending: dict[Slot, ScheduledEntry] = {}
        self._active: set[Slot] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    def bind(self, reconcilers: Mapping[ResourceKind, Reconciler]) -> None:
        missing = [kind.value for kind in ResourceKind if kind not in reconcilers]
        if missing:
            raise ValueError(f"No reconciler bound for resource kind(s): {', '.join(missing)}")
        self._reconcilers = dict(reconcilers)

    def schedule(self, obj: dict[str, Any], kind: ResourceKind) -> bool:
        key = ResourceKey.from_object(obj)
        if not self.gate.is_open:
            LOGGER.info("Not scheduling %s %s: %s", kind.value, key, self.gate.reason)
            return False

        slot = (kind, key)
        if slot in self._pending:
            METRICS.debounced_total.labels(resource_type=kind.value).inc()
            LOGGER.info("Reconcile already scheduled for %s %s, skipping", kind.value, key)
            return False

        loop = asyncio.get_running_loop()
        handle = loop.call_later(self.debounce_seconds, self._on_timer, slot, obj)
        self._pending[slot] = ScheduledEntry(key=key, kind=kind, handle=handle)
        METRICS.reconcile_queue_depth.set(len(self._pending))
        LOGGER.debug("Scheduled reconcile for %s %s", kind.value, key)
        return True

    def _on_timer(self, slot: Slot, obj: dict[str, Any]) -> None:
        kind, key = slot
        self._pending.pop(slot, None)
        METRICS.reconcile_queue_depth.set(len(self._pending))

        if not self.gate.is_open:
            LOGGER.info("Dropping scheduled reconcile for %s %s: %s", kind.value, key, self.gate.reason)
            return
        if slot in self._active:
            LOGGER.info("Reconcile for %s %s still running, dropping trigger", kind.value, key)
            return

        self._active.add(slot)
        METRICS.active_reconciles.set(len(self._active))
        request = ReconcileRequest(key=key, kind=kind, obj=obj)
        task = asyncio.get_running_loop().create_task(
            self._run(request), name=f"reconcile-{kind.value}-{key}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        # already logged by _run; nobody may ever await this task
        if not task.cancelled():
            task.exception()

    async def _run(self, request: ReconcileRequest) -> None:
        kind, key = request.kind, request.key
        started = time.monotonic()
        LOGGER.info("Reconciling %s %s", kind.value, key)
        try:
            await self._reconcilers[kind].reconcile(request)
        except Exception:
            METRICS.reconcile_total.labels(resource_type=kind.value, result="error").inc()
            LOGGER.exception("Reconcile of %s %s failed", kind.value, key)
            raise
        else:
            METRICS.reconcile_total.labels(resource_type=kind.value, result="success").inc()
            LOGGER.info("Reconciled %s %s", kind.value, key)
        finally:
            self._active.discard((kind, key))
            METRICS.active_reconciles.set(len(self._active))
            METRICS.reconcile_duration_seconds.labels(resource_type=kind.value).observe(
                time.monotonic() - started
            )

    def cancel_pending(self) -> int:
        dropped = len(self._pending)
        for entry in self._pending.values():
            entry.handle.cancel()
        self._pending.clear()
        METRICS.reconcile_queue_depth.set(0)
        if dropped:
            LOGGER.info("Cancelled %d scheduled reconcile(s)", dropped)
        return dropped

    def is_pending(self, kind: ResourceKind, key: ResourceKey) -> bool:
        return (kind, key) in self._pending

    def is_active(self, kind: ResourceKind, key: ResourceKey) -> bool:
        return (kind, key) in self._active

    @property
    def pending_keys(self) -> list[str]:
        return sorted(f"{kind.value}:{key}" for kind, key in list(self._pending))

    @property
    def active_keys(self) -> list[str]:
        return sorted(f"{kind.value}:{key}" for kind, key in list(self._active))

    async def wait_idle(self) -> None:
        """Wait until nothing is pending or running; re-raise the first reconcile failure."""
        while self._pending or self._tasks:
            if not self._tasks:
                await asyncio.sleep(min(self.debounce_seconds, 0.01))
                continue
            results = await asyncio.gather(*list(self._tasks), return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    raise result

    async def drain(self, timeout: float) -> None:
        """Let in-flight passes finish (up to *timeout*) without starting new ones."""
        tasks = list(self._tasks)
        if not tasks:
            return
        LOGGER.info("Waiting up to %.0fs for %d running reconcile(s)", timeout, len(tasks))
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            LOGGER.warning("Cancelling reconcile %s after shutdown grace period", task.get_name())
            task.cancel()

from __future__ import annotations

import asyncio
import contextlib
import logging

from qdrant_controller.src.gate import SchedulingGate
from qdrant_controller.src.metrics import METRICS
from qdrant_controller.src.models import ResourceKind, RestorePhase, status_of
from qdrant_controller.src.platform import PlatformOperations
from qdrant_controller.src.scheduler import ReconcileScheduler

LOGGER = logging.getLogger(__name__)

_FINISHED_RESTORE = {RestorePhase.COMPLETED.value, RestorePhase.FAILED.value}


class PeriodicSweeper:
    """Re-enqueues every known resource on a fixed interval.

    Watches can miss events and the retry queue gives up after its cap; the
    sweep is what eventually notices drift nobody reported.
    """

    def __init__(
        self,
        platform: PlatformOperations,
        scheduler: ReconcileScheduler,
        gate: SchedulingGate,
        *,
        interval_seconds: float = 300.0,
        namespace: str | None = None,
    ) -> None:
        self.platform = platform
        self.scheduler = scheduler
        self.gate = gate
        self.interval_seconds = interval_seconds
        self.namespace = namespace
        self._wake = asyncio.Event()
        self._stopped = False

    def trigger(self) -> None:
        self._wake.set()

    def stop(self) -> None:
        self._stopped = True
        self._wake.set()

    async def run(self) -> None:
        LOGGER.info("Periodic reconcile every %.0fs", self.interval_seconds)
        while not self._stopped:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval_seconds)
            self._wake.clear()
            if self._stopped:
                break
            if not self.gate.is_open:
                LOGGER.debug("Skipping periodic reconcile: %s", self.gate.reason)
                continue
            await self.sweep_once()

    async def sweep_once(self) -> int:
        scheduled = 0
        for kind in ResourceKind:
            try:
                items = await self.platform.list_custom_objects(kind, self.namespace)
            except Exception:
                METRICS.errors_total.labels(type="sweep").inc()
                LOGGER.exception("Periodic reconcile could not list %s resources", kind.value)
                continue
            for obj in items:
                if kind is ResourceKind.RESTORE and status_of(obj).get("phase") in _FINISHED_RESTORE:
                    continue
                if self.scheduler.schedule(obj, kind):
                    scheduled += 1
        LOGGER.info("Periodic reconcile scheduled %d resource(s)", scheduled)
        return scheduled

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from qdrant_controller.src.metrics import METRICS
from qdrant_controller.src.models import MAX_RETRIES, ResourceKey, ResourceKind

LOGGER = logging.getLogger(__name__)

RetrySlot = tuple[ResourceKind, ResourceKey]


@dataclass
class RetryEntry:
    key: ResourceKey
    kind: ResourceKind
    attempt_count: int
    scheduled_at: float
    delay_seconds: float
    handle: asyncio.TimerHandle


class RetryQueue:
    """Per-key retry timers with a hard cap on attempts.

    At most one timer is armed per ``(kind, key)``. Re-arming an armed key
    replaces the timer but keeps the attempt count, so repeated failures in
    quick succession cannot reset the budget. The attempt history survives
    the timer firing and is only cleared by :meth:`reset` (successful
    reconcile) or by exhausting the budget.
    """

    def __init__(
        self,
        reenqueue: Callable[[dict[str, Any], ResourceKind], object],
        *,
        max_retries: int = MAX_RETRIES,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 60.0,
    ) -> None:
        self._reenqueue = reenqueue
        self.max_retries = max_retries
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self._entries: dict[RetrySlot, RetryEntry] = {}
        self._history: dict[RetrySlot, int] = {}

    def backoff_delay(self, attempt: int) -> float:
        return min(self.base_delay_seconds * (2 ** max(attempt - 1, 0)), self.max_delay_seconds)

    def schedule_retry(
        self,
        obj: dict[str, Any],
        kind: ResourceKind,
        delay: float | None = None,
        attempt_count: int = 0,
    ) -> RetryEntry | None:
        key = ResourceKey.from_object(obj)
        slot = (kind, key)

        existing = self._entries.pop(slot, None)
        if existing is not None:
            existing.handle.cancel()
            attempt = existing.attempt_count
        else:
            attempt = max(attempt_count, self._history.get(slot, 0)) + 1

        if attempt > self.max_retries:
            self._history.pop(slot, None)
            METRICS.retry_queue_depth.set(len(self._entries))
            METRICS.retries_exhausted_total.labels(resource_type=kind.value).inc()
            LOGGER.error(
                "Giving up on %s %s after %d retries; waiting for the next event or sweep",
                kind.value,
                key,
                self.max_retries,
            )
            return None

        self._history[slot] = attempt
        if delay is None:
            delay = self.backoff_delay(attempt)

        loop = asyncio.get_running_loop()
        handle = loop.call_later(delay, self._fire, slot, obj)
        entry = RetryEntry(
            key=key,
            kind=kind,
            attempt_count=attempt,
            scheduled_at=time.time(),
            delay_seconds=delay,
            handle=handle,
        )
        self._entries[slot] = entry
        METRICS.retry_queue_depth.set(len(self._entries))
        METRICS.retries_scheduled_total.labels(resource_type=kind.value).inc()
        LOGGER.warning(
            "Scheduled retry %d/%d for %s %s in %.1fs",
            attempt,
            self.max_retries,
            kind.value,
            key,
            delay,
        )
        return entry

    def _fire(self, slot: RetrySlot, obj: dict[str, Any]) -> None:
        entry = self._entries.pop(slot, None)
        METRICS.retry_queue_depth.set(len(self._entries))
        if entry is None:
            return
        LOGGER.info(
            "Retrying %s %s (attempt %d)", entry.kind.value, entry.key, entry.attempt_count
        )
        self._reenqueue(obj, entry.kind)

    def attempts(self, kind: ResourceKind, key: ResourceKey) -> int:
        return self._history.get((kind, key), 0)

    def get(self, kind: ResourceKind, key: ResourceKey) -> RetryEntry | None:
        return self._entries.get((kind, key))

    def reset(self, kind: ResourceKind, key: ResourceKey) -> None:
        self._history.pop((kind, key), None)

    def cancel(self, kind: ResourceKind, key: ResourceKey) -> None:
        entry = self._entries.pop((kind, key), None)
        if entry is not None:
            entry.handle.cancel()
        self._history.pop((kind, key), None)
        METRICS.retry_queue_depth.set(len(self._entries))

    def close(self) -> None:
        for entry in self._entries.values():
            entry.handle.cancel()
        self._entries.clear()
        self._history.clear()
        METRICS.retry_queue_depth.set(0)

    def snapshot(self) -> list[dict[str, Any]]:
        return [
            {
                "kind": entry.kind.value,
                "key": str(entry.key),
                "attempt": entry.attempt_count,
                "scheduledAt": entry.scheduled_at,
                "delaySeconds": entry.delay_seconds,
            }
            for entry in list(self._entries.values())
        ]

    def __len__(self) -> int:
        return len(self._entries)

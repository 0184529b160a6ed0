from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from qdrant_controller.src.finalizers import has_finalizer, remove_finalizer
from qdrant_controller.src.metrics import METRICS
from qdrant_controller.src.models import CleanupPhase, ResourceKey, ResourceKind, status_of
from qdrant_controller.src.platform import PlatformOperations
from qdrant_controller.src.status import StatusWriter

LOGGER = logging.getLogger(__name__)

FORCE_DELETE_AFTER_ATTEMPTS = 10


def cleanup_attempts(obj: dict[str, Any]) -> int:
    try:
        return max(int(status_of(obj).get("cleanupAttempts") or 0), 0)
    except (TypeError, ValueError):
        return 0


class DeletionCleanup:
    """Runs the release step of a finalizer and keeps count in the object's status.

    One attempt per reconcile pass. The count lives in ``status.cleanupAttempts``
    so it survives restarts and leader changes. A failed attempt is recorded as
    ``Retrying`` and re-raised so the caller's retry queue backs off. Once
    ``force_after`` attempts have failed the finalizer is removed anyway and the
    object is marked ``Failed`` so the deletion can finish.
    """

    def __init__(
        self,
        platform: PlatformOperations,
        status: StatusWriter,
        *,
        force_after: int = FORCE_DELETE_AFTER_ATTEMPTS,
    ) -> None:
        self.platform = platform
        self.status = status
        self.force_after = force_after

    async def finalize(
        self,
        kind: ResourceKind,
        obj: dict[str, Any],
        release: Callable[[], Awaitable[Any]],
    ) -> None:
        if not has_finalizer(obj):
            return
        key = ResourceKey.from_object(obj)
        attempt = cleanup_attempts(obj) + 1

        try:
            await release()
        except Exception as exc:
            METRICS.errors_total.labels(type="cleanup").inc()
            if attempt < self.force_after:
                LOGGER.warning(
                    "Cleanup of %s %s failed (attempt %d/%d): %s",
                    kind.value,
                    key,
                    attempt,
                    self.force_after,
                    exc,
                )
                await self.status.set_cleanup_status(
                    kind, obj, CleanupPhase.RETRYING, attempt, error=str(exc)
                )
                raise
            await self._force(kind, obj, key, attempt, exc)
            return

        await self.status.set_cleanup_status(kind, obj, CleanupPhase.COMPLETED, attempt)
        await remove_finalizer(self.platform, kind, obj)

    async def _force(
        self, kind: ResourceKind, obj: dict[str, Any], key: ResourceKey, attempt: int, exc: Exception
    ) -> None:
        message = (
            f"Cleanup failed after {attempt} attempts: {exc}. "
            "Finalizer will be removed to allow deletion."
        )
        LOGGER.error("Force-deleting %s %s: %s", kind.value, key, message)
        METRICS.errors_total.labels(type="cleanup_force_delete").inc()
        await self.status.set_cleanup_status(kind, obj, CleanupPhase.FAILED, attempt, error=message)
        await remove_finalizer(self.platform, kind, obj)

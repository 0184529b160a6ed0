from __future__ import annotations

import logging
from typing import Any

from qdrant_controller.src.cache import StateCache
from qdrant_controller.src.models import (
    ResourceKey,
    ResourceKind,
    RestorePhase,
    resource_version_of,
    status_of,
)
from qdrant_controller.src.scheduler import ReconcileScheduler

LOGGER = logging.getLogger(__name__)

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"


class ResourceVersionTracker:
    """Last resourceVersion handled per ``(kind, key)``.

    Watch re-lists replay objects we have already seen and every status
    write we make comes back as a MODIFIED event; both carry a
    resourceVersion we already know and are ignored.
    """

    def __init__(self) -> None:
        self._versions: dict[tuple[ResourceKind, ResourceKey], str] = {}

    def seen(self, kind: ResourceKind, key: ResourceKey, version: str | None) -> bool:
        return version is not None and self._versions.get((kind, key)) == version

    def remember(self, kind: ResourceKind, key: ResourceKey, version: str | None) -> None:
        if version is not None:
            self._versions[(kind, key)] = version

    def remember_object(self, kind: ResourceKind, obj: dict[str, Any]) -> None:
        self.remember(kind, ResourceKey.from_object(obj), resource_version_of(obj))

    def forget(self, kind: ResourceKind, key: ResourceKey) -> None:
        self._versions.pop((kind, key), None)


class EventHandler:
    """Turns watch events into cache updates and scheduling requests."""

    def __init__(
        self,
        scheduler: ReconcileScheduler,
        caches: dict[ResourceKind, StateCache[dict[str, Any]]],
        versions: ResourceVersionTracker,
    ) -> None:
        self.scheduler = scheduler
        self.caches = caches
        self.versions = versions

    def handle(self, kind: ResourceKind, event_type: str, obj: dict[str, Any]) -> None:
        key = ResourceKey.from_object(obj)
        version = resource_version_of(obj)
        cache = self.caches.get(kind)

        if event_type == DELETED:
            LOGGER.info("%s %s deleted", kind.value, key)
            if cache is not None:
                cache.delete(key)
            self.versions.forget(kind, key)
            return

        if self.versions.seen(kind, key, version):
            LOGGER.debug("Ignoring %s for %s %s at already handled version %s", event_type, kind.value, key, version)
            return
        self.versions.remember(kind, key, version)
        if cache is not None:
            cache.set(key, obj)

        if kind is ResourceKind.RESTORE and _restore_finished(obj):
            LOGGER.debug("Restore %s already finished, not scheduling", key)
            return
        self.scheduler.schedule(obj, kind)


def _restore_finished(obj: dict[str, Any]) -> bool:
    phase = status_of(obj).get("phase")
    return phase in {RestorePhase.COMPLETED.value, RestorePhase.FAILED.value}

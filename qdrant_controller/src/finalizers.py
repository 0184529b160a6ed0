from __future__ import annotations

import logging
from typing import Any

from kubernetes.client import ApiException

from qdrant_controller.src.errors import is_not_found
from qdrant_controller.src.metrics import METRICS
from qdrant_controller.src.models import FINALIZER, ResourceKey, ResourceKind, metadata_of
from qdrant_controller.src.platform import PlatformOperations

LOGGER = logging.getLogger(__name__)


def has_finalizer(obj: dict[str, Any]) -> bool:
    return FINALIZER in (metadata_of(obj).get("finalizers") or [])


async def ensure_finalizer(platform: PlatformOperations, kind: ResourceKind, obj: dict[str, Any]) -> bool:
    """Add the operator finalizer if missing. Failures are logged, not raised."""
    if has_finalizer(obj):
        return False
    key = ResourceKey.from_object(obj)
    finalizers = [*(metadata_of(obj).get("finalizers") or []), FINALIZER]
    try:
        await platform.patch_custom_object(
            kind, key.namespace, key.name, {"metadata": {"finalizers": finalizers}}
        )
    except ApiException as exc:
        METRICS.errors_total.labels(type="finalizer_add").inc()
        LOGGER.warning("Could not add finalizer to %s %s: %s", kind.value, key, exc.reason)
        return False
    LOGGER.info("Added finalizer to %s %s", kind.value, key)
    return True


async def remove_finalizer(platform: PlatformOperations, kind: ResourceKind, obj: dict[str, Any]) -> None:
    key = ResourceKey.from_object(obj)
    finalizers = [f for f in metadata_of(obj).get("finalizers") or [] if f != FINALIZER]
    try:
        await platform.patch_custom_object(
            kind, key.namespace, key.name, {"metadata": {"finalizers": finalizers}}
        )
    except ApiException as exc:
        if is_not_found(exc):
            return
        METRICS.errors_total.labels(type="finalizer_remove").inc()
        raise
    LOGGER.info("Removed finalizer from %s %s", kind.value, key)

from __future__ import annotations

import logging
from typing import Any

from kubernetes.client import ApiException

from qdrant_controller.src.cache import StateCache
from qdrant_controller.src.errors import SpecValidationError, is_not_found
from qdrant_controller.src.metrics import METRICS
from qdrant_controller.src.models import ResourceKey, ResourceKind
from qdrant_controller.src.platform import PlatformOperations
from qdrant_controller.src.status import StatusWriter
from qdrant_controller.src.validation import carries_invalid_spec

LOGGER = logging.getLogger(__name__)


async def fetch_latest(
    platform: PlatformOperations,
    kind: ResourceKind,
    obj: dict[str, Any],
    cache: StateCache[dict[str, Any]] | None = None,
) -> dict[str, Any] | None:
    """Re-read *obj* from the API server.

    Returns ``None`` when the object no longer exists, and falls back to the
    snapshot we were handed when the read itself fails.
    """
    key = ResourceKey.from_object(obj)
    try:
        latest = await platform.get_custom_object(kind, key.namespace, key.name)
    except ApiException as exc:
        if is_not_found(exc):
            LOGGER.info("%s %s no longer exists", kind.value, key)
            if cache is not None:
                cache.delete(key)
            return None
        LOGGER.warning("Could not re-read %s %s (%s), using event snapshot", kind.value, key, exc.reason)
        return obj
    if cache is not None:
        cache.set(key, latest)
    return latest


async def reject_invalid_spec(
    status: StatusWriter, kind: ResourceKind, obj: dict[str, Any], exc: SpecValidationError
) -> None:
    METRICS.validation_errors_total.labels(resource_type=kind.value).inc()
    if carries_invalid_spec(obj):
        LOGGER.info(
            "%s %s is still invalid (%s), status already says so", kind.value, ResourceKey.from_object(obj), exc
        )
        return
    await status.set_invalid_spec(kind, obj, str(exc))

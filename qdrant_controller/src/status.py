from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import ApiException

from qdrant_controller.src.errors import is_conflict, is_not_found
from qdrant_controller.src.events import ResourceVersionTracker
from qdrant_controller.src.models import (
    INVALID_SPEC_REASON,
    CleanupPhase,
    ClusterPhase,
    ResourceKey,
    ResourceKind,
    RestorePhase,
    metadata_of,
    status_of,
)
from qdrant_controller.src.platform import PlatformOperations

LOGGER = logging.getLogger(__name__)


def utc_now_rfc3339() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def condition(type_: str, ok: bool, reason: str, message: str) -> dict[str, Any]:
    return {
        "type": type_,
        "status": "True" if ok else "False",
        "reason": reason,
        "message": message,
        "lastTransitionTime": utc_now_rfc3339(),
    }


def merge_conditions(
    existing: Iterable[dict[str, Any]] | None, updates: Iterable[dict[str, Any]]
) -> list[dict[str, Any]]:
    """Replace conditions by type, keeping ``lastTransitionTime`` when the status did not flip."""
    merged = {c.get("type"): dict(c) for c in existing or []}
    for update in updates:
        previous = merged.get(update.get("type"))
        new = dict(update)
        if previous is not None and previous.get("status") == new.get("status"):
            new["lastTransitionTime"] = previous.get("lastTransitionTime", new["lastTransitionTime"])
        merged[new.get("type")] = new
    return list(merged.values())


class StatusWriter:
    """Writes status subresources of the operator's custom resources.

    Phase and hash updates go through read-modify-replace with the object's
    ``resourceVersion`` so two writers cannot silently overwrite each other;
    a 409 is retried a few times with a short linear backoff. Writes that
    would not change anything are skipped. The resourceVersion produced by
    each write is recorded so the watch can ignore the echo of our own update.
    """

    def __init__(
        self,
        platform: PlatformOperations,
        *,
        versions: ResourceVersionTracker | None = None,
        conflict_retries: int = 3,
        conflict_backoff_seconds: float = 0.1,
    ) -> None:
        self.platform = platform
        self.versions = versions
        self.conflict_retries = conflict_retries
        self.conflict_backoff_seconds = conflict_backoff_seconds

    def _remember(self, kind: ResourceKind, obj: dict[str, Any] | None) -> None:
        if self.versions is not None and obj:
            self.versions.remember_object(kind, obj)

    async def update_status(
        self,
        kind: ResourceKind,
        obj: dict[str, Any],
        changes: dict[str, Any],
        *,
        clear: Iterable[str] = (),
    ) -> dict[str, Any]:
        key = ResourceKey.from_object(obj)
        clear = tuple(clear)
        attempt = 0
        while True:
            attempt += 1
            current = await self.platform.get_custom_object_status(kind, key.namespace, key.name)
            existing = status_of(current)
            desired = {**existing, **changes}
            if "conditions" in changes:
                desired["conditions"] = merge_conditions(existing.get("conditions"), changes["conditions"])
            for field_name in clear:
                desired.pop(field_name, None)
            if desired == existing:
                return current

            body = {
                "apiVersion": current.get("apiVersion"),
                "kind": current.get("kind"),
                "metadata": {
                    "name": key.name,
                    "namespace": key.namespace,
                    "resourceVersion": metadata_of(current).get("resourceVersion"),
                },
                "status": desired,
            }
            try:
                updated = await self.platform.replace_custom_object_status(
                    kind, key.namespace, key.name, body
                )
            except ApiException as exc:
                if not is_conflict(exc) or attempt >= self.conflict_retries:
                    raise
                LOGGER.info(
                    "Status of %s %s changed underneath us, retrying (%d/%d)",
                    kind.value,
                    key,
                    attempt,
                    self.conflict_retries,
                )
                await asyncio.sleep(self.conflict_backoff_seconds * attempt)
                continue
            self._remember(kind, updated)
            return updated

    async def set_cluster_phase(
        self,
        cluster: dict[str, Any],
        phase: ClusterPhase,
        *,
        message: str,
        reason: str | None = None,
    ) -> dict[str, Any]:
        ready = phase in {ClusterPhase.HEALTHY, ClusterPhase.RUNNING}
        changes = {
            "qdrantStatus": phase.value,
            "observedGeneration": metadata_of(cluster).get("generation"),
            "conditions": [condition("Ready", ready, reason or phase.value, message)],
        }
        LOGGER.info("Cluster %s -> %s (%s)", ResourceKey.from_object(cluster), phase.value, message)
        return await self.update_status(
            ResourceKind.CLUSTER, cluster, changes, clear=("reason", "errorMessage")
        )

    async def set_last_applied_hash(self, cluster: dict[str, Any], spec_hash: str) -> dict[str, Any]:
        return await self.update_status(ResourceKind.CLUSTER, cluster, {"lastAppliedHash": spec_hash})

    async def _patch_status(
        self, kind: ResourceKind, obj: dict[str, Any], status: dict[str, Any]
    ) -> dict[str, Any]:
        key = ResourceKey.from_object(obj)
        patch = {"status": status}
        try:
            updated = await self.platform.patch_custom_object_status(
                kind, key.namespace, key.name, patch
            )
        except ApiException as exc:
            if not is_not_found(exc):
                raise
            # CRDs installed without the status subresource
            updated = await self.platform.patch_custom_object(kind, key.namespace, key.name, patch)
        self._remember(kind, updated)
        return updated

    async def set_invalid_spec(self, kind: ResourceKind, obj: dict[str, Any], message: str) -> dict[str, Any]:
        LOGGER.warning("Rejecting %s %s: %s", kind.value, ResourceKey.from_object(obj), message)
        return await self._patch_status(
            kind,
            obj,
            {
                "qdrantStatus": ClusterPhase.ERROR.value,
                "reason": INVALID_SPEC_REASON,
                "errorMessage": message,
                "observedGeneration": metadata_of(obj).get("generation"),
                "conditions": [condition("Ready", False, INVALID_SPEC_REASON, message)],
            },
        )

    async def set_restore_phase(
        self,
        restore: dict[str, Any],
        phase: RestorePhase,
        *,
        message: str | None = None,
        error: str | None = None,
        job_name: str | None = None,
    ) -> dict[str, Any]:
        status: dict[str, Any] = {"phase": phase.value}
        if message is not None:
            status["message"] = message
        if error is not None:
            status["error"] = error
        if job_name is not None:
            status["jobName"] = job_name
        now = utc_now_rfc3339()
        if phase is RestorePhase.IN_PROGRESS and not status_of(restore).get("startedAt"):
            status["startedAt"] = now
        if phase.is_terminal:
            status["completedAt"] = now
        LOGGER.info("Restore %s -> %s", ResourceKey.from_object(restore), phase.value)
        return await self._patch_status(ResourceKind.RESTORE, restore, status)

    async def set_cleanup_status(
        self,
        kind: ResourceKind,
        obj: dict[str, Any],
        phase: CleanupPhase,
        attempts: int,
        *,
        error: str | None = None,
    ) -> dict[str, Any]:
        status: dict[str, Any] = {"cleanupPhase": phase.value, "cleanupAttempts": attempts}
        if error is not None:
            status["cleanupError"] = error
        return await self._patch_status(kind, obj, status)

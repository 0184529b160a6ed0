from __future__ import annotations

import logging
from typing import Any

from kubernetes.client import ApiException

from qdrant_controller.src.errors import PollTimeout, is_not_found
from qdrant_controller.src.jobs import JobOutcome, SnapshotJobs, job_outcome
from qdrant_controller.src.metrics import METRICS
from qdrant_controller.src.models import (
    ReconcileRequest,
    ResourceKey,
    ResourceKind,
    RestorePhase,
    spec_of,
    status_of,
)
from qdrant_controller.src.platform import PlatformOperations
from qdrant_controller.src.reconcilers.common import fetch_latest
from qdrant_controller.src.status import StatusWriter
from qdrant_controller.src.waiting import poll_until

LOGGER = logging.getLogger(__name__)


class RestoreReconciler:
    """Runs a QdrantCollectionRestore to completion.

    A restore is a one-shot: once its phase is Completed or Failed nothing
    here touches it again. Every status write re-reads the restore first, so
    edits made while the job runs are not clobbered.
    """

    kind = ResourceKind.RESTORE

    def __init__(
        self,
        platform: PlatformOperations,
        jobs: SnapshotJobs,
        status: StatusWriter,
        *,
        poll_interval_seconds: float = 5.0,
        max_polls: int = 120,
    ) -> None:
        self.platform = platform
        self.jobs = jobs
        self.status = status
        self.poll_interval_seconds = poll_interval_seconds
        self.max_polls = max_polls

    @property
    def poll_timeout_seconds(self) -> float:
        return self.poll_interval_seconds * self.max_polls + 60.0

    async def reconcile(self, request: ReconcileRequest) -> None:
        key = request.key
        restore = await fetch_latest(self.platform, self.kind, request.obj)
        if restore is None:
            return
        phase = status_of(restore).get("phase")
        if phase in {RestorePhase.COMPLETED.value, RestorePhase.FAILED.value}:
            LOGGER.info("Restore %s already %s, nothing to do", key, phase)
            return

        try:
            await self._run(restore, key)
        except Exception as exc:
            METRICS.errors_total.labels(type="restore").inc()
            LOGGER.exception("Restore %s failed", key)
            await self._record_failure(restore, key, exc)

    async def _run(self, restore: dict[str, Any], key: ResourceKey) -> None:
        spec = spec_of(restore)
        await self._transition(
            key,
            RestorePhase.IN_PROGRESS,
            message=f"Restoring collection {spec.get('collection')} from backup {spec.get('backupId')}",
        )
        job_name = await self.jobs.launch_restore_job(restore)
        await self._transition(key, RestorePhase.IN_PROGRESS, job_name=job_name)

        try:
            outcome = await poll_until(
                lambda: self._job_outcome(key.namespace, job_name),
                interval=self.poll_interval_seconds,
                max_attempts=self.max_polls,
                timeout=self.poll_timeout_seconds,
                description=f"Restore job {key.namespace}/{job_name} completion",
            )
        except PollTimeout as exc:
            await self._transition(
                key,
                RestorePhase.FAILED,
                message=f"Restore job {job_name} did not finish in time",
                error=str(exc),
            )
            return

        if outcome is JobOutcome.SUCCEEDED:
            await self._transition(key, RestorePhase.COMPLETED, message="Restore completed")
        else:
            await self._transition(
                key, RestorePhase.FAILED, message="Restore job failed", error=f"Job {job_name} failed"
            )

    async def _job_outcome(self, namespace: str, job_name: str) -> JobOutcome | None:
        try:
            job = await self.platform.read_job(namespace, job_name)
        except ApiException as exc:
            if is_not_found(exc):
                LOGGER.debug("Restore job %s/%s not visible yet", namespace, job_name)
                return None
            raise
        return job_outcome(job)

    async def _transition(
        self,
        key: ResourceKey,
        phase: RestorePhase,
        *,
        message: str | None = None,
        error: str | None = None,
        job_name: str | None = None,
    ) -> None:
        latest = await self.platform.get_custom_object(self.kind, key.namespace, key.name)
        await self.status.set_restore_phase(
            latest, phase, message=message, error=error, job_name=job_name
        )

    async def _record_failure(self, restore: dict[str, Any], key: ResourceKey, exc: Exception) -> None:
        try:
            target = await self.platform.get_custom_object(self.kind, key.namespace, key.name)
        except ApiException:
            target = restore
        try:
            await self.status.set_restore_phase(
                target, RestorePhase.FAILED, message="Restore failed", error=str(exc)
            )
        except ApiException as write_exc:
            LOGGER.error("Could not mark restore %s as failed: %s", key, write_exc.reason)

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from kubernetes.client import ApiException

from qdrant_controller.src import manifests
from qdrant_controller.src.errors import is_conflict
from qdrant_controller.src.models import ResourceKey, ResourceKind, metadata_of, spec_of
from qdrant_controller.src.platform import PlatformOperations

LOGGER = logging.getLogger(__name__)


class JobOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def job_outcome(job: Any) -> JobOutcome | None:
    """Classify a batch/v1 Job; ``None`` while it is still running."""
    status = getattr(job, "status", None)
    for cond in getattr(status, "conditions", None) or []:
        if getattr(cond, "status", None) != "True":
            continue
        if cond.type == "Complete":
            return JobOutcome.SUCCEEDED
        if cond.type == "Failed":
            return JobOutcome.FAILED
    if (getattr(status, "succeeded", None) or 0) > 0:
        return JobOutcome.SUCCEEDED
    return None


class SnapshotJobs:
    """Creates the backup and restore Jobs that move collection snapshots around."""

    def __init__(self, platform: PlatformOperations, *, image: str) -> None:
        self.platform = platform
        self.image = image

    async def _create_job(self, namespace: str, body: dict[str, Any]) -> bool:
        try:
            await self.platform.create_job(namespace, body)
        except ApiException as exc:
            if not is_conflict(exc):
                raise
            LOGGER.info("Job %s/%s already exists", namespace, body["metadata"]["name"])
            return False
        LOGGER.info("Started job %s/%s", namespace, body["metadata"]["name"])
        return True

    async def apply_collection_jobs(self, collection: dict[str, Any]) -> None:
        spec = spec_of(collection)
        snapshots = spec.get("snapshots")
        if not snapshots:
            return
        namespace = metadata_of(collection)["namespace"]
        cluster_name = spec["cluster"]
        cluster = await self.platform.get_custom_object(ResourceKind.CLUSTER, namespace, cluster_name)
        url = manifests.cluster_base_url(cluster)

        if snapshots.get("backupNow"):
            await self._create_job(
                namespace, manifests.backup_job(collection, url, cluster_name, self.image)
            )
        if snapshots.get("backupSchedule"):
            await self.platform.apply(
                manifests.backup_cron_job(collection, url, cluster_name, self.image)
            )

    async def launch_restore_job(self, restore: dict[str, Any]) -> str:
        """Start the restore Job for *restore* and return its name.

        The name is derived from the restore object, so a second launch
        attempt finds the first Job instead of starting another one.
        """
        spec = spec_of(restore)
        key = ResourceKey.from_object(restore)
        collection = await self.platform.get_custom_object(
            ResourceKind.COLLECTION, key.namespace, spec["collection"]
        )
        if not spec_of(collection).get("snapshots"):
            raise ValueError(
                f"Collection {spec['collection']} has no snapshot configuration to restore from"
            )
        cluster_name = spec.get("cluster") or spec_of(collection)["cluster"]
        cluster = await self.platform.get_custom_object(ResourceKind.CLUSTER, key.namespace, cluster_name)
        body = manifests.restore_job(
            restore, collection, manifests.cluster_base_url(cluster), cluster_name, self.image
        )
        await self._create_job(key.namespace, body)
        return body["metadata"]["name"]

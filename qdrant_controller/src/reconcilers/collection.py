from __future__ import annotations

import logging
from typing import Any

from kubernetes.client import ApiException

from qdrant_controller.src.cache import StateCache
from qdrant_controller.src.cleanup import DeletionCleanup
from qdrant_controller.src.errors import TRANSIENT_ERRORS, SpecValidationError, is_not_found
from qdrant_controller.src.finalizers import ensure_finalizer, has_finalizer
from qdrant_controller.src.jobs import SnapshotJobs
from qdrant_controller.src.metrics import METRICS
from qdrant_controller.src.models import (
    ClusterPhase,
    ReconcileRequest,
    ResourceKey,
    ResourceKind,
    is_being_deleted,
    spec_of,
    status_of,
)
from qdrant_controller.src.platform import PlatformOperations
from qdrant_controller.src.qdrant import DatabaseOperations, collection_body
from qdrant_controller.src.readiness import is_rolled_out
from qdrant_controller.src.reconcilers.common import fetch_latest, reject_invalid_spec
from qdrant_controller.src.retry import RetryQueue
from qdrant_controller.src.status import StatusWriter
from qdrant_controller.src.validation import invalid_spec_is_current, validate_collection_spec

LOGGER = logging.getLogger(__name__)

_READY_PHASES = {ClusterPhase.HEALTHY.value, ClusterPhase.RUNNING.value}


class CollectionReconciler:
    kind = ResourceKind.COLLECTION

    def __init__(
        self,
        platform: PlatformOperations,
        database: DatabaseOperations,
        jobs: SnapshotJobs,
        status: StatusWriter,
        retries: RetryQueue,
        collections: StateCache[dict[str, Any]],
        workloads: StateCache[Any],
        cleanup: DeletionCleanup,
        *,
        readiness_retry_seconds: float = 5.0,
    ) -> None:
        self.platform = platform
        self.database = database
        self.jobs = jobs
        self.status = status
        self.retries = retries
        self.collections = collections
        self.workloads = workloads
        self.cleanup = cleanup
        self.readiness_retry_seconds = readiness_retry_seconds

    async def reconcile(self, request: ReconcileRequest) -> None:
        key = request.key
        collection = await fetch_latest(self.platform, self.kind, request.obj, self.collections)
        if collection is None:
            self.retries.cancel(self.kind, key)
            return

        try:
            await self._reconcile(collection, key)
        except Exception as exc:
            METRICS.errors_total.labels(type="collection_reconcile").inc()
            latest = await self._latest_or(collection)
            self.retries.schedule_retry(latest, self.kind)
            if not isinstance(exc, TRANSIENT_ERRORS):
                raise
            LOGGER.warning("Reconcile of collection %s failed, will retry: %s", key, exc)

    async def _latest_or(self, collection: dict[str, Any]) -> dict[str, Any]:
        key = ResourceKey.from_object(collection)
        try:
            return await self.platform.get_custom_object(self.kind, key.namespace, key.name)
        except ApiException:
            return collection

    async def _reconcile(self, collection: dict[str, Any], key: ResourceKey) -> None:
        if is_being_deleted(collection):
            await self._finalize(collection, key)
            return

        if invalid_spec_is_current(collection):
            LOGGER.info("Collection %s has an invalid spec for this generation, skipping", key)
            return
        spec = spec_of(collection)
        try:
            validate_collection_spec(spec)
        except SpecValidationError as exc:
            await reject_invalid_spec(self.status, self.kind, collection, exc)
            return

        await ensure_finalizer(self.platform, self.kind, collection)

        cluster_name = spec["cluster"]
        if not await self._cluster_ready(key.namespace, cluster_name):
            LOGGER.info("Cluster %s/%s not ready yet, deferring collection %s", key.namespace, cluster_name, key)
            self.retries.schedule_retry(collection, self.kind, delay=self.readiness_retry_seconds)
            return

        connection = await self.database.connection_for(key.namespace, cluster_name)
        if not await self.database.health_check(connection):
            LOGGER.info("Cluster %s/%s failed its health probe, deferring collection %s", key.namespace, cluster_name, key)
            self.retries.schedule_retry(collection, self.kind, delay=self.readiness_retry_seconds)
            return

        await self.database.put_collection(connection, key.name, collection_body(spec))

        try:
            await self.jobs.apply_collection_jobs(collection)
        except Exception:
            METRICS.errors_total.labels(type="collection_jobs").inc()
            LOGGER.exception("Could not apply snapshot jobs for collection %s", key)

        self.retries.reset(self.kind, key)

    async def _cluster_ready(self, namespace: str, cluster_name: str) -> bool:
        """Ready per the cluster's status, or per its StatefulSet when the status lags behind."""
        cluster_key = ResourceKey(namespace, cluster_name)
        try:
            cluster = await self.platform.get_custom_object_status(
                ResourceKind.CLUSTER, namespace, cluster_name
            )
        except ApiException as exc:
            LOGGER.warning("Could not read status of cluster %s: %s", cluster_key, exc.reason)
            return False
        if status_of(cluster).get("qdrantStatus") in _READY_PHASES:
            return True

        try:
            stateful_set = await self.platform.read_stateful_set(namespace, cluster_name)
        except ApiException as exc:
            if not is_not_found(exc):
                LOGGER.warning("Could not read StatefulSet %s: %s", cluster_key, exc.reason)
            return False
        self.workloads.set(cluster_key, stateful_set)
        if is_rolled_out(stateful_set):
            LOGGER.info("Cluster %s status lags its StatefulSet, treating it as ready", cluster_key)
            return True
        return False

    async def _finalize(self, collection: dict[str, Any], key: ResourceKey) -> None:
        if has_finalizer(collection):
            await self.cleanup.finalize(
                self.kind, collection, lambda: self._delete_from_cluster(collection, key)
            )
        self.retries.cancel(self.kind, key)
        self.collections.delete(key)

    async def _delete_from_cluster(self, collection: dict[str, Any], key: ResourceKey) -> None:
        cluster_name = spec_of(collection).get("cluster")
        if not cluster_name:
            return
        try:
            connection = await self.database.connection_for(key.namespace, cluster_name)
        except ApiException as exc:
            if not is_not_found(exc):
                raise
            LOGGER.info("Cluster %s/%s is gone, nothing to delete for %s", key.namespace, cluster_name, key)
            return
        await self.database.delete_collection(connection, key.name)

from __future__ import annotations

import logging
from typing import Any

from kubernetes.client import ApiException

from qdrant_controller.src.cache import StateCache
from qdrant_controller.src.cleanup import DeletionCleanup
from qdrant_controller.src.errors import TRANSIENT_ERRORS, SpecValidationError, is_not_found
from qdrant_controller.src.finalizers import ensure_finalizer, has_finalizer
from qdrant_controller.src.hashing import calculate_spec_hash
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
from qdrant_controller.src.readiness import ReadinessWaiter, is_fully_ready, ready_message
from qdrant_controller.src.reconcilers.common import fetch_latest, reject_invalid_spec
from qdrant_controller.src.resources import ClusterResources
from qdrant_controller.src.retry import RetryQueue
from qdrant_controller.src.status import StatusWriter
from qdrant_controller.src.validation import invalid_spec_is_current, validate_cluster_spec

LOGGER = logging.getLogger(__name__)


class ClusterReconciler:
    """Drives a QdrantCluster towards its spec.

    Convergence is blanket and idempotent: the cheap companions (config map,
    services, PDB, network policy, secrets) are re-applied on every pass,
    while the StatefulSet is only re-applied when the hash of the relevant
    spec fields differs from ``status.lastAppliedHash``. The hash only tells
    us whether to re-apply; health always comes from the StatefulSet itself.
    """

    kind = ResourceKind.CLUSTER

    def __init__(
        self,
        platform: PlatformOperations,
        resources: ClusterResources,
        status: StatusWriter,
        retries: RetryQueue,
        readiness: ReadinessWaiter,
        clusters: StateCache[dict[str, Any]],
        workloads: StateCache[Any],
        cleanup: DeletionCleanup,
    ) -> None:
        self.platform = platform
        self.resources = resources
        self.status = status
        self.retries = retries
        self.readiness = readiness
        self.clusters = clusters
        self.workloads = workloads
        self.cleanup = cleanup

    async def reconcile(self, request: ReconcileRequest) -> None:
        key = request.key
        cluster = await fetch_latest(self.platform, self.kind, request.obj, self.clusters)
        if cluster is None:
            self.readiness.cancel(key)
            self.retries.cancel(self.kind, key)
            self.workloads.delete(key)
            return

        try:
            await self._reconcile(cluster, key)
        except Exception as exc:
            METRICS.errors_total.labels(type="cluster_reconcile").inc()
            self.retries.schedule_retry(cluster, self.kind)
            if not isinstance(exc, TRANSIENT_ERRORS):
                raise
            LOGGER.warning("Reconcile of cluster %s failed, will retry: %s", key, exc)

    async def _reconcile(self, cluster: dict[str, Any], key: ResourceKey) -> None:
        if is_being_deleted(cluster):
            await self._finalize(cluster, key)
            return

        if invalid_spec_is_current(cluster):
            LOGGER.info("Cluster %s has an invalid spec for this generation, skipping", key)
            return
        try:
            validate_cluster_spec(spec_of(cluster))
        except SpecValidationError as exc:
            await reject_invalid_spec(self.status, self.kind, cluster, exc)
            return

        await ensure_finalizer(self.platform, self.kind, cluster)
        await self._converge(cluster, key)
        self.retries.reset(self.kind, key)

    async def _observed_workload(self, key: ResourceKey) -> Any | None:
        # The cache can outlive the StatefulSet, so every pass asks the API.
        cached = self.workloads.get(key)
        try:
            stateful_set = await self.platform.read_stateful_set(key.namespace, key.name)
        except ApiException as exc:
            if is_not_found(exc):
                if cached is not None:
                    LOGGER.info("StatefulSet %s disappeared, recreating", key)
                self.workloads.delete(key)
                return None
            METRICS.errors_total.labels(type="workload_read").inc()
            LOGGER.warning("Could not read StatefulSet %s, using last observed state: %s", key, exc.reason)
            return cached
        self.workloads.set(key, stateful_set)
        return stateful_set

    async def _refresh_workload(self, key: ResourceKey) -> None:
        await self.workloads.refresh(
            key, lambda: self.platform.read_stateful_set(key.namespace, key.name)
        )

    async def _apply_companions(self, cluster: dict[str, Any]) -> None:
        await self.resources.apply_config_map(cluster)
        await self.resources.apply_secrets(cluster)
        await self.resources.apply_headless_service(cluster)
        await self.resources.apply_client_service(cluster)
        await self.resources.apply_disruption_budget(cluster)
        await self.resources.apply_network_policy(cluster)

    async def _converge(self, cluster: dict[str, Any], key: ResourceKey) -> None:
        desired_hash = calculate_spec_hash(spec_of(cluster))

        if await self._observed_workload(key) is None:
            LOGGER.info("Creating Qdrant cluster %s", key)
            await self._apply_companions(cluster)
            await self.resources.apply_workload(cluster)
            await self.status.set_cluster_phase(
                cluster, ClusterPhase.PENDING, message="Waiting for StatefulSet rollout"
            )
            await self._refresh_workload(key)
            await self.status.set_last_applied_hash(cluster, desired_hash)
            self.readiness.watch(cluster)
            return

        last_applied = status_of(cluster).get("lastAppliedHash")
        reapply = last_applied != desired_hash
        if not reapply:
            LOGGER.info("Cluster %s spec unchanged (hash %s)", key, desired_hash)
        elif last_applied:
            METRICS.drift_detected_total.labels(resource_type=self.kind.value).inc()
            LOGGER.info("Cluster %s spec changed: %s -> %s", key, last_applied, desired_hash)
        else:
            LOGGER.info("Cluster %s has no applied hash yet, re-applying", key)

        await self.resources.apply_config_map(cluster)
        await self.resources.apply_headless_service(cluster)
        await self.resources.apply_client_service(cluster)
        await self.resources.apply_disruption_budget(cluster)
        await self.resources.apply_network_policy(cluster)
        await self.resources.apply_secrets(cluster)

        if reapply:
            await self.status.set_cluster_phase(
                cluster, ClusterPhase.OPERATION_IN_PROGRESS, message="Applying spec change"
            )
            await self.resources.apply_workload(cluster)
            await self._refresh_workload(key)
            await self.status.set_last_applied_hash(cluster, desired_hash)
            self.readiness.watch(cluster)
            return

        if not last_applied:
            await self.status.set_last_applied_hash(cluster, desired_hash)
        await self._sync_phase(cluster, key)

    async def _sync_phase(self, cluster: dict[str, Any], key: ResourceKey) -> None:
        if status_of(cluster).get("qdrantStatus") == ClusterPhase.HEALTHY.value:
            return
        try:
            stateful_set = await self.platform.read_stateful_set(key.namespace, key.name)
        except ApiException as exc:
            if is_not_found(exc):
                self.workloads.delete(key)
            LOGGER.warning("Could not verify readiness of cluster %s: %s", key, exc.reason)
            return
        self.workloads.set(key, stateful_set)
        phase = ClusterPhase.HEALTHY if is_fully_ready(stateful_set) else ClusterPhase.OPERATION_IN_PROGRESS
        await self.status.set_cluster_phase(cluster, phase, message=ready_message(stateful_set))

    async def _finalize(self, cluster: dict[str, Any], key: ResourceKey) -> None:
        self.readiness.cancel(key)
        if has_finalizer(cluster):
            LOGGER.info("Cluster %s is being deleted, releasing its workload", key)
            await self.cleanup.finalize(self.kind, cluster, lambda: self.resources.scale_down(key))
        self.retries.cancel(self.kind, key)
        self.workloads.delete(key)
        self.clusters.delete(key)

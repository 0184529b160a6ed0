from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from qdrant_controller.src.cache import StateCache
from qdrant_controller.src.cleanup import DeletionCleanup
from qdrant_controller.src.config import OperatorSettings
from qdrant_controller.src.events import EventHandler, ResourceVersionTracker
from qdrant_controller.src.gate import SchedulingGate
from qdrant_controller.src.jobs import SnapshotJobs
from qdrant_controller.src.models import ResourceKind
from qdrant_controller.src.platform import PlatformOperations
from qdrant_controller.src.qdrant import DatabaseOperations
from qdrant_controller.src.readiness import ReadinessWaiter
from qdrant_controller.src.reconcilers.cluster import ClusterReconciler
from qdrant_controller.src.reconcilers.collection import CollectionReconciler
from qdrant_controller.src.reconcilers.restore import RestoreReconciler
from qdrant_controller.src.resources import ClusterResources
from qdrant_controller.src.retry import RetryQueue
from qdrant_controller.src.scheduler import ReconcileScheduler
from qdrant_controller.src.status import StatusWriter
from qdrant_controller.src.sweeper import PeriodicSweeper

LOGGER = logging.getLogger(__name__)


@dataclass
class ReconcileContext:
    """All in-memory operator state, built once per process (or per test)."""

    settings: OperatorSettings
    platform: PlatformOperations
    database: DatabaseOperations
    gate: SchedulingGate
    scheduler: ReconcileScheduler
    retries: RetryQueue
    status: StatusWriter
    readiness: ReadinessWaiter
    versions: ResourceVersionTracker
    clusters: StateCache[dict[str, Any]]
    collections: StateCache[dict[str, Any]]
    restores: StateCache[dict[str, Any]]
    workloads: StateCache[Any]
    events: EventHandler
    sweeper: PeriodicSweeper
    cluster_reconciler: ClusterReconciler
    collection_reconciler: CollectionReconciler
    restore_reconciler: RestoreReconciler

    @classmethod
    def build(
        cls,
        settings: OperatorSettings,
        platform: PlatformOperations,
        database: DatabaseOperations,
        gate: SchedulingGate | None = None,
    ) -> ReconcileContext:
        gate = gate or SchedulingGate()
        scheduler = ReconcileScheduler(gate, debounce_seconds=settings.debounce_seconds)
        retries = RetryQueue(
            scheduler.schedule,
            base_delay_seconds=settings.retry_base_seconds,
            max_delay_seconds=settings.retry_max_seconds,
        )
        versions = ResourceVersionTracker()
        status = StatusWriter(platform, versions=versions)
        clusters: StateCache[dict[str, Any]] = StateCache("cluster")
        collections: StateCache[dict[str, Any]] = StateCache("collection")
        restores: StateCache[dict[str, Any]] = StateCache("restore")
        workloads: StateCache[Any] = StateCache("statefulset")
        readiness = ReadinessWaiter(
            platform,
            status,
            workloads,
            interval_seconds=settings.readiness_retry_seconds,
            max_attempts=settings.readiness_poll_attempts,
        )
        jobs = SnapshotJobs(platform, image=settings.job_image)
        cleanup = DeletionCleanup(platform, status, force_after=settings.cleanup_force_after_attempts)

        cluster_reconciler = ClusterReconciler(
            platform,
            ClusterResources(platform),
            status,
            retries,
            readiness,
            clusters,
            workloads,
            cleanup,
        )
        collection_reconciler = CollectionReconciler(
            platform,
            database,
            jobs,
            status,
            retries,
            collections,
            workloads,
            cleanup,
            readiness_retry_seconds=settings.readiness_retry_seconds,
        )
        restore_reconciler = RestoreReconciler(
            platform,
            jobs,
            status,
            poll_interval_seconds=settings.restore_poll_interval_seconds,
            max_polls=settings.restore_max_polls,
        )
        scheduler.bind(
            {
                ResourceKind.CLUSTER: cluster_reconciler,
                ResourceKind.COLLECTION: collection_reconciler,
                ResourceKind.RESTORE: restore_reconciler,
            }
        )

        events = EventHandler(
            scheduler,
            {
                ResourceKind.CLUSTER: clusters,
                ResourceKind.COLLECTION: collections,
                ResourceKind.RESTORE: restores,
            },
            versions,
        )
        sweeper = PeriodicSweeper(
            platform,
            scheduler,
            gate,
            interval_seconds=settings.periodic_reconcile_seconds,
            namespace=settings.watch_namespace,
        )
        return cls(
            settings=settings,
            platform=platform,
            database=database,
            gate=gate,
            scheduler=scheduler,
            retries=retries,
            status=status,
            readiness=readiness,
            versions=versions,
            clusters=clusters,
            collections=collections,
            restores=restores,
            workloads=workloads,
            events=events,
            sweeper=sweeper,
            cluster_reconciler=cluster_reconciler,
            collection_reconciler=collection_reconciler,
            restore_reconciler=restore_reconciler,
        )

    def snapshot(self) -> dict[str, Any]:
        return {
            "leader": self.gate.is_leader,
            "shuttingDown": self.gate.shutting_down,
            "pending": self.scheduler.pending_keys,
            "active": self.scheduler.active_keys,
            "retrying": self.retries.snapshot(),
        }

    def on_leadership_lost(self) -> None:
        dropped = self.scheduler.cancel_pending()
        self.retries.close()
        LOGGER.info("Leadership lost, dropped %d scheduled reconcile(s)", dropped)

    async def shutdown(self, grace_seconds: float = 30.0) -> None:
        """Stop scheduling, let running passes finish, then release resources."""
        self.gate.begin_shutdown()
        self.sweeper.stop()
        self.scheduler.cancel_pending()
        self.retries.close()
        await self.readiness.close()
        await self.scheduler.drain(grace_seconds)
        close = getattr(self.database, "aclose", None)
        if close is not None:
            await close()
        LOGGER.info("Reconcile context shut down")

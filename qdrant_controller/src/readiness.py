from __future__ import annotations

import asyncio
import logging
from typing import Any

from kubernetes.client import ApiException

from qdrant_controller.src.cache import StateCache
from qdrant_controller.src.errors import PollTimeout, is_not_found
from qdrant_controller.src.models import ClusterPhase, ResourceKey
from qdrant_controller.src.platform import PlatformOperations
from qdrant_controller.src.status import StatusWriter
from qdrant_controller.src.waiting import poll_until

LOGGER = logging.getLogger(__name__)


def replica_counts(stateful_set: Any) -> tuple[int, int, int, int]:
    """Return ``(desired, available, updated, ready)`` replica counts of a StatefulSet."""
    spec = getattr(stateful_set, "spec", None)
    status = getattr(stateful_set, "status", None)
    desired = getattr(spec, "replicas", None)
    if desired is None:
        desired = 1
    return (
        int(desired),
        int(getattr(status, "available_replicas", None) or 0),
        int(getattr(status, "updated_replicas", None) or 0),
        int(getattr(status, "ready_replicas", None) or 0),
    )


def is_rolled_out(stateful_set: Any) -> bool:
    desired, available, updated, _ = replica_counts(stateful_set)
    return available >= desired and updated >= desired


def is_fully_ready(stateful_set: Any) -> bool:
    desired, available, updated, ready = replica_counts(stateful_set)
    return available >= desired and updated >= desired and ready >= desired


def ready_message(stateful_set: Any) -> str:
    desired, _, _, ready = replica_counts(stateful_set)
    return f"{ready}/{desired} replicas ready"


class _WorkloadGone(Exception):
    pass


class ReadinessWaiter:
    """Background waits that move a cluster out of Pending once its StatefulSet rolls out.

    One wait per cluster; starting a new one cancels the previous. Waits are
    best effort: timeouts and API errors are logged, and the periodic sweep
    picks the cluster up again.
    """

    def __init__(
        self,
        platform: PlatformOperations,
        status: StatusWriter,
        workloads: StateCache[Any],
        *,
        interval_seconds: float = 5.0,
        max_attempts: int = 120,
    ) -> None:
        self.platform = platform
        self.status = status
        self.workloads = workloads
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts
        self._waits: dict[ResourceKey, asyncio.Task[None]] = {}

    def watch(self, cluster: dict[str, Any]) -> asyncio.Task[None]:
        key = ResourceKey.from_object(cluster)
        self.cancel(key)
        task = asyncio.get_running_loop().create_task(
            self._wait(key, cluster), name=f"readiness-{key}"
        )
        self._waits[key] = task
        task.add_done_callback(lambda done, key=key: self._forget(key, done))
        return task

    def _forget(self, key: ResourceKey, task: asyncio.Task[None]) -> None:
        if self._waits.get(key) is task:
            del self._waits[key]

    def is_waiting(self, key: ResourceKey) -> bool:
        return key in self._waits

    def cancel(self, key: ResourceKey) -> None:
        task = self._waits.pop(key, None)
        if task is not None:
            task.cancel()

    async def close(self) -> None:
        tasks = list(self._waits.values())
        self._waits.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _check(self, key: ResourceKey) -> Any | None:
        try:
            stateful_set = await self.platform.read_stateful_set(key.namespace, key.name)
        except ApiException as exc:
            if is_not_found(exc):
                self.workloads.delete(key)
                raise _WorkloadGone from exc
            LOGGER.warning("Could not read StatefulSet %s while waiting for readiness: %s", key, exc.reason)
            return None
        self.workloads.set(key, stateful_set)
        if is_rolled_out(stateful_set):
            return stateful_set
        LOGGER.debug("StatefulSet %s not rolled out yet (%s)", key, ready_message(stateful_set))
        return None

    async def _wait(self, key: ResourceKey, cluster: dict[str, Any]) -> None:
        try:
            stateful_set = await poll_until(
                lambda: self._check(key),
                interval=self.interval_seconds,
                max_attempts=self.max_attempts,
                description=f"StatefulSet {key} rollout",
            )
        except _WorkloadGone:
            LOGGER.info("StatefulSet %s disappeared, stopping readiness wait", key)
            return
        except PollTimeout as exc:
            LOGGER.warning("%s; leaving status to the periodic sweep", exc)
            return

        phase = ClusterPhase.HEALTHY if is_fully_ready(stateful_set) else ClusterPhase.OPERATION_IN_PROGRESS
        try:
            await self.status.set_cluster_phase(cluster, phase, message=ready_message(stateful_set))
        except ApiException as exc:
            LOGGER.warning("Could not record %s for cluster %s: %s", phase.value, key, exc.reason)

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from qdrant_controller.src.config import LeaderElectionSettings
from qdrant_controller.src.errors import is_conflict, is_not_found
from qdrant_controller.src.gate import SchedulingGate
from qdrant_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


def lease_is_live(spec: V1LeaseSpec, now: datetime, default_duration: int) -> bool:
    """True while the holder recorded in *spec* is still inside its lease window."""
    if spec.renew_time is None:
        return False
    renewed = spec.renew_time if spec.renew_time.tzinfo else spec.renew_time.replace(tzinfo=UTC)
    duration = spec.lease_duration_seconds or default_duration
    return (now - renewed).total_seconds() < duration


class LeaseLeaderElector:
    """Holds a ``coordination.k8s.io/v1`` Lease and mirrors ownership into the scheduling gate.

    Only the replica whose identity is recorded in the Lease schedules
    reconciles. A holder that cannot renew keeps leading until the renew
    deadline passes, then closes the gate; any other replica may claim the
    Lease once ``renewTime + leaseDurationSeconds`` lies in the past.
    Conflicting writes (409) simply lose the round.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        settings: LeaderElectionSettings,
        gate: SchedulingGate,
    ) -> None:
        if settings.renew_deadline_seconds >= settings.lease_duration_seconds:
            raise ValueError("renew deadline must be shorter than the lease duration")
        if settings.retry_period_seconds >= settings.renew_deadline_seconds:
            raise ValueError("retry period must be shorter than the renew deadline")
        self.api = coordination_api
        self.settings = settings
        self.gate = gate

    @property
    def is_leader(self) -> bool:
        return self.gate.is_leader

    def _read(self) -> V1Lease | None:
        return self.api.read_namespaced_lease(
            name=self.settings.lease_name, namespace=self.settings.namespace
        )

    def _create(self, now: datetime) -> bool:
        body = V1Lease(
            metadata=V1ObjectMeta(name=self.settings.lease_name, namespace=self.settings.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.settings.identity,
                lease_duration_seconds=self.settings.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
            ),
        )
        try:
            self.api.create_namespaced_lease(namespace=self.settings.namespace, body=body)
        except ApiException as exc:
            if not is_conflict(exc):
                LOGGER.warning("Could not create lease %s: %s", self.settings.lease_name, exc.reason)
            return False
        return True

    def _claim(self, lease: V1Lease, now: datetime) -> bool:
        spec = lease.spec or V1LeaseSpec()
        if spec.holder_identity != self.settings.identity or spec.acquire_time is None:
            spec.acquire_time = now
        spec.holder_identity = self.settings.identity
        spec.renew_time = now
        spec.lease_duration_seconds = self.settings.lease_duration_seconds
        lease.spec = spec
        try:
            self.api.replace_namespaced_lease(
                name=self.settings.lease_name, namespace=self.settings.namespace, body=lease
            )
        except ApiException as exc:
            if not is_conflict(exc):
                LOGGER.warning("Could not update lease %s: %s", self.settings.lease_name, exc.reason)
            return False
        return True

    def try_acquire_or_renew(self) -> bool:
        now = datetime.now(UTC)
        try:
            lease = self._read()
        except ApiException as exc:
            if is_not_found(exc):
                return self._create(now)
            LOGGER.warning("Could not read lease %s: %s", self.settings.lease_name, exc.reason)
            return False

        spec = lease.spec
        if (
            spec is not None
            and spec.holder_identity
            and spec.holder_identity != self.settings.identity
            and lease_is_live(spec, now, self.settings.lease_duration_seconds)
        ):
            return False
        return self._claim(lease, now)

    def release(self) -> None:
        try:
            lease = self._read()
            if lease.spec is None or lease.spec.holder_identity != self.settings.identity:
                return
            lease.spec.holder_identity = None
            self.api.replace_namespaced_lease(
                name=self.settings.lease_name, namespace=self.settings.namespace, body=lease
            )
            LOGGER.info("Released leader lease %s", self.settings.lease_name)
        except ApiException as exc:
            LOGGER.warning("Could not release lease %s: %s", self.settings.lease_name, exc.reason)

    def _became_leader(self, waited_since: float, on_started: Callable[[], None] | None) -> None:
        self.gate.leader.set()
        LOGGER.info("Became leader (identity=%s)", self.settings.identity)
        METRICS.leader.set(1)
        METRICS.leader_transitions_total.labels(transition="acquired").inc()
        METRICS.leader_acquire_latency_seconds.observe(time.monotonic() - waited_since)
        if on_started is not None:
            on_started()

    def _lost_leadership(self, on_stopped: Callable[[], None] | None) -> None:
        self.gate.leader.clear()
        METRICS.leader.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()
        if on_stopped is not None:
            on_stopped()

    def run(
        self,
        stop_event: threading.Event,
        on_started_leading: Callable[[], None] | None = None,
        on_stopped_leading: Callable[[], None] | None = None,
    ) -> None:
        """Campaign for and renew the lease until *stop_event* is set."""
        LOGGER.info(
            "Starting leader election for lease %s/%s (identity=%s)",
            self.settings.namespace,
            self.settings.lease_name,
            self.settings.identity,
        )
        METRICS.leader.set(0)
        waited_since = time.monotonic()
        last_renewal = waited_since

        while not stop_event.is_set():
            try:
                held = self.try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Leader election round failed")
                held = False

            if held:
                last_renewal = time.monotonic()
                if not self.is_leader:
                    self._became_leader(waited_since, on_started_leading)
            elif self.is_leader:
                silent_for = time.monotonic() - last_renewal
                if silent_for >= self.settings.renew_deadline_seconds:
                    LOGGER.warning("Lost leader lease after %.2fs without renewal", silent_for)
                    waited_since = time.monotonic()
                    self._lost_leadership(on_stopped_leading)
                else:
                    LOGGER.warning(
                        "Lease renewal failed, still leading for up to %ss (%.2fs since last renewal)",
                        self.settings.renew_deadline_seconds,
                        silent_for,
                    )
            stop_event.wait(timeout=self.settings.retry_period_seconds)

        if self.is_leader:
            self.release()
            self._lost_leadership(on_stopped_leading)

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(name: str, default: float, *, minimum: float | None = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be a number") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum:g}, got: {value:g}")
    return value


def parse_bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def default_identity() -> str:
    return os.getenv("POD_NAME") or os.getenv("HOSTNAME") or socket.gethostname()


@dataclass(frozen=True)
class LeaderElectionSettings:
    enabled: bool = True
    namespace: str = "default"
    lease_name: str = "qdrant-operator-leader"
    identity: str = ""
    lease_duration_seconds: int = 15
    renew_deadline_seconds: int = 10
    retry_period_seconds: int = 2


@dataclass(frozen=True)
class OperatorSettings:
    """Runtime knobs of the operator, read once at start-up."""

    watch_namespace: str | None = None
    leader_election: LeaderElectionSettings = field(default_factory=LeaderElectionSettings)
    health_port: int = 8080
    debounce_seconds: float = 1.0
    periodic_reconcile_seconds: float = 300.0
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 60.0
    readiness_retry_seconds: float = 5.0
    readiness_poll_attempts: int = 120
    database_probe_timeout_seconds: float = 5.0
    database_request_timeout_seconds: float = 30.0
    restore_poll_interval_seconds: float = 5.0
    restore_max_polls: int = 120
    cleanup_force_after_attempts: int = 10
    job_image: str = "qdrant/qdrant-backup:latest"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> OperatorSettings:
        """Build settings from environment variables.

        ``WATCH_NAMESPACE`` empty or unset means every namespace. The lease
        lives in ``POD_NAMESPACE`` unless ``LEADER_ELECTION_NAMESPACE`` says
        otherwise.
        """
        watch_namespace = (os.getenv("WATCH_NAMESPACE") or "").strip() or None
        pod_namespace = (os.getenv("POD_NAMESPACE") or "").strip() or watch_namespace or "default"

        leader_election = LeaderElectionSettings(
            enabled=parse_bool_env("LEADER_ELECTION_ENABLED", default=True),
            namespace=os.getenv("LEADER_ELECTION_NAMESPACE", pod_namespace),
            lease_name=os.getenv("LEADER_ELECTION_LEASE_NAME", "qdrant-operator-leader"),
            identity=os.getenv("LEADER_ELECTION_IDENTITY") or default_identity(),
            lease_duration_seconds=env_int("LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1),
            renew_deadline_seconds=env_int("LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1),
            retry_period_seconds=env_int("LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1),
        )
        if leader_election.renew_deadline_seconds >= leader_election.lease_duration_seconds:
            raise ValueError(
                "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
                "LEADER_ELECTION_LEASE_DURATION_SECONDS"
            )
        if leader_election.retry_period_seconds >= leader_election.renew_deadline_seconds:
            raise ValueError(
                "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
                "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
            )

        retry_base_seconds = env_float("RETRY_BASE_SECONDS", 1.0, minimum=0)
        retry_max_seconds = env_float("RETRY_MAX_SECONDS", 60.0, minimum=0)
        if retry_max_seconds < retry_base_seconds:
            raise ValueError("RETRY_MAX_SECONDS must be >= RETRY_BASE_SECONDS")

        return cls(
            watch_namespace=watch_namespace,
            leader_election=leader_election,
            health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535),
            debounce_seconds=env_float("DEBOUNCE_SECONDS", 1.0, minimum=0),
            periodic_reconcile_seconds=env_float("PERIODIC_RECONCILE_SECONDS", 300.0, minimum=1),
            retry_base_seconds=retry_base_seconds,
            retry_max_seconds=retry_max_seconds,
            readiness_retry_seconds=env_float("READINESS_RETRY_SECONDS", 5.0, minimum=0),
            readiness_poll_attempts=env_int("READINESS_POLL_ATTEMPTS", 120, minimum=1),
            database_probe_timeout_seconds=env_float(
                "DATABASE_PROBE_TIMEOUT_SECONDS", 5.0, minimum=0.1
            ),
            database_request_timeout_seconds=env_float(
                "DATABASE_REQUEST_TIMEOUT_SECONDS", 30.0, minimum=0.1
            ),
            restore_poll_interval_seconds=env_float("RESTORE_POLL_INTERVAL_SECONDS", 5.0, minimum=0),
            restore_max_polls=env_int("RESTORE_MAX_POLLS", 120, minimum=1),
            cleanup_force_after_attempts=env_int("CLEANUP_FORCE_DELETE_AFTER_ATTEMPTS", 10, minimum=1),
            job_image=os.getenv("JOB_IMAGE", "qdrant/qdrant-backup:latest"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import signal
import threading

from qdrant_controller.src.config import OperatorSettings
from qdrant_controller.src.context import ReconcileContext
from qdrant_controller.src.gate import SchedulingGate
from qdrant_controller.src.health import start_health_server
from qdrant_controller.src.kube import KubeClients, build_clients, load_kube_configuration
from qdrant_controller.src.leader import LeaseLeaderElector
from qdrant_controller.src.metrics import METRICS
from qdrant_controller.src.models import ResourceKind
from qdrant_controller.src.platform import KubernetesPlatform
from qdrant_controller.src.qdrant import QdrantClient
from qdrant_controller.src.watch import CustomResourceWatcher

LOGGER = logging.getLogger(__name__)

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key|read_only_api_key)\b[\"']?\s*[:=]\s*[\"']?)([^\s,;\"']+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    for pattern, replacement in _REDACTION_RULES:
        value = pattern.sub(replacement, value)
    return value


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with credentials scrubbed from message and traceback."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(entry)


def configure_logging(level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level, logging.INFO))


async def run_operator(
    settings: OperatorSettings, clients: KubeClients, shutdown_event: threading.Event
) -> None:
    """Run watches, leader election, sweeper and health server until *shutdown_event* is set."""
    loop = asyncio.get_running_loop()
    platform = KubernetesPlatform(clients)
    database = QdrantClient(
        platform,
        probe_timeout_seconds=settings.database_probe_timeout_seconds,
        request_timeout_seconds=settings.database_request_timeout_seconds,
    )
    gate = SchedulingGate()
    context = ReconcileContext.build(settings, platform, database, gate=gate)

    def deliver(kind: ResourceKind, event_type: str, obj: dict) -> None:
        loop.call_soon_threadsafe(context.events.handle, kind, event_type, obj)

    watchers = [
        CustomResourceWatcher(clients.custom, kind, deliver, namespace=settings.watch_namespace)
        for kind in ResourceKind
    ]
    threads: list[threading.Thread] = []

    def watch_thread(watcher: CustomResourceWatcher) -> None:
        try:
            watcher.run_forever(stop_event=shutdown_event)
        except Exception:
            LOGGER.exception("Watch thread for %s crashed", watcher.kind.plural)
        if not shutdown_event.is_set():
            LOGGER.error("Watch for %s stopped unexpectedly; shutting down", watcher.kind.plural)
            shutdown_event.set()

    for watcher in watchers:
        thread = threading.Thread(
            target=watch_thread, args=(watcher,), name=f"watch-{watcher.kind.value}", daemon=True
        )
        thread.start()
        threads.append(thread)

    election = settings.leader_election
    if election.enabled:
        elector = LeaseLeaderElector(clients.coordination, election, gate)
        thread = threading.Thread(
            target=elector.run,
            kwargs={
                "stop_event": shutdown_event,
                "on_started_leading": lambda: loop.call_soon_threadsafe(context.sweeper.trigger),
                "on_stopped_leading": lambda: loop.call_soon_threadsafe(context.on_leadership_lost),
            },
            name="leader-election",
            daemon=True,
        )
        thread.start()
        threads.append(thread)
    else:
        gate.leader.set()
        METRICS.leader.set(1)
        context.sweeper.trigger()

    health_server = start_health_server(
        ready_check=lambda: all(w.ready.is_set() for w in watchers),
        port=settings.health_port,
        leader=gate.leader if election.enabled else None,
        snapshot=context.snapshot,
    )

    sweeper_task = loop.create_task(context.sweeper.run(), name="periodic-sweeper")
    try:
        await loop.run_in_executor(None, shutdown_event.wait)
    finally:
        LOGGER.info("Shutting down operator")
        for watcher in watchers:
            watcher.request_stop()
        await context.shutdown()
        await asyncio.gather(sweeper_task, return_exceptions=True)
        for thread in threads:
            thread.join(timeout=10)
        health_server.shutdown()


def main() -> None:
    """Operator entrypoint: configure logging, connect to Kubernetes and run until signalled."""
    settings = OperatorSettings.from_env()
    configure_logging(settings.log_level)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    clients = build_clients()

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    asyncio.run(run_operator(settings, clients, shutdown_event))
    LOGGER.info("Operator stopped")


if __name__ == "__main__":
    main()

from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CustomObjectsApi

from qdrant_controller.src.events import ADDED
from qdrant_controller.src.metrics import METRICS
from qdrant_controller.src.models import GROUP, VERSION, ResourceKind

LOGGER = logging.getLogger(__name__)

EventSink = Callable[[ResourceKind, str, dict[str, Any]], None]

_MAX_BACKOFF_SECONDS = 30
_WATCH_TIMEOUT_SECONDS = 300


class _AccessDenied(Exception):
    pass


def _jittered(seconds: float) -> float:
    return seconds * (0.5 + random.random())  # noqa: S311


class CustomResourceWatcher:
    """List-then-watch loop for one custom resource kind, run on its own thread.

    Every listed object is replayed to *sink* as ADDED so the handler's
    resourceVersion dedup decides what actually needs work. A ``410 Gone``
    triggers a fresh list; ``401``/``403`` end the loop because retrying will
    not fix RBAC.
    """

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        kind: ResourceKind,
        sink: EventSink,
        *,
        namespace: str | None = None,
        watch_timeout_seconds: int = _WATCH_TIMEOUT_SECONDS,
    ) -> None:
        self.custom_api = custom_api
        self.kind = kind
        self.sink = sink
        self.namespace = namespace
        self.watch_timeout_seconds = watch_timeout_seconds
        self.ready = threading.Event()
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._active_watcher: watch.Watch | None = None

    def _list_call(self) -> tuple[Callable[..., Any], tuple[Any, ...]]:
        if self.namespace:
            return self.custom_api.list_namespaced_custom_object, (
                GROUP,
                VERSION,
                self.namespace,
                self.kind.plural,
            )
        return self.custom_api.list_cluster_custom_object, (GROUP, VERSION, self.kind.plural)

    def request_stop(self) -> None:
        self._stop.set()
        with self._lock:
            active = self._active_watcher
        if active is not None:
            active.stop()

    def _relist(self) -> str | None:
        fn, args = self._list_call()
        try:
            listing = fn(*args)
        except ApiException as exc:
            if exc.status in {401, 403}:
                raise _AccessDenied(exc.status) from exc
            raise
        for item in listing.get("items") or []:
            self.sink(self.kind, ADDED, item)
        return (listing.get("metadata") or {}).get("resourceVersion")

    def _deny(self, stage: str, status: Any) -> None:
        LOGGER.error(
            "Kubernetes API denied %s of %s (status=%s). "
            "Check operator RBAC and service account permissions.",
            stage,
            self.kind.plural,
            status,
        )
        METRICS.watch_errors_total.labels(resource_type=self.kind.value).inc()
        self.ready.clear()

    def run_forever(self, stop_event: threading.Event | None = None) -> None:
        stop = stop_event or threading.Event()

        def stopping() -> bool:
            return stop.is_set() or self._stop.is_set()

        resource_version: str | None = None
        backoff = 1
        while not stopping():
            try:
                resource_version = self._relist()
                self.ready.set()
                LOGGER.info("Watching %s from resourceVersion %s", self.kind.plural, resource_version)
                break
            except _AccessDenied as exc:
                self._deny("list", exc.args[0])
                return
            except Exception:
                LOGGER.exception("Initial list of %s failed", self.kind.plural)
                METRICS.watch_errors_total.labels(resource_type=self.kind.value).inc()
            stop.wait(timeout=_jittered(backoff))
            backoff = min(backoff * 2, _MAX_BACKOFF_SECONDS)

        backoff = 1
        streams = 0
        while not stopping():
            watcher = watch.Watch()
            with self._lock:
                self._active_watcher = watcher
            try:
                if streams:
                    METRICS.watch_reconnects_total.labels(resource_type=self.kind.value).inc()
                streams += 1
                fn, args = self._list_call()
                for event in watcher.stream(
                    fn,
                    *args,
                    resource_version=resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                ):
                    if stopping():
                        break
                    obj = event.get("object")
                    event_type = str(event.get("type", ""))
                    if not isinstance(obj, dict) or event_type == "ERROR":
                        continue
                    version = (obj.get("metadata") or {}).get("resourceVersion")
                    if version:
                        resource_version = version
                    self.sink(self.kind, event_type, obj)
                backoff = 1
            except ApiException as exc:
                if exc.status == 410:
                    LOGGER.warning("Watch of %s expired, re-listing", self.kind.plural)
                    try:
                        resource_version = self._relist()
                    except _AccessDenied as denied:
                        self._deny("re-list", denied.args[0])
                        return
                    except Exception:
                        LOGGER.exception("Re-list of %s after 410 failed", self.kind.plural)
                        METRICS.watch_errors_total.labels(resource_type=self.kind.value).inc()
                        resource_version = None
                    continue
                if exc.status in {401, 403}:
                    self._deny("watch", exc.status)
                    return
                LOGGER.exception("Watch of %s failed", self.kind.plural)
                METRICS.watch_errors_total.labels(resource_type=self.kind.value).inc()
                stop.wait(timeout=_jittered(backoff))
                backoff = min(backoff * 2, _MAX_BACKOFF_SECONDS)
            except Exception:
                LOGGER.exception("Unexpected error watching %s", self.kind.plural)
                METRICS.watch_errors_total.labels(resource_type=self.kind.value).inc()
                stop.wait(timeout=_jittered(backoff))
                backoff = min(backoff * 2, _MAX_BACKOFF_SECONDS)
            finally:
                watcher.stop()
                with self._lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()

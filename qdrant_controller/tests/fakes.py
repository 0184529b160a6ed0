from __future__ import annotations

import base64
import copy
from collections import defaultdict
from types import SimpleNamespace
from typing import Any

from kubernetes.client import ApiException
from prometheus_client import REGISTRY

from qdrant_controller.src.models import GROUP, VERSION, ResourceKind
from qdrant_controller.src.qdrant import QdrantConnection


def sample(name: str, **labels: str) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


def make_cluster(
    name: str = "vectors",
    namespace: str = "default",
    *,
    replicas: int = 3,
    image: str = "qdrant/qdrant:v1.9.0",
    status: dict[str, Any] | None = None,
    generation: int = 1,
    finalizers: list[str] | None = None,
    **spec: Any,
) -> dict[str, Any]:
    return {
        "apiVersion": f"{GROUP}/{VERSION}",
        "kind": "QdrantCluster",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": f"uid-{name}",
            "generation": generation,
            "resourceVersion": "1",
            "finalizers": list(finalizers or []),
        },
        "spec": {"replicas": replicas, "image": image, **spec},
        "status": dict(status or {}),
    }


def make_collection(
    name: str = "docs",
    namespace: str = "default",
    *,
    cluster: str = "vectors",
    vector_size: int = 384,
    status: dict[str, Any] | None = None,
    generation: int = 1,
    finalizers: list[str] | None = None,
    **spec: Any,
) -> dict[str, Any]:
    return {
        "apiVersion": f"{GROUP}/{VERSION}",
        "kind": "QdrantCollection",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": f"uid-{name}",
            "generation": generation,
            "resourceVersion": "1",
            "finalizers": list(finalizers or []),
        },
        "spec": {"cluster": cluster, "vectorSize": vector_size, **spec},
        "status": dict(status or {}),
    }


def make_restore(
    name: str = "docs-restore",
    namespace: str = "default",
    *,
    collection: str = "docs",
    cluster: str = "vectors",
    backup_id: str = "backup-20240101",
    status: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "apiVersion": f"{GROUP}/{VERSION}",
        "kind": "QdrantCollectionRestore",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": f"uid-{name}",
            "generation": 1,
            "resourceVersion": "1",
        },
        "spec": {"collection": collection, "cluster": cluster, "backupId": backup_id},
        "status": dict(status or {}),
    }


def make_stateful_set(replicas: int = 3, available: int = 0, updated: int = 0, ready: int = 0) -> SimpleNamespace:
    return SimpleNamespace(
        spec=SimpleNamespace(replicas=replicas),
        status=SimpleNamespace(
            available_replicas=available,
            updated_replicas=updated,
            ready_replicas=ready,
        ),
    )


def make_job(*, complete: bool = False, failed: bool = False, succeeded: int = 0) -> SimpleNamespace:
    conditions = []
    if complete:
        conditions.append(SimpleNamespace(type="Complete", status="True"))
    if failed:
        conditions.append(SimpleNamespace(type="Failed", status="True"))
    return SimpleNamespace(status=SimpleNamespace(conditions=conditions or None, succeeded=succeeded))


def _not_found() -> ApiException:
    return ApiException(status=404, reason="Not Found")


class FakePlatform:
    """In-memory stand-in for KubernetesPlatform.

    Custom objects are stored as dicts and copied on the way in and out;
    every write bumps ``metadata.resourceVersion`` like the API server does.
    ``fail(method, exc)`` queues an exception for the next call of *method*.
    """

    def __init__(self) -> None:
        self.objects: dict[tuple[ResourceKind, str, str], dict[str, Any]] = {}
        self.stateful_sets: dict[tuple[str, str], SimpleNamespace] = {}
        self.secrets: dict[tuple[str, str], SimpleNamespace] = {}
        self.jobs: dict[tuple[str, str], SimpleNamespace] = {}
        self.applied: list[dict[str, Any]] = []
        self.created_jobs: list[dict[str, Any]] = []
        self.stateful_set_patches: list[tuple[str, dict[str, Any]]] = []
        self.status_writes: list[tuple[ResourceKind, str, dict[str, Any]]] = []
        self.object_patches: list[tuple[ResourceKind, str, dict[str, Any]]] = []
        self.calls: list[str] = []
        # state given to Jobs created from here on
        self.new_job_state: SimpleNamespace = make_job()
        self._failures: dict[str, list[BaseException]] = defaultdict(list)
        self._version = 100

    def fail(self, method: str, exc: BaseException, times: int = 1) -> None:
        self._failures[method].extend([exc] * times)

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        if self._failures.get(method):
            raise self._failures[method].pop(0)

    def _bump(self, obj: dict[str, Any]) -> None:
        self._version += 1
        obj["metadata"]["resourceVersion"] = str(self._version)

    def add(self, kind: ResourceKind, obj: dict[str, Any]) -> dict[str, Any]:
        stored = copy.deepcopy(obj)
        self._bump(stored)
        meta = stored["metadata"]
        self.objects[(kind, meta["namespace"], meta["name"])] = stored
        return copy.deepcopy(stored)

    def stored(self, kind: ResourceKind, name: str, namespace: str = "default") -> dict[str, Any]:
        return self.objects[(kind, namespace, name)]

    def _lookup(self, kind: ResourceKind, namespace: str, name: str) -> dict[str, Any]:
        try:
            return self.objects[(kind, namespace, name)]
        except KeyError:
            raise _not_found() from None

    async def get_custom_object(self, kind: ResourceKind, namespace: str, name: str) -> dict[str, Any]:
        self._enter("get_custom_object")
        return copy.deepcopy(self._lookup(kind, namespace, name))

    async def get_custom_object_status(
        self, kind: ResourceKind, namespace: str, name: str
    ) -> dict[str, Any]:
        self._enter("get_custom_object_status")
        return copy.deepcopy(self._lookup(kind, namespace, name))

    async def list_custom_objects(
        self, kind: ResourceKind, namespace: str | None = None
    ) -> list[dict[str, Any]]:
        self._enter(f"list_custom_objects:{kind.value}")
        return [
            copy.deepcopy(obj)
            for (k, ns, _), obj in self.objects.items()
            if k is kind and (namespace is None or ns == namespace)
        ]

    async def replace_custom_object_status(
        self, kind: ResourceKind, namespace: str, name: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        self._enter("replace_custom_object_status")
        current = self._lookup(kind, namespace, name)
        if body["metadata"].get("resourceVersion") != current["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")
        current["status"] = copy.deepcopy(body["status"])
        self._bump(current)
        self.status_writes.append((kind, name, copy.deepcopy(current["status"])))
        return copy.deepcopy(current)

    async def patch_custom_object_status(
        self, kind: ResourceKind, namespace: str, name: str, patch: dict[str, Any]
    ) -> dict[str, Any]:
        self._enter("patch_custom_object_status")
        current = self._lookup(kind, namespace, name)
        current.setdefault("status", {}).update(copy.deepcopy(patch.get("status") or {}))
        self._bump(current)
        self.status_writes.append((kind, name, copy.deepcopy(current["status"])))
        return copy.deepcopy(current)

    async def patch_custom_object(
        self, kind: ResourceKind, namespace: str, name: str, patch: dict[str, Any]
    ) -> dict[str, Any]:
        self._enter("patch_custom_object")
        current = self._lookup(kind, namespace, name)
        if "finalizers" in (patch.get("metadata") or {}):
            current["metadata"]["finalizers"] = list(patch["metadata"]["finalizers"])
        if "status" in patch:
            current.setdefault("status", {}).update(copy.deepcopy(patch["status"]))
        self._bump(current)
        self.object_patches.append((kind, name, copy.deepcopy(patch)))
        return copy.deepcopy(current)

    async def read_stateful_set(self, namespace: str, name: str) -> Any:
        self._enter("read_stateful_set")
        try:
            return self.stateful_sets[(namespace, name)]
        except KeyError:
            raise _not_found() from None

    async def patch_stateful_set(self, namespace: str, name: str, patch: dict[str, Any]) -> Any:
        self._enter("patch_stateful_set")
        try:
            stateful_set = self.stateful_sets[(namespace, name)]
        except KeyError:
            raise _not_found() from None
        stateful_set.spec.replicas = patch["spec"]["replicas"]
        self.stateful_set_patches.append((name, patch))
        return stateful_set

    async def read_secret(self, namespace: str, name: str) -> Any:
        self._enter("read_secret")
        try:
            return self.secrets[(namespace, name)]
        except KeyError:
            raise _not_found() from None

    async def read_job(self, namespace: str, name: str) -> Any:
        self._enter("read_job")
        try:
            return self.jobs[(namespace, name)]
        except KeyError:
            raise _not_found() from None

    async def create_job(self, namespace: str, body: dict[str, Any]) -> Any:
        self._enter("create_job")
        key = (namespace, body["metadata"]["name"])
        if key in self.jobs:
            raise ApiException(status=409, reason="AlreadyExists")
        self.jobs[key] = self.new_job_state
        self.created_jobs.append(body)
        return self.jobs[key]

    async def apply(self, manifest: dict[str, Any]) -> None:
        self._enter("apply")
        self.applied.append(copy.deepcopy(manifest))
        meta = manifest["metadata"]
        key = (meta["namespace"], meta["name"])
        if manifest["kind"] == "StatefulSet":
            existing = self.stateful_sets.get(key)
            if existing is None:
                self.stateful_sets[key] = make_stateful_set(replicas=manifest["spec"]["replicas"])
            else:
                existing.spec.replicas = manifest["spec"]["replicas"]
        elif manifest["kind"] == "Secret":
            # the API server folds stringData into base64 data
            data = dict(manifest.get("data") or {})
            for field_name, value in (manifest.get("stringData") or {}).items():
                data[field_name] = base64.b64encode(value.encode("utf-8")).decode("ascii")
            self.secrets[key] = SimpleNamespace(data=data)

    def applied_kinds(self) -> list[str]:
        return [m["kind"] for m in self.applied]


class FakeDatabase:
    def __init__(self, healthy: bool = True) -> None:
        self.healthy = healthy
        self.put_error: BaseException | None = None
        self.connection_error: BaseException | None = None
        self.puts: list[tuple[str, str, dict[str, Any]]] = []
        self.deletes: list[tuple[str, str]] = []
        self.probes = 0
        self.closed = False

    async def connection_for(self, namespace: str, cluster_name: str) -> QdrantConnection:
        if self.connection_error is not None:
            raise self.connection_error
        return QdrantConnection(cluster=cluster_name, base_url=f"http://{cluster_name}.{namespace}:6333")

    async def health_check(self, connection: QdrantConnection) -> bool:
        self.probes += 1
        return self.healthy

    async def put_collection(
        self, connection: QdrantConnection, name: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        if self.put_error is not None:
            raise self.put_error
        self.puts.append((connection.cluster, name, body))
        return {"status": "ok", "result": True}

    async def delete_collection(self, connection: QdrantConnection, name: str) -> bool:
        self.deletes.append((connection.cluster, name))
        return True

    async def aclose(self) -> None:
        self.closed = True

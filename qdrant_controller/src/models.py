from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

GROUP = "qdrant.operator"
VERSION = "v1alpha1"
FINALIZER = "qdrant.operator/finalizer"
MANAGED_BY = "qdrant-operator"

MAX_RETRIES = 20
INVALID_SPEC_REASON = "InvalidSpec"


class ResourceKind(str, Enum):
    """The closed set of custom resource kinds this controller reconciles."""

    CLUSTER = "cluster"
    COLLECTION = "collection"
    RESTORE = "restore"

    @property
    def plural(self) -> str:
        return _PLURALS[self]

    @property
    def kind_name(self) -> str:
        return _KIND_NAMES[self]


_PLURALS = {
    ResourceKind.CLUSTER: "qdrantclusters",
    ResourceKind.COLLECTION: "qdrantcollections",
    ResourceKind.RESTORE: "qdrantcollectionrestores",
}

_KIND_NAMES = {
    ResourceKind.CLUSTER: "QdrantCluster",
    ResourceKind.COLLECTION: "QdrantCollection",
    ResourceKind.RESTORE: "QdrantCollectionRestore",
}


class ClusterPhase(str, Enum):
    PENDING = "Pending"
    OPERATION_IN_PROGRESS = "OperationInProgress"
    HEALTHY = "Healthy"
    RUNNING = "Running"
    ERROR = "Error"


class RestorePhase(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in {RestorePhase.COMPLETED, RestorePhase.FAILED}


class CleanupPhase(str, Enum):
    RETRYING = "Retrying"
    COMPLETED = "Completed"
    FAILED = "Failed"


@dataclass(frozen=True, order=True)
class ResourceKey:
    """Namespace/name identity of a resource; the unit of dedup and retry accounting."""

    namespace: str
    name: str

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> ResourceKey:
        metadata = obj.get("metadata") or {}
        return cls(namespace=metadata.get("namespace") or "", name=metadata.get("name") or "")

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ReconcileRequest:
    """One reconcile pass worth of input; the object is only a snapshot."""

    key: ResourceKey
    kind: ResourceKind
    obj: dict[str, Any] = field(compare=False)


def metadata_of(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.get("metadata") or {}


def spec_of(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.get("spec") or {}


def status_of(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.get("status") or {}


def is_being_deleted(obj: dict[str, Any]) -> bool:
    return bool(metadata_of(obj).get("deletionTimestamp"))


def resource_version_of(obj: dict[str, Any]) -> str | None:
    return metadata_of(obj).get("resourceVersion")

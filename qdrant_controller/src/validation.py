from __future__ import annotations

from typing import Any

from qdrant_controller.src.errors import SpecValidationError
from qdrant_controller.src.models import (
    INVALID_SPEC_REASON,
    ClusterPhase,
    metadata_of,
    status_of,
)


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


def validate_cluster_spec(spec: dict[str, Any] | None) -> None:
    spec = spec or {}
    problems: list[str] = []
    if not _is_positive_int(spec.get("replicas")):
        problems.append(f"spec.replicas must be an integer >= 1, got: {spec.get('replicas')!r}")
    image = spec.get("image")
    if not isinstance(image, str) or not image.strip():
        problems.append("spec.image must be a non-empty string")
    if problems:
        raise SpecValidationError(problems)


def validate_collection_spec(spec: dict[str, Any] | None) -> None:
    spec = spec or {}
    problems: list[str] = []
    cluster = spec.get("cluster")
    if not isinstance(cluster, str) or not cluster.strip():
        problems.append("spec.cluster must name the owning QdrantCluster")
    if not _is_positive_int(spec.get("vectorSize")):
        problems.append(f"spec.vectorSize must be an integer >= 1, got: {spec.get('vectorSize')!r}")
    for field_name in ("shardNumber", "replicationFactor"):
        if field_name in spec and not _is_positive_int(spec[field_name]):
            problems.append(
                f"spec.{field_name} must be an integer >= 1 when set, got: {spec[field_name]!r}"
            )
    if problems:
        raise SpecValidationError(problems)


def invalid_spec_is_current(obj: dict[str, Any]) -> bool:
    """True when *obj* already carries an InvalidSpec verdict for its current generation.

    A spec edit bumps ``metadata.generation`` past ``status.observedGeneration``,
    which re-opens validation. Objects whose status predates generation
    tracking stay rejected until edited.
    """
    status = status_of(obj)
    if status.get("qdrantStatus") != ClusterPhase.ERROR.value:
        return False
    if status.get("reason") != INVALID_SPEC_REASON:
        return False
    observed = status.get("observedGeneration")
    generation = metadata_of(obj).get("generation")
    if observed is None or generation is None:
        return True
    return observed == generation


def carries_invalid_spec(obj: dict[str, Any]) -> bool:
    status = status_of(obj)
    return (
        status.get("qdrantStatus") == ClusterPhase.ERROR.value
        and status.get("reason") == INVALID_SPEC_REASON
    )

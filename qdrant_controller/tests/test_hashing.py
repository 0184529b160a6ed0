from __future__ import annotations

from qdrant_controller.src.hashing import HASHED_FIELDS, calculate_spec_hash


def test_hash_is_stable_across_key_order() -> None:
    first = {"replicas": 3, "image": "qdrant/qdrant:v1.9.0", "resources": {"limits": {"cpu": "1", "memory": "2Gi"}}}
    second = {"resources": {"limits": {"memory": "2Gi", "cpu": "1"}}, "image": "qdrant/qdrant:v1.9.0", "replicas": 3}

    assert calculate_spec_hash(first) == calculate_spec_hash(second)


def test_hash_is_sixteen_hex_characters() -> None:
    digest = calculate_spec_hash({"replicas": 1, "image": "qdrant/qdrant"})

    assert len(digest) == 16
    int(digest, 16)


def test_hash_ignores_fields_outside_the_workload() -> None:
    base = {"replicas": 3, "image": "qdrant/qdrant:v1.9.0"}
    decorated = {**base, "labels": {"team": "search"}, "comment": "anything"}

    assert calculate_spec_hash(base) == calculate_spec_hash(decorated)


def test_each_hashed_field_moves_the_hash() -> None:
    base = {"replicas": 3, "image": "qdrant/qdrant:v1.9.0"}
    baseline = calculate_spec_hash(base)

    for field_name in HASHED_FIELDS:
        changed = {**base, field_name: "changed"}
        assert calculate_spec_hash(changed) != baseline, field_name


def test_missing_and_null_fields_hash_the_same() -> None:
    assert calculate_spec_hash({"replicas": 1}) == calculate_spec_hash({"replicas": 1, "tls": None})


def test_non_mapping_spec_hashes_like_empty_spec() -> None:
    assert calculate_spec_hash(None) == calculate_spec_hash({})

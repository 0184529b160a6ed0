from __future__ import annotations

import json
from collections.abc import Mapping
from hashlib import sha256
from typing import Any

# Fields of a QdrantCluster spec that end up in the StatefulSet or its
# companions. Anything else (labels, collection hints, annotations) must not
# move the hash.
HASHED_FIELDS: tuple[str, ...] = (
    "replicas",
    "image",
    "apikey",
    "readApikey",
    "tls",
    "resources",
    "persistence",
    "service",
)


def calculate_spec_hash(spec: Mapping[str, Any] | None) -> str:
    """Return a short SHA-256 digest of the reconciliation-relevant part of *spec*.

    The payload is serialized with sorted keys at every nesting level so that
    the digest does not depend on the order the API server (or a user)
    produced fields in.  Missing fields are hashed as ``null`` so a spec that
    omits an optional block hashes the same as one that spells it out empty
    as ``None``.

    Equal digests only mean the workload does not need re-applying; they say
    nothing about whether the cluster is actually healthy.
    """
    source: Mapping[str, Any] = spec if isinstance(spec, Mapping) else {}
    normalized = {name: source.get(name) for name in HASHED_FIELDS}
    payload = json.dumps(normalized, sort_keys=True, separators=(",", ":"), default=str)
    return sha256(payload.encode("utf-8")).hexdigest()[:16]

from __future__ import annotations

import base64
import json
from types import SimpleNamespace
from typing import Any

import httpx
import pytest

from qdrant_controller.src.errors import QdrantError
from qdrant_controller.src.models import ResourceKind
from qdrant_controller.src.qdrant import QdrantClient, QdrantConnection, api_key_enabled, collection_body
from qdrant_controller.tests.fakes import FakePlatform, make_cluster

CONNECTION = QdrantConnection(
    cluster="vectors",
    base_url="http://vectors.default:6333",
    headers={"Content-Type": "application/json", "api-key": "s3cret"},
)


def _client(handler: Any, platform: FakePlatform | None = None) -> tuple[QdrantClient, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def recording(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    http = httpx.AsyncClient(transport=httpx.MockTransport(recording))
    return QdrantClient(platform or FakePlatform(), probe_timeout_seconds=1, http_client=http), requests


def test_collection_body_maps_spec_fields() -> None:
    spec = {
        "vectorSize": 128,
        "onDisk": True,
        "shardNumber": 3,
        "replicationFactor": 2,
        "config": {"hnsw_config": {"m": 32}},
    }

    assert collection_body(spec) == {
        "vectors": {"size": 128, "distance": "Cosine", "on_disk": True},
        "shard_number": 3,
        "replication_factor": 2,
        "hnsw_config": {"m": 32},
    }


def test_api_key_enabled_defaults_off() -> None:
    assert not api_key_enabled({})
    assert not api_key_enabled({"apikey": "False"})
    assert api_key_enabled({"apikey": "true"})


@pytest.mark.asyncio
async def test_connection_reads_api_key_secret() -> None:
    platform = FakePlatform()
    platform.add(ResourceKind.CLUSTER, make_cluster(apikey="true"))
    platform.secrets[("default", "vectors-apikey")] = SimpleNamespace(
        data={"api-key": base64.b64encode(b"s3cret").decode()}
    )
    client, _ = _client(lambda request: httpx.Response(200), platform)

    connection = await client.connection_for("default", "vectors")

    assert connection.base_url == "http://vectors.default:6333"
    assert connection.headers == {"Content-Type": "application/json", "api-key": "s3cret"}


@pytest.mark.asyncio
async def test_connection_without_api_key_skips_secret() -> None:
    platform = FakePlatform()
    platform.add(ResourceKind.CLUSTER, make_cluster(apikey="false", tls={"enabled": True}))
    client, _ = _client(lambda request: httpx.Response(200), platform)

    connection = await client.connection_for("default", "vectors")

    assert connection.base_url == "https://vectors.default:6333"
    assert "api-key" not in connection.headers
    assert "read_secret" not in platform.calls


@pytest.mark.asyncio
async def test_health_check_outcomes() -> None:
    healthy, requests = _client(lambda request: httpx.Response(200, text="all shards are ready"))
    assert await healthy.health_check(CONNECTION) is True
    assert requests[0].url.path == "/readyz"
    assert requests[0].headers["api-key"] == "s3cret"

    unhealthy, _ = _client(lambda request: httpx.Response(503))
    assert await unhealthy.health_check(CONNECTION) is False

    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    unreachable, _ = _client(refuse)
    assert await unreachable.health_check(CONNECTION) is False


@pytest.mark.asyncio
async def test_put_collection_creates() -> None:
    client, requests = _client(lambda request: httpx.Response(200, json={"result": True, "status": "ok"}))

    result = await client.put_collection(CONNECTION, "docs", {"vectors": {"size": 4, "distance": "Dot"}})

    assert result == {"result": True, "status": "ok"}
    assert requests[0].method == "PUT"
    assert requests[0].url.path == "/collections/docs"
    assert json.loads(requests[0].content) == {"vectors": {"size": 4, "distance": "Dot"}}


@pytest.mark.asyncio
async def test_existing_collection_is_patched_with_mutable_fields() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "PUT":
            return httpx.Response(
                409, json={"status": {"error": "Wrong input: Collection `docs` already exists!"}}
            )
        return httpx.Response(200, json={"result": True, "status": "ok"})

    client, requests = _client(handler)
    body = {
        "vectors": {"size": 4, "distance": "Dot"},
        "shard_number": 2,
        "replication_factor": 3,
        "optimizers_config": {"indexing_threshold": 0},
    }

    await client.put_collection(CONNECTION, "docs", body)

    assert [request.method for request in requests] == ["PUT", "PATCH"]
    assert json.loads(requests[1].content) == {
        "optimizers_config": {"indexing_threshold": 0},
        "params": {"replication_factor": 3},
    }


@pytest.mark.asyncio
async def test_put_collection_error_raises() -> None:
    client, _ = _client(
        lambda request: httpx.Response(400, json={"status": {"error": "Wrong input: vector size 0"}})
    )

    with pytest.raises(QdrantError, match="vector size 0") as excinfo:
        await client.put_collection(CONNECTION, "docs", {"vectors": {"size": 0}})

    assert excinfo.value.status_code == 400


@pytest.mark.asyncio
async def test_delete_collection() -> None:
    gone, _ = _client(lambda request: httpx.Response(404))
    assert await gone.delete_collection(CONNECTION, "docs") is False

    deleted, requests = _client(lambda request: httpx.Response(200, json={"result": True, "status": "ok"}))
    assert await deleted.delete_collection(CONNECTION, "docs") is True
    assert requests[0].method == "DELETE"

    broken, _ = _client(lambda request: httpx.Response(500, text="boom"))
    with pytest.raises(QdrantError, match="HTTP 500"):
        await broken.delete_collection(CONNECTION, "docs")

from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from qdrant_controller.src import manifests
from qdrant_controller.src.errors import QdrantError
from qdrant_controller.src.models import ResourceKind, spec_of
from qdrant_controller.src.platform import PlatformOperations

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class QdrantConnection:
    cluster: str
    base_url: str
    headers: dict[str, str] = field(default_factory=dict)

    def collection_url(self, name: str) -> str:
        return f"{self.base_url}/collections/{name}"


class DatabaseOperations(Protocol):
    async def connection_for(self, namespace: str, cluster_name: str) -> QdrantConnection: ...

    async def health_check(self, connection: QdrantConnection) -> bool: ...

    async def put_collection(
        self, connection: QdrantConnection, name: str, body: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def delete_collection(self, connection: QdrantConnection, name: str) -> bool: ...


def api_key_enabled(cluster_spec: dict[str, Any]) -> bool:
    return str(cluster_spec.get("apikey", "false")).lower() != "false"


def collection_body(spec: dict[str, Any]) -> dict[str, Any]:
    """Translate a QdrantCollection spec into the Qdrant create-collection payload.

    ``spec.config`` is merged last so users can pass through any option
    the operator does not model explicitly.
    """
    vectors: dict[str, Any] = {
        "size": spec["vectorSize"],
        "distance": spec.get("distance") or "Cosine",
    }
    if spec.get("onDisk") is not None:
        vectors["on_disk"] = bool(spec["onDisk"])
    body: dict[str, Any] = {"vectors": vectors}
    if spec.get("shardNumber") is not None:
        body["shard_number"] = spec["shardNumber"]
    if spec.get("replicationFactor") is not None:
        body["replication_factor"] = spec["replicationFactor"]
    body.update(spec.get("config") or {})
    return body


def _update_body(body: dict[str, Any]) -> dict[str, Any]:
    # vector size and shard count are fixed once the collection exists
    update = {k: v for k, v in body.items() if k not in {"vectors", "shard_number", "replication_factor"}}
    if "replication_factor" in body:
        update.setdefault("params", {})["replication_factor"] = body["replication_factor"]
    return update


def _error_detail(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    status = payload.get("status") if isinstance(payload, dict) else None
    if isinstance(status, dict) and status.get("error"):
        return str(status["error"])
    return None


class QdrantClient:
    """Minimal async client for the Qdrant REST API of a managed cluster.

    Connection details come from the owning QdrantCluster: the scheme follows
    ``spec.tls.enabled`` and the ``api-key`` header is read from the
    ``<cluster>-apikey`` secret unless ``spec.apikey`` is ``"false"``.
    """

    def __init__(
        self,
        platform: PlatformOperations,
        *,
        probe_timeout_seconds: float = 5.0,
        request_timeout_seconds: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.platform = platform
        self.probe_timeout_seconds = probe_timeout_seconds
        self.request_timeout_seconds = request_timeout_seconds
        self._http = http_client or httpx.AsyncClient(timeout=request_timeout_seconds)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def connection_for(self, namespace: str, cluster_name: str) -> QdrantConnection:
        cluster = await self.platform.get_custom_object(ResourceKind.CLUSTER, namespace, cluster_name)
        headers = {"Content-Type": "application/json"}
        if api_key_enabled(spec_of(cluster)):
            secret = await self.platform.read_secret(
                namespace, manifests.api_key_secret_name(cluster_name)
            )
            encoded = (secret.data or {}).get("api-key")
            if encoded:
                headers["api-key"] = base64.b64decode(encoded).decode("utf-8")
        return QdrantConnection(
            cluster=cluster_name,
            base_url=manifests.cluster_base_url(cluster),
            headers=headers,
        )

    async def health_check(self, connection: QdrantConnection) -> bool:
        url = f"{connection.base_url}/readyz"
        try:
            response = await asyncio.wait_for(
                self._http.get(url, headers=connection.headers), timeout=self.probe_timeout_seconds
            )
        except TimeoutError:
            LOGGER.warning(
                "Health probe of cluster %s timed out after %.1fs",
                connection.cluster,
                self.probe_timeout_seconds,
            )
            return False
        except httpx.HTTPError as exc:
            LOGGER.warning("Health probe of cluster %s failed: %s", connection.cluster, exc)
            return False
        if response.is_success:
            return True
        LOGGER.warning(
            "Health probe of cluster %s returned HTTP %d", connection.cluster, response.status_code
        )
        return False

    async def put_collection(
        self, connection: QdrantConnection, name: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        """Create collection *name*, updating its mutable parameters if it already exists."""
        url = connection.collection_url(name)
        response = await self._http.put(url, headers=connection.headers, json=body)
        detail = _error_detail(response)
        if response.status_code in {400, 409} and detail and "already exists" in detail:
            LOGGER.info("Collection %s already exists in %s, updating in place", name, connection.cluster)
            response = await self._http.patch(url, headers=connection.headers, json=_update_body(body))
            detail = _error_detail(response)

        if not response.is_success or detail:
            message = detail or f"HTTP {response.status_code}"
            raise QdrantError(
                f"Collection {name} in cluster {connection.cluster} was not applied: {message}",
                status_code=response.status_code,
            )
        LOGGER.info("Collection %s applied in cluster %s", name, connection.cluster)
        try:
            return response.json()
        except ValueError:
            return {}

    async def delete_collection(self, connection: QdrantConnection, name: str) -> bool:
        """Delete collection *name*; returns False when it did not exist."""
        response = await self._http.delete(
            connection.collection_url(name), headers=connection.headers
        )
        if response.status_code == 404:
            LOGGER.info("Collection %s not present in %s, nothing to delete", name, connection.cluster)
            return False
        detail = _error_detail(response)
        if not response.is_success or detail:
            raise QdrantError(
                f"Deleting collection {name} in cluster {connection.cluster} failed: "
                f"{detail or f'HTTP {response.status_code}'}",
                status_code=response.status_code,
            )
        return True

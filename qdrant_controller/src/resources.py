from __future__ import annotations

import base64
import logging
import secrets
from typing import Any

import yaml
from kubernetes.client import ApiException

from qdrant_controller.src import manifests
from qdrant_controller.src.errors import is_not_found
from qdrant_controller.src.models import ResourceKey, metadata_of, spec_of
from qdrant_controller.src.platform import PlatformOperations

LOGGER = logging.getLogger(__name__)


def _wants_generated_key(requested: Any) -> bool:
    return requested is True or str(requested).lower() == "true"


def _key_disabled(requested: Any) -> bool:
    return requested is None or requested is False or str(requested).strip().lower() in {"", "false"}


class ClusterResources:
    """Applies the Kubernetes objects that back one QdrantCluster.

    Every ``apply_*`` method is idempotent. Secrets are additionally
    content-idempotent: an existing generated key is reused, and nothing is
    written when the stored key already matches.
    """

    def __init__(self, platform: PlatformOperations) -> None:
        self.platform = platform

    async def apply_config_map(self, cluster: dict[str, Any]) -> None:
        await self.platform.apply(manifests.config_map(cluster))

    async def apply_headless_service(self, cluster: dict[str, Any]) -> None:
        await self.platform.apply(manifests.headless_service(cluster))

    async def apply_client_service(self, cluster: dict[str, Any]) -> None:
        await self.platform.apply(manifests.client_service(cluster))

    async def apply_disruption_budget(self, cluster: dict[str, Any]) -> None:
        await self.platform.apply(manifests.disruption_budget(cluster))

    async def apply_network_policy(self, cluster: dict[str, Any]) -> None:
        await self.platform.apply(manifests.network_policy(cluster))

    async def apply_workload(self, cluster: dict[str, Any]) -> None:
        await self.platform.apply(manifests.stateful_set(cluster))

    async def _stored_key(self, namespace: str, secret_name: str) -> str | None:
        try:
            secret = await self.platform.read_secret(namespace, secret_name)
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise
        encoded = (getattr(secret, "data", None) or {}).get("api-key")
        if not encoded:
            return None
        return base64.b64decode(encoded).decode("utf-8")

    async def _ensure_key_secret(self, cluster: dict[str, Any], secret_name: str, requested: Any) -> str | None:
        if _key_disabled(requested):
            return None
        namespace = metadata_of(cluster)["namespace"]
        stored = await self._stored_key(namespace, secret_name)
        if _wants_generated_key(requested):
            desired = stored or secrets.token_urlsafe(32)
        else:
            desired = str(requested)
        if stored == desired:
            LOGGER.debug("Secret %s/%s already up to date", namespace, secret_name)
            return desired
        await self.platform.apply(manifests.api_key_secret(cluster, secret_name, desired))
        return desired

    async def apply_read_secret(self, cluster: dict[str, Any]) -> str | None:
        name = metadata_of(cluster)["name"]
        return await self._ensure_key_secret(
            cluster, manifests.read_api_key_secret_name(name), spec_of(cluster).get("readApikey")
        )

    async def apply_secret(self, cluster: dict[str, Any]) -> str | None:
        name = metadata_of(cluster)["name"]
        return await self._ensure_key_secret(
            cluster, manifests.api_key_secret_name(name), spec_of(cluster).get("apikey")
        )

    async def _stored_auth_config(self, namespace: str, secret_name: str) -> Any | None:
        try:
            secret = await self.platform.read_secret(namespace, secret_name)
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise
        encoded = (getattr(secret, "data", None) or {}).get(manifests.AUTH_CONFIG_KEY)
        if not encoded:
            return None
        return yaml.safe_load(base64.b64decode(encoded).decode("utf-8"))

    async def apply_auth_secret(
        self, cluster: dict[str, Any], api_key: str | None, read_api_key: str | None
    ) -> None:
        if not api_key and not read_api_key:
            return
        manifest = manifests.auth_secret(cluster, api_key, read_api_key)
        namespace, secret_name = manifest["metadata"]["namespace"], manifest["metadata"]["name"]
        desired = yaml.safe_load(manifest["stringData"][manifests.AUTH_CONFIG_KEY])
        if await self._stored_auth_config(namespace, secret_name) == desired:
            LOGGER.debug("Secret %s/%s already up to date", namespace, secret_name)
            return
        await self.platform.apply(manifest)

    async def apply_secrets(self, cluster: dict[str, Any]) -> None:
        read_api_key = await self.apply_read_secret(cluster)
        api_key = await self.apply_secret(cluster)
        await self.apply_auth_secret(cluster, api_key, read_api_key)

    async def scale_down(self, key: ResourceKey) -> None:
        try:
            await self.platform.patch_stateful_set(key.namespace, key.name, {"spec": {"replicas": 0}})
        except ApiException as exc:
            if not is_not_found(exc):
                raise
            LOGGER.info("StatefulSet %s already gone, nothing to scale down", key)
            return
        LOGGER.info("Scaled StatefulSet %s to 0 replicas", key)

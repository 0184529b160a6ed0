from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from typing import Any, Protocol, TypeVar

from kubernetes.client import ApiException

from qdrant_controller.src.errors import is_conflict
from qdrant_controller.src.kube import KubeClients
from qdrant_controller.src.models import GROUP, VERSION, ResourceKind

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

# manifest kind -> (KubeClients attribute, method suffix)
_APPLY_TARGETS: dict[str, tuple[str, str]] = {
    "ConfigMap": ("core", "config_map"),
    "Secret": ("core", "secret"),
    "Service": ("core", "service"),
    "StatefulSet": ("apps", "stateful_set"),
    "PodDisruptionBudget": ("policy", "pod_disruption_budget"),
    "NetworkPolicy": ("networking", "network_policy"),
    "CronJob": ("batch", "cron_job"),
}


class PlatformOperations(Protocol):
    """What the reconcilers need from the cluster API, and nothing more."""

    async def get_custom_object(self, kind: ResourceKind, namespace: str, name: str) -> dict[str, Any]: ...

    async def get_custom_object_status(
        self, kind: ResourceKind, namespace: str, name: str
    ) -> dict[str, Any]: ...

    async def list_custom_objects(
        self, kind: ResourceKind, namespace: str | None = None
    ) -> list[dict[str, Any]]: ...

    async def replace_custom_object_status(
        self, kind: ResourceKind, namespace: str, name: str, body: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def patch_custom_object_status(
        self, kind: ResourceKind, namespace: str, name: str, patch: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def patch_custom_object(
        self, kind: ResourceKind, namespace: str, name: str, patch: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def read_stateful_set(self, namespace: str, name: str) -> Any: ...

    async def patch_stateful_set(self, namespace: str, name: str, patch: dict[str, Any]) -> Any: ...

    async def read_secret(self, namespace: str, name: str) -> Any: ...

    async def read_job(self, namespace: str, name: str) -> Any: ...

    async def create_job(self, namespace: str, body: dict[str, Any]) -> Any: ...

    async def apply(self, manifest: dict[str, Any]) -> None: ...


class KubernetesPlatform:
    """Async facade over the synchronous ``kubernetes`` client.

    Each call is pushed onto the default executor so a slow API server never
    blocks the event loop that drives timers and other reconciles.
    """

    def __init__(self, clients: KubeClients) -> None:
        self.clients = clients

    async def _call(self, fn: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    async def get_custom_object(self, kind: ResourceKind, namespace: str, name: str) -> dict[str, Any]:
        return await self._call(
            self.clients.custom.get_namespaced_custom_object,
            GROUP,
            VERSION,
            namespace,
            kind.plural,
            name,
        )

    async def get_custom_object_status(
        self, kind: ResourceKind, namespace: str, name: str
    ) -> dict[str, Any]:
        return await self._call(
            self.clients.custom.get_namespaced_custom_object_status,
            GROUP,
            VERSION,
            namespace,
            kind.plural,
            name,
        )

    async def list_custom_objects(
        self, kind: ResourceKind, namespace: str | None = None
    ) -> list[dict[str, Any]]:
        if namespace:
            result = await self._call(
                self.clients.custom.list_namespaced_custom_object,
                GROUP,
                VERSION,
                namespace,
                kind.plural,
            )
        else:
            result = await self._call(
                self.clients.custom.list_cluster_custom_object, GROUP, VERSION, kind.plural
            )
        return list(result.get("items") or [])

    async def replace_custom_object_status(
        self, kind: ResourceKind, namespace: str, name: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._call(
            self.clients.custom.replace_namespaced_custom_object_status,
            GROUP,
            VERSION,
            namespace,
            kind.plural,
            name,
            body,
        )

    async def patch_custom_object_status(
        self, kind: ResourceKind, namespace: str, name: str, patch: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._call(
            self.clients.custom.patch_namespaced_custom_object_status,
            GROUP,
            VERSION,
            namespace,
            kind.plural,
            name,
            patch,
        )

    async def patch_custom_object(
        self, kind: ResourceKind, namespace: str, name: str, patch: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._call(
            self.clients.custom.patch_namespaced_custom_object,
            GROUP,
            VERSION,
            namespace,
            kind.plural,
            name,
            patch,
        )

    async def read_stateful_set(self, namespace: str, name: str) -> Any:
        return await self._call(
            self.clients.apps.read_namespaced_stateful_set, name=name, namespace=namespace
        )

    async def patch_stateful_set(self, namespace: str, name: str, patch: dict[str, Any]) -> Any:
        return await self._call(
            self.clients.apps.patch_namespaced_stateful_set,
            name=name,
            namespace=namespace,
            body=patch,
        )

    async def read_secret(self, namespace: str, name: str) -> Any:
        return await self._call(
            self.clients.core.read_namespaced_secret, name=name, namespace=namespace
        )

    async def read_job(self, namespace: str, name: str) -> Any:
        return await self._call(self.clients.batch.read_namespaced_job, name=name, namespace=namespace)

    async def create_job(self, namespace: str, body: dict[str, Any]) -> Any:
        return await self._call(
            self.clients.batch.create_namespaced_job, namespace=namespace, body=body
        )

    async def apply(self, manifest: dict[str, Any]) -> None:
        """Create *manifest*, or patch the live object when it already exists."""
        kind = manifest["kind"]
        try:
            client_attr, suffix = _APPLY_TARGETS[kind]
        except KeyError:
            raise ValueError(f"Don't know how to apply a {kind}") from None
        api = getattr(self.clients, client_attr)
        metadata = manifest["metadata"]
        namespace, name = metadata["namespace"], metadata["name"]
        try:
            await self._call(
                getattr(api, f"create_namespaced_{suffix}"), namespace=namespace, body=manifest
            )
            LOGGER.info("Created %s %s/%s", kind, namespace, name)
        except ApiException as exc:
            if not is_conflict(exc):
                raise
            await self._call(
                getattr(api, f"patch_namespaced_{suffix}"),
                name=name,
                namespace=namespace,
                body=manifest,
            )
            LOGGER.debug("Patched %s %s/%s", kind, namespace, name)

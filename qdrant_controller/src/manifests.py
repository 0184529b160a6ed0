"""Renderers for the Kubernetes objects that make up a Qdrant cluster.

Every function is pure: it takes the custom resource (a plain dict as
returned by the custom objects API) and returns a manifest dict ready for
``KubernetesPlatform.apply``. Owner references point back at the custom
resource so garbage collection removes the children with it.
"""

from __future__ import annotations

import base64
from typing import Any

import yaml

from qdrant_controller.src.models import MANAGED_BY, metadata_of, spec_of

HTTP_PORT = 6333
GRPC_PORT = 6334
P2P_PORT = 6335

CONFIG_MOUNT_PATH = "/qdrant/config/production.yaml"
AUTH_CONFIG_KEY = "local.yaml"
AUTH_MOUNT_PATH = f"/qdrant/config/{AUTH_CONFIG_KEY}"
STORAGE_MOUNT_PATH = "/qdrant/storage"


def labels(cluster: dict[str, Any]) -> dict[str, str]:
    name = metadata_of(cluster)["name"]
    return {
        "app": name,
        "clustername": name,
        "app.kubernetes.io/managed-by": MANAGED_BY,
    }


def owner_references(owner: dict[str, Any]) -> list[dict[str, Any]]:
    metadata = metadata_of(owner)
    if not metadata.get("uid"):
        return []
    return [
        {
            "apiVersion": owner.get("apiVersion"),
            "kind": owner.get("kind"),
            "name": metadata["name"],
            "uid": metadata["uid"],
            "controller": True,
            "blockOwnerDeletion": True,
        }
    ]


def _object_meta(owner: dict[str, Any], name: str, extra_labels: dict[str, str] | None = None) -> dict[str, Any]:
    return {
        "name": name,
        "namespace": metadata_of(owner)["namespace"],
        "labels": extra_labels or labels(owner),
        "ownerReferences": owner_references(owner),
    }


def headless_service_name(cluster: dict[str, Any]) -> str:
    return f"{metadata_of(cluster)['name']}-headless"


def api_key_secret_name(cluster_name: str) -> str:
    return f"{cluster_name}-apikey"


def read_api_key_secret_name(cluster_name: str) -> str:
    return f"{cluster_name}-read-apikey"


def auth_secret_name(cluster_name: str) -> str:
    return f"{cluster_name}-auth-config"


def tls_enabled(cluster: dict[str, Any]) -> bool:
    tls = spec_of(cluster).get("tls") or {}
    return bool(tls.get("enabled"))


def cluster_base_url(cluster: dict[str, Any]) -> str:
    metadata = metadata_of(cluster)
    scheme = "https" if tls_enabled(cluster) else "http"
    return f"{scheme}://{metadata['name']}.{metadata['namespace']}:{HTTP_PORT}"


def config_map(cluster: dict[str, Any]) -> dict[str, Any]:
    spec = spec_of(cluster)
    name = metadata_of(cluster)["name"]
    settings: dict[str, Any] = {
        "cluster": {
            "enabled": int(spec.get("replicas") or 1) > 1,
            "p2p": {"port": P2P_PORT, "enable_tls": tls_enabled(cluster)},
            "consensus": {"tick_period_ms": 100},
        },
        "service": {"enable_tls": tls_enabled(cluster)},
        "storage": {"storage_path": STORAGE_MOUNT_PATH},
    }
    if tls_enabled(cluster):
        settings["tls"] = {
            "cert": "/tls/tls.crt",
            "key": "/tls/tls.key",
        }
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _object_meta(cluster, name),
        "data": {"production.yaml": yaml.safe_dump(settings, sort_keys=True)},
    }


def api_key_secret(cluster: dict[str, Any], secret_name: str, api_key: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "Opaque",
        "metadata": _object_meta(cluster, secret_name),
        "data": {"api-key": base64.b64encode(api_key.encode("utf-8")).decode("ascii")},
    }


def auth_secret(cluster: dict[str, Any], api_key: str | None, read_api_key: str | None) -> dict[str, Any]:
    service: dict[str, Any] = {}
    if api_key:
        service["api_key"] = api_key
    if read_api_key:
        service["read_only_api_key"] = read_api_key
    name = auth_secret_name(metadata_of(cluster)["name"])
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "Opaque",
        "metadata": _object_meta(cluster, name),
        "stringData": {AUTH_CONFIG_KEY: yaml.safe_dump({"service": service}, sort_keys=True)},
    }


def _ports(include_p2p: bool) -> list[dict[str, Any]]:
    ports = [
        {"name": "http", "port": HTTP_PORT, "targetPort": HTTP_PORT},
        {"name": "grpc", "port": GRPC_PORT, "targetPort": GRPC_PORT},
    ]
    if include_p2p:
        ports.append({"name": "p2p", "port": P2P_PORT, "targetPort": P2P_PORT})
    return ports


def headless_service(cluster: dict[str, Any]) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _object_meta(cluster, headless_service_name(cluster)),
        "spec": {
            "clusterIP": "None",
            "publishNotReadyAddresses": True,
            "selector": labels(cluster),
            "ports": _ports(include_p2p=True),
        },
    }


def client_service(cluster: dict[str, Any]) -> dict[str, Any]:
    service_type = spec_of(cluster).get("service") or "ClusterIP"
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _object_meta(cluster, metadata_of(cluster)["name"]),
        "spec": {
            "type": service_type,
            "selector": labels(cluster),
            "ports": _ports(include_p2p=False),
        },
    }


def disruption_budget(cluster: dict[str, Any]) -> dict[str, Any]:
    return {
        "apiVersion": "policy/v1",
        "kind": "PodDisruptionBudget",
        "metadata": _object_meta(cluster, metadata_of(cluster)["name"]),
        "spec": {
            "maxUnavailable": 1,
            "selector": {"matchLabels": labels(cluster)},
        },
    }


def network_policy(cluster: dict[str, Any]) -> dict[str, Any]:
    peers = [{"podSelector": {"matchLabels": labels(cluster)}}]
    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "NetworkPolicy",
        "metadata": _object_meta(cluster, metadata_of(cluster)["name"]),
        "spec": {
            "podSelector": {"matchLabels": labels(cluster)},
            "policyTypes": ["Ingress"],
            "ingress": [
                {"ports": [{"port": HTTP_PORT}, {"port": GRPC_PORT}]},
                {"from": peers, "ports": [{"port": P2P_PORT}]},
            ],
        },
    }


def stateful_set(cluster: dict[str, Any]) -> dict[str, Any]:
    spec = spec_of(cluster)
    name = metadata_of(cluster)["name"]
    persistence = spec.get("persistence") or {}

    volume_mounts = [
        {"name": "qdrant-config", "mountPath": CONFIG_MOUNT_PATH, "subPath": "production.yaml"},
        {"name": "qdrant-auth", "mountPath": AUTH_MOUNT_PATH, "subPath": AUTH_CONFIG_KEY},
        {"name": "qdrant-storage", "mountPath": STORAGE_MOUNT_PATH},
    ]
    volumes: list[dict[str, Any]] = [
        {"name": "qdrant-config", "configMap": {"name": name}},
        {"name": "qdrant-auth", "secret": {"secretName": auth_secret_name(name), "optional": True}},
    ]
    if tls_enabled(cluster):
        tls = spec.get("tls") or {}
        volume_mounts.append({"name": "qdrant-tls", "mountPath": "/tls", "readOnly": True})
        volumes.append({"name": "qdrant-tls", "secret": {"secretName": tls.get("secretName") or f"{name}-tls"}})

    claim: dict[str, Any] = {
        "metadata": {"name": "qdrant-storage"},
        "spec": {
            "accessModes": ["ReadWriteOnce"],
            "resources": {"requests": {"storage": persistence.get("size") or "1Gi"}},
        },
    }
    if persistence.get("storageClassName"):
        claim["spec"]["storageClassName"] = persistence["storageClassName"]

    container: dict[str, Any] = {
        "name": "qdrant",
        "image": spec["image"],
        "ports": [
            {"name": "http", "containerPort": HTTP_PORT},
            {"name": "grpc", "containerPort": GRPC_PORT},
            {"name": "p2p", "containerPort": P2P_PORT},
        ],
        "env": [
            {"name": "QDRANT_INIT_FILE_PATH", "value": "/qdrant/init/.qdrant-initialized"},
            {"name": "POD_NAME", "valueFrom": {"fieldRef": {"fieldPath": "metadata.name"}}},
        ],
        "readinessProbe": {
            "httpGet": {
                "path": "/readyz",
                "port": HTTP_PORT,
                "scheme": "HTTPS" if tls_enabled(cluster) else "HTTP",
            },
            "initialDelaySeconds": 5,
            "periodSeconds": 5,
        },
        "volumeMounts": volume_mounts,
    }
    if spec.get("resources"):
        container["resources"] = spec["resources"]

    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": _object_meta(cluster, name),
        "spec": {
            "serviceName": headless_service_name(cluster),
            "replicas": spec["replicas"],
            "podManagementPolicy": "Parallel",
            "selector": {"matchLabels": labels(cluster)},
            "template": {
                "metadata": {"labels": labels(cluster)},
                "spec": {"containers": [container], "volumes": volumes},
            },
            "volumeClaimTemplates": [claim],
        },
    }


def _job_labels(owner: dict[str, Any], role: str) -> dict[str, str]:
    return {
        "app.kubernetes.io/managed-by": MANAGED_BY,
        "qdrant.operator/role": role,
        "qdrant.operator/owner": metadata_of(owner)["name"],
    }


def _snapshot_env(
    collection: dict[str, Any], cluster_url: str, cluster_name: str
) -> list[dict[str, Any]]:
    snapshots = spec_of(collection).get("snapshots") or {}
    env: list[dict[str, Any]] = [
        {"name": "QDRANT_URL", "value": cluster_url},
        {"name": "COLLECTION", "value": metadata_of(collection)["name"]},
        {
            "name": "QDRANT_API_KEY",
            "valueFrom": {
                "secretKeyRef": {
                    "name": api_key_secret_name(cluster_name),
                    "key": "api-key",
                    "optional": True,
                }
            },
        },
    ]
    for source, target in (
        ("s3EndpointURL", "S3_ENDPOINT_URL"),
        ("bucketName", "S3_BUCKET"),
        ("prefix", "S3_PREFIX"),
    ):
        if snapshots.get(source):
            env.append({"name": target, "value": str(snapshots[source])})
    if snapshots.get("s3CredentialsSecretName"):
        env.append(
            {"name": "S3_CREDENTIALS_SECRET", "value": snapshots["s3CredentialsSecretName"]}
        )
    return env


def _job_spec(image: str, command: list[str], env: list[dict[str, Any]], job_labels: dict[str, str]) -> dict[str, Any]:
    return {
        "backoffLimit": 0,
        "template": {
            "metadata": {"labels": job_labels},
            "spec": {
                "restartPolicy": "Never",
                "containers": [
                    {"name": "snapshot", "image": image, "command": command, "env": env}
                ],
            },
        },
    }


def backup_job(
    collection: dict[str, Any], cluster_url: str, cluster_name: str, image: str
) -> dict[str, Any]:
    name = metadata_of(collection)["name"]
    generation = metadata_of(collection).get("generation") or 0
    job_labels = _job_labels(collection, "backup")
    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": _object_meta(collection, f"{name}-backup-{generation}", job_labels),
        "spec": _job_spec(image, ["backup"], _snapshot_env(collection, cluster_url, cluster_name), job_labels),
    }


def backup_cron_job(
    collection: dict[str, Any], cluster_url: str, cluster_name: str, image: str
) -> dict[str, Any]:
    name = metadata_of(collection)["name"]
    snapshots = spec_of(collection).get("snapshots") or {}
    job_labels = _job_labels(collection, "backup")
    return {
        "apiVersion": "batch/v1",
        "kind": "CronJob",
        "metadata": _object_meta(collection, f"{name}-backup", job_labels),
        "spec": {
            "schedule": snapshots["backupSchedule"],
            "concurrencyPolicy": "Forbid",
            "successfulJobsHistoryLimit": 3,
            "failedJobsHistoryLimit": 3,
            "jobTemplate": {
                "spec": _job_spec(
                    image, ["backup"], _snapshot_env(collection, cluster_url, cluster_name), job_labels
                )
            },
        },
    }


def restore_job_name(restore: dict[str, Any]) -> str:
    return f"{metadata_of(restore)['name']}-restore"


def restore_job(
    restore: dict[str, Any],
    collection: dict[str, Any],
    cluster_url: str,
    cluster_name: str,
    image: str,
) -> dict[str, Any]:
    job_labels = _job_labels(restore, "restore")
    env = _snapshot_env(collection, cluster_url, cluster_name)
    env.append({"name": "BACKUP_ID", "value": str(spec_of(restore).get("backupId") or "")})
    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": _object_meta(restore, restore_job_name(restore), job_labels),
        "spec": _job_spec(image, ["restore"], env, job_labels),
    }

from __future__ import annotations

import logging
from dataclasses import dataclass

from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Prefer the in-cluster service account; fall back to ~/.kube/config for local runs."""
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


@dataclass(frozen=True)
class KubeClients:
    custom: client.CustomObjectsApi
    core: client.CoreV1Api
    apps: client.AppsV1Api
    batch: client.BatchV1Api
    policy: client.PolicyV1Api
    networking: client.NetworkingV1Api
    coordination: client.CoordinationV1Api


def build_clients() -> KubeClients:
    """Return one typed API client per group the operator touches."""
    api_client = client.ApiClient()
    return KubeClients(
        custom=client.CustomObjectsApi(api_client),
        core=client.CoreV1Api(api_client),
        apps=client.AppsV1Api(api_client),
        batch=client.BatchV1Api(api_client),
        policy=client.PolicyV1Api(api_client),
        networking=client.NetworkingV1Api(api_client),
        coordination=client.CoordinationV1Api(api_client),
    )

from __future__ import annotations

import base64

import yaml

from qdrant_controller.src import manifests
from qdrant_controller.src.models import MANAGED_BY
from qdrant_controller.tests.fakes import make_cluster, make_collection, make_restore


def test_children_are_owned_and_labelled() -> None:
    cluster = make_cluster()

    for manifest in (
        manifests.config_map(cluster),
        manifests.headless_service(cluster),
        manifests.client_service(cluster),
        manifests.disruption_budget(cluster),
        manifests.network_policy(cluster),
        manifests.stateful_set(cluster),
    ):
        metadata = manifest["metadata"]
        assert metadata["namespace"] == "default"
        assert metadata["labels"]["app.kubernetes.io/managed-by"] == MANAGED_BY
        assert metadata["ownerReferences"] == [
            {
                "apiVersion": cluster["apiVersion"],
                "kind": "QdrantCluster",
                "name": "vectors",
                "uid": "uid-vectors",
                "controller": True,
                "blockOwnerDeletion": True,
            }
        ]


def test_owner_references_need_a_uid() -> None:
    cluster = make_cluster()
    del cluster["metadata"]["uid"]

    assert manifests.owner_references(cluster) == []


def test_stateful_set_follows_spec() -> None:
    cluster = make_cluster(
        replicas=5,
        image="qdrant/qdrant:v1.10.0",
        persistence={"size": "20Gi", "storageClassName": "fast"},
        resources={"limits": {"memory": "2Gi"}},
    )

    manifest = manifests.stateful_set(cluster)

    spec = manifest["spec"]
    container = spec["template"]["spec"]["containers"][0]
    assert spec["replicas"] == 5
    assert spec["serviceName"] == "vectors-headless"
    assert container["image"] == "qdrant/qdrant:v1.10.0"
    assert container["resources"] == {"limits": {"memory": "2Gi"}}
    assert container["readinessProbe"]["httpGet"]["scheme"] == "HTTP"
    claim = spec["volumeClaimTemplates"][0]["spec"]
    assert claim["resources"]["requests"]["storage"] == "20Gi"
    assert claim["storageClassName"] == "fast"


def test_tls_mounts_certificate_and_switches_scheme() -> None:
    cluster = make_cluster(tls={"enabled": True, "secretName": "vectors-certs"})

    manifest = manifests.stateful_set(cluster)
    settings = yaml.safe_load(manifests.config_map(cluster)["data"]["production.yaml"])

    volumes = {v["name"]: v for v in manifest["spec"]["template"]["spec"]["volumes"]}
    assert volumes["qdrant-tls"]["secret"]["secretName"] == "vectors-certs"
    container = manifest["spec"]["template"]["spec"]["containers"][0]
    assert container["readinessProbe"]["httpGet"]["scheme"] == "HTTPS"
    assert settings["service"]["enable_tls"] is True
    assert settings["tls"]["cert"] == "/tls/tls.crt"
    assert manifests.cluster_base_url(cluster) == "https://vectors.default:6333"


def test_single_replica_config_disables_clustering() -> None:
    settings = yaml.safe_load(manifests.config_map(make_cluster(replicas=1))["data"]["production.yaml"])

    assert settings["cluster"]["enabled"] is False
    assert "tls" not in settings


def test_secrets_carry_keys() -> None:
    cluster = make_cluster()

    api_key = manifests.api_key_secret(cluster, "vectors-apikey", "s3cret")
    auth = manifests.auth_secret(cluster, "s3cret", "read-only")

    assert base64.b64decode(api_key["data"]["api-key"]) == b"s3cret"
    assert auth["metadata"]["name"] == "vectors-auth-config"
    assert yaml.safe_load(auth["stringData"]["local.yaml"]) == {
        "service": {"api_key": "s3cret", "read_only_api_key": "read-only"}
    }


def test_backup_jobs_are_named_per_generation() -> None:
    collection = make_collection(generation=4, snapshots={"bucketName": "b", "backupSchedule": "@daily"})

    job = manifests.backup_job(collection, "http://vectors.default:6333", "vectors", "img")
    cron = manifests.backup_cron_job(collection, "http://vectors.default:6333", "vectors", "img")

    assert job["metadata"]["name"] == "docs-backup-4"
    assert job["spec"]["backoffLimit"] == 0
    assert cron["metadata"]["name"] == "docs-backup"
    assert cron["spec"]["schedule"] == "@daily"
    assert cron["spec"]["concurrencyPolicy"] == "Forbid"


def test_restore_job_is_deterministic() -> None:
    restore = make_restore()
    collection = make_collection(snapshots={"bucketName": "b", "prefix": "nightly"})

    job = manifests.restore_job(restore, collection, "http://vectors.default:6333", "vectors", "img")

    assert job["metadata"]["name"] == manifests.restore_job_name(restore) == "docs-restore-restore"
    container = job["spec"]["template"]["spec"]["containers"][0]
    env = {e["name"]: e.get("value") for e in container["env"]}
    assert container["command"] == ["restore"]
    assert env["S3_PREFIX"] == "nightly"
    assert env["BACKUP_ID"] == "backup-20240101"

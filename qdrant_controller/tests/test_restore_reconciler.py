from __future__ import annotations

import copy

import pytest
from kubernetes.client import ApiException

from qdrant_controller.src.context import ReconcileContext
from qdrant_controller.src.models import ReconcileRequest, ResourceKey, ResourceKind
from qdrant_controller.tests.fakes import (
    FakePlatform,
    make_cluster,
    make_collection,
    make_job,
    make_restore,
    sample,
)

KEY = ResourceKey("default", "docs-restore")
JOB = "docs-restore-restore"


def _seed(platform: FakePlatform, snapshots: dict | None = None, **restore_status: str) -> dict:
    platform.add(ResourceKind.CLUSTER, make_cluster(status={"qdrantStatus": "Healthy"}))
    platform.add(
        ResourceKind.COLLECTION,
        make_collection(snapshots={"bucketName": "snapshots"} if snapshots is None else snapshots),
    )
    return platform.add(ResourceKind.RESTORE, make_restore(status=dict(restore_status)))


async def _reconcile(context: ReconcileContext, platform: FakePlatform, restore: dict) -> dict:
    await context.restore_reconciler.reconcile(
        ReconcileRequest(key=KEY, kind=ResourceKind.RESTORE, obj=restore)
    )
    return platform.stored(ResourceKind.RESTORE, KEY.name)


@pytest.mark.asyncio
async def test_successful_restore_completes(context: ReconcileContext, platform: FakePlatform) -> None:
    restore = _seed(platform)
    platform.new_job_state = make_job(complete=True)

    stored = await _reconcile(context, platform, restore)

    status = stored["status"]
    assert status["phase"] == "Completed"
    assert status["message"] == "Restore completed"
    assert status["jobName"] == JOB
    assert status["startedAt"] and status["completedAt"]
    job = platform.created_jobs[0]
    env = {e["name"]: e.get("value") for e in job["spec"]["template"]["spec"]["containers"][0]["env"]}
    assert env["BACKUP_ID"] == "backup-20240101"
    assert env["COLLECTION"] == "docs"


@pytest.mark.asyncio
async def test_restore_passes_through_in_progress(context: ReconcileContext, platform: FakePlatform) -> None:
    restore = _seed(platform)
    platform.new_job_state = make_job(succeeded=1)

    await _reconcile(context, platform, restore)

    phases = [status["phase"] for kind, _, status in platform.status_writes if kind is ResourceKind.RESTORE]
    assert phases == ["InProgress", "InProgress", "Completed"]


@pytest.mark.asyncio
async def test_failed_job_fails_restore(context: ReconcileContext, platform: FakePlatform) -> None:
    restore = _seed(platform)
    platform.new_job_state = make_job(failed=True)

    stored = await _reconcile(context, platform, restore)

    assert stored["status"]["phase"] == "Failed"
    assert stored["status"]["message"] == "Restore job failed"
    assert stored["status"]["error"] == f"Job {JOB} failed"


@pytest.mark.asyncio
async def test_job_that_never_finishes_times_out(context: ReconcileContext, platform: FakePlatform) -> None:
    restore = _seed(platform)

    stored = await _reconcile(context, platform, restore)

    assert platform.calls.count("read_job") == context.settings.restore_max_polls
    assert stored["status"]["phase"] == "Failed"
    assert stored["status"]["message"] == f"Restore job {JOB} did not finish in time"


@pytest.mark.asyncio
async def test_existing_job_is_reused(context: ReconcileContext, platform: FakePlatform) -> None:
    restore = _seed(platform)
    platform.jobs[("default", JOB)] = make_job(complete=True)

    stored = await _reconcile(context, platform, restore)

    assert platform.created_jobs == []
    assert stored["status"]["phase"] == "Completed"


@pytest.mark.asyncio
async def test_collection_without_snapshots_fails_restore(
    context: ReconcileContext, platform: FakePlatform
) -> None:
    restore = _seed(platform, snapshots={})
    before = sample("qdrant_operator_errors_total", type="restore")

    stored = await _reconcile(context, platform, restore)

    assert stored["status"]["phase"] == "Failed"
    assert stored["status"]["message"] == "Restore failed"
    assert "no snapshot configuration" in stored["status"]["error"]
    assert platform.created_jobs == []
    assert sample("qdrant_operator_errors_total", type="restore") == before + 1


@pytest.mark.asyncio
async def test_job_read_error_fails_restore(context: ReconcileContext, platform: FakePlatform) -> None:
    restore = _seed(platform)
    platform.fail("read_job", ApiException(status=500, reason="boom"))

    stored = await _reconcile(context, platform, restore)

    assert stored["status"]["phase"] == "Failed"
    assert stored["status"]["message"] == "Restore failed"


@pytest.mark.asyncio
@pytest.mark.parametrize("phase", ["Completed", "Failed"])
async def test_finished_restore_is_left_alone(
    context: ReconcileContext, platform: FakePlatform, phase: str
) -> None:
    restore = _seed(platform, phase=phase)
    platform.calls.clear()

    await _reconcile(context, platform, restore)

    assert platform.calls == ["get_custom_object"]
    assert platform.created_jobs == []


@pytest.mark.asyncio
async def test_stale_in_progress_event_for_completed_restore_is_ignored(
    context: ReconcileContext, platform: FakePlatform
) -> None:
    stored = _seed(platform, phase="Completed", jobName=JOB)
    stale = copy.deepcopy(stored)
    stale["status"] = {"phase": "InProgress", "jobName": JOB}
    platform.new_job_state = make_job(complete=True)

    result = await _reconcile(context, platform, stale)

    assert [w for w in platform.status_writes if w[0] is ResourceKind.RESTORE] == []
    assert platform.created_jobs == []
    assert result["status"] == {"phase": "Completed", "jobName": JOB}


@pytest.mark.asyncio
async def test_deleted_restore_is_skipped(context: ReconcileContext, platform: FakePlatform) -> None:
    restore = make_restore()

    await context.restore_reconciler.reconcile(
        ReconcileRequest(key=KEY, kind=ResourceKind.RESTORE, obj=restore)
    )

    assert platform.status_writes == []
    assert platform.created_jobs == []

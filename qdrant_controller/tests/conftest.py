from __future__ import annotations

import pytest

from qdrant_controller.src.config import OperatorSettings
from qdrant_controller.src.context import ReconcileContext
from qdrant_controller.tests.fakes import FakeDatabase, FakePlatform


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def database() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def settings() -> OperatorSettings:
    # Long retry delays keep armed retries from firing inside a test;
    # readiness and restore polling run without sleeping.
    return OperatorSettings(
        debounce_seconds=0,
        retry_base_seconds=30,
        retry_max_seconds=60,
        readiness_retry_seconds=0,
        readiness_poll_attempts=3,
        restore_poll_interval_seconds=0,
        restore_max_polls=3,
        job_image="example/qdrant-snapshots:test",
    )


@pytest.fixture
def context(settings: OperatorSettings, platform: FakePlatform, database: FakeDatabase) -> ReconcileContext:
    return ReconcileContext.build(settings, platform, database)

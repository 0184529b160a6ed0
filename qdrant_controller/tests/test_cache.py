from __future__ import annotations

import pytest

from qdrant_controller.src.cache import StateCache
from qdrant_controller.src.models import ResourceKey


def test_basic_operations() -> None:
    cache: StateCache[str] = StateCache("cluster")
    key = ResourceKey("default", "vectors")

    cache.set(key, "value")

    assert cache.get(key) == "value"
    assert key in cache
    assert len(cache) == 1
    assert list(cache) == [key]

    cache.delete(key)
    cache.delete(key)

    assert cache.get(key) is None
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_refresh_stores_loaded_value() -> None:
    cache: StateCache[int] = StateCache("statefulset")
    key = ResourceKey("default", "vectors")

    async def loader() -> int:
        return 42

    assert await cache.refresh(key, loader) == 42
    assert cache.get(key) == 42


@pytest.mark.asyncio
async def test_refresh_failure_keeps_previous_value() -> None:
    cache: StateCache[int] = StateCache("statefulset")
    key = ResourceKey("default", "vectors")
    cache.set(key, 1)

    async def loader() -> int:
        raise RuntimeError("api unavailable")

    assert await cache.refresh(key, loader) is None
    assert cache.get(key) == 1

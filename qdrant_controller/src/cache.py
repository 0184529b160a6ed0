from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterator
from typing import Generic, TypeVar

from qdrant_controller.src.models import ResourceKey

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class StateCache(Generic[T]):
    """Last-observed copy of one object family, keyed by :class:`ResourceKey`.

    Nothing read from here decides whether an object exists; reconcilers use
    it to skip an API round trip and fall back to the API on a miss.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._entries: dict[ResourceKey, T] = {}

    def get(self, key: ResourceKey) -> T | None:
        return self._entries.get(key)

    def set(self, key: ResourceKey, value: T) -> None:
        self._entries[key] = value

    def delete(self, key: ResourceKey) -> None:
        self._entries.pop(key, None)

    def keys(self) -> list[ResourceKey]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ResourceKey]:
        return iter(self.keys())

    async def refresh(self, key: ResourceKey, loader: Callable[[], Awaitable[T]]) -> T | None:
        try:
            value = await loader()
        except Exception:
            LOGGER.debug("Advisory %s cache refresh failed for %s", self.name, key, exc_info=True)
            return None
        self._entries[key] = value
        return value

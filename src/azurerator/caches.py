"""Advisory lookup caches.

Entries only save a redundant lookup. A miss or a stale entry must never
change behaviour, so callers always have a slow path. Caches are created by
the process entry point and injected; there is no module level state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Generic, TypeVar

from .models import Namespace

V = TypeVar("V")


class AdvisoryCache(Generic[V]):
    """An unbounded mapping that tolerates loss of any entry."""

    def __init__(self) -> None:
        self._entries: dict[str, V] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> V | None:
        if key in self._entries:
            self.hits += 1
            return self._entries[key]
        self.misses += 1
        return None

    def set(self, key: str, value: V) -> None:
        self._entries[key] = value

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class Caches:
    # namespace name -> namespace metadata
    namespaces: AdvisoryCache[Namespace] = field(default_factory=AdvisoryCache)
    # service principal object ID -> whether the principal's application is managed here
    managed_principals: AdvisoryCache[bool] = field(default_factory=AdvisoryCache)

"""Bounded, expiring in-process caches and the millisecond clock.

The sync engine keeps two small maps between passes: preferred relative
paths recorded by pull (consumed by the next push) and recently imported
paths (so a pull does not re-create a document it just created).  Both are
optimizations; losing them only costs an extra write or rescan.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable, Hashable, Iterator
from datetime import datetime, timezone
from typing import Generic, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

Clock = Callable[[], float]

RECENT_IMPORT_WINDOW_MS = 30_000
# Preferred paths unused for an hour are stale; the next push recomputes.
PATH_OVERRIDE_TTL_MS = 3_600_000


def system_clock() -> float:
    """Current time in epoch milliseconds."""
    return time.time() * 1000


def to_datetime(ms: float) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def iso_timestamp(ms: float) -> str:
    """Format epoch milliseconds as ``2024-05-01T12:00:00.000Z``."""
    text = to_datetime(ms).isoformat(timespec="milliseconds")
    return text.replace("+00:00", "Z")


class ExpiringCache(Generic[K, V]):
    """Insertion-ordered map with a size bound and optional TTL.

    Args:
        max_entries: Oldest entries are evicted beyond this size.
        ttl_ms: Entries older than this are dropped on access.  ``None``
            keeps entries until evicted or deleted.
        clock: Millisecond clock; injectable for tests.
    """

    def __init__(
        self,
        max_entries: int = 1024,
        ttl_ms: float | None = None,
        clock: Clock | None = None,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.ttl_ms = ttl_ms
        self._clock = clock or system_clock
        self._data: OrderedDict[K, tuple[V, float]] = OrderedDict()

    def _expired(self, stored_at: float) -> bool:
        if self.ttl_ms is None:
            return False
        return self._clock() - stored_at > self.ttl_ms

    def get(self, key: K, default: V | None = None) -> V | None:
        item = self._data.get(key)
        if item is None:
            return default
        value, stored_at = item
        if self._expired(stored_at):
            del self._data[key]
            return default
        return value

    def set(self, key: K, value: V) -> None:
        if key in self._data:
            self._data.move_to_end(key)
        self._data[key] = (value, self._clock())
        while len(self._data) > self.max_entries:
            self._data.popitem(last=False)

    def delete(self, key: K) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        stale = [key for key, (_, at) in self._data.items() if self._expired(at)]
        for key in stale:
            del self._data[key]
        return len(stale)

    def __contains__(self, key: object) -> bool:
        return self.get(key) is not None  # type: ignore[arg-type]

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self) -> Iterator[K]:
        return iter(list(self._data))

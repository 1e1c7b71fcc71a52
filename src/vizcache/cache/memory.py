"""In-process LRU tier bounded by bytes."""

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .models import ArtifactHandle

logger = logging.getLogger(__name__)


@dataclass
class _MemoryEntry:
    handle: ArtifactHandle
    size: int
    last_accessed_at: float
    access_count: int = 1


class MemoryTier:
    """Strict LRU map from cache key to artifact handle.

    Bounded by a byte budget rather than an entry count, since text and
    audio artifacts differ in size by orders of magnitude. Not persisted:
    after a restart it refills lazily from the local tier.

    Guarded by a thread lock because the local tier evicts from its worker
    thread through ``discard()``.
    """

    def __init__(
        self, max_bytes: int, clock: Callable[[], float] = time.time
    ) -> None:
        """Initialize memory tier.

        Args:
            max_bytes: Byte budget (must be positive)
            clock: Time source for access statistics

        Raises:
            ValueError: If max_bytes is not positive
        """
        if max_bytes <= 0:
            raise ValueError(f"max_bytes must be positive, got {max_bytes}")

        self.max_bytes = max_bytes
        self._clock = clock
        self._entries: OrderedDict[str, _MemoryEntry] = OrderedDict()
        self._used = 0
        self._lock = threading.Lock()

        self.hits = 0
        self.misses = 0
        self.evictions = 0

    def get(self, key: str) -> ArtifactHandle | None:
        """Return the handle for key and mark it most recently used."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None

            self._entries.move_to_end(key)
            entry.last_accessed_at = self._clock()
            entry.access_count += 1
            self.hits += 1
            return entry.handle

    def put(self, key: str, handle: ArtifactHandle, size: int) -> bool:
        """Insert or replace key, evicting least recently used entries.

        Args:
            key: Cache key
            handle: Artifact handle to hold
            size: Accounted size in bytes

        Returns:
            False if the artifact alone exceeds the budget and was not stored
        """
        if size < 0:
            raise ValueError(f"size cannot be negative, got {size}")

        with self._lock:
            existing = self._entries.pop(key, None)
            if existing is not None:
                self._used -= existing.size

            if size > self.max_bytes:
                logger.debug(
                    f"Not holding {key} in memory: {size} bytes exceeds "
                    f"budget of {self.max_bytes}"
                )
                return False

            while self._entries and self._used + size > self.max_bytes:
                evicted_key, evicted = self._entries.popitem(last=False)
                self._used -= evicted.size
                self.evictions += 1
                logger.debug(f"Evicted {evicted_key} from memory ({evicted.size} bytes)")

            self._entries[key] = _MemoryEntry(
                handle=handle, size=size, last_accessed_at=self._clock()
            )
            self._used += size
            return True

    def discard(self, key: str) -> bool:
        """Remove key if present. Returns True if something was removed."""
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None:
                return False
            self._used -= entry.size
            return True

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._used = 0

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def used_bytes(self) -> int:
        return self._used

    def keys(self) -> list[str]:
        """Keys from least to most recently used."""
        with self._lock:
            return list(self._entries)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            lookups = self.hits + self.misses
            return {
                "entries": len(self._entries),
                "used_bytes": self._used,
                "max_bytes": self.max_bytes,
                "usage_percent": self._used / self.max_bytes * 100,
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
                "hit_rate": self.hits / lookups if lookups else 0.0,
            }

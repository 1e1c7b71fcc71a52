"""Data models for the tiered cache."""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class Source(str, Enum):
    """Where a fetch was satisfied from."""

    MEMORY = "memory"
    LOCAL = "local"
    REMOTE = "remote"
    GENERATED = "generated"


class ClearScope(str, Enum):
    """Which tiers ``clear()`` empties. The shared remote store is never cleared."""

    MEMORY = "memory"
    LOCAL = "local"
    ALL = "all"


@dataclass
class ArtifactRecord:
    """Index record for one cached artifact.

    Attributes:
        key: Cache key the artifact is stored under
        tier_location: Path of the blob in the local tier
        byte_size: Blob size in bytes
        created_at: Unix time the artifact was first stored locally
        last_accessed_at: Unix time of the most recent hit
        access_count: Number of hits including the initial store
        source_metadata: Provenance (generator, request parameters)
        remote_url: URL in the remote tier once an upload is confirmed
    """

    key: str
    tier_location: Path
    byte_size: int
    created_at: float
    last_accessed_at: float
    access_count: int = 1
    source_metadata: dict[str, Any] = field(default_factory=dict)
    remote_url: str | None = None


@dataclass
class ArtifactHandle:
    """What callers get back from a fetch.

    Points at the blob in the local tier. ``data`` is only set when the
    local tier could not store the artifact and the bytes are held inline.
    """

    key: str
    path: Path | None
    byte_size: int
    source: Source
    metadata: dict[str, Any] = field(default_factory=dict)
    data: bytes | None = None

    def read_bytes(self) -> bytes:
        if self.data is not None:
            return self.data
        if self.path is None:
            raise FileNotFoundError(f"Artifact {self.key} has no backing blob")
        return self.path.read_bytes()

    def is_available(self) -> bool:
        """True if the artifact bytes can still be read."""
        if self.data is not None:
            return True
        return self.path is not None and self.path.exists()


@dataclass
class PendingRequest:
    """One in-flight generation shared by every concurrent caller of a key."""

    key: str
    result_future: asyncio.Future
    waiter_count: int = 0
    task: asyncio.Task | None = None


@dataclass(frozen=True)
class BestEffortResult:
    """Outcome of a detached remote write. Never raised, only reported."""

    key: str
    ok: bool
    url: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class PreloadItemResult:
    """Outcome of one request in a preload batch."""

    index: int
    key: str
    handle: ArtifactHandle | None = None
    error: Exception | None = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.handle is not None


@dataclass
class PreloadSummary:
    """Aggregate outcome of ``preload()``."""

    total: int
    results: list[PreloadItemResult] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.ok and not r.skipped)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.skipped)

    @property
    def generated(self) -> int:
        return sum(
            1 for r in self.results if r.ok and r.handle.source is Source.GENERATED
        )

    @property
    def cache_hits(self) -> int:
        return self.succeeded - self.generated

    def as_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "generated": self.generated,
            "cache_hits": self.cache_hits,
        }

"""Persistent on-disk tier: SQLite index plus a blob directory."""

import asyncio
import json
import logging
import os
import sqlite3
import threading
import time
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any

from ..errors import CorruptEntry, TierUnavailable
from .models import ArtifactRecord

logger = logging.getLogger(__name__)

TMP_PREFIX = ".tmp-"


class LocalTier:
    """Byte-bounded persistent cache that survives process restarts.

    Blobs live in ``<cache_dir>/blobs``; the index lives in
    ``<cache_dir>/index.db`` (SQLite, WAL mode, one connection per
    operation). A write lands the blob under a temporary name, fsyncs it,
    renames it into place and only then publishes the index row, so an
    interrupted write leaves either the previous entry or nothing.

    Eviction has two triggers:
    - age: entries older than ``max_age`` are removed regardless of size
    - size: once usage exceeds the budget, least recently accessed entries
      go until usage is at most ``target_fraction`` of the budget

    All blocking work runs in a worker thread; the public API is async.
    """

    def __init__(
        self,
        cache_dir: Path,
        max_bytes: int,
        max_age: float | None = 24 * 60 * 60,
        target_fraction: float = 0.8,
        suffix: str = ".bin",
        clock: Callable[[], float] = time.time,
        on_evict: Callable[[str], None] | None = None,
    ) -> None:
        """Initialize local tier and reconcile the index with the blobs on disk.

        Args:
            cache_dir: Directory holding index and blobs
            max_bytes: Byte budget (must be positive)
            max_age: Maximum entry age in seconds (None disables the age sweep)
            target_fraction: Usage fraction a size sweep reduces to (0.0-1.0]
            suffix: File extension for blobs (e.g. ".mp3", ".json")
            clock: Time source
            on_evict: Called with each key the tier drops on its own

        Raises:
            ValueError: If a limit is out of range
            TierUnavailable: If the directory or index cannot be created
        """
        if max_bytes <= 0:
            raise ValueError(f"max_bytes must be positive, got {max_bytes}")
        if not 0.0 < target_fraction <= 1.0:
            raise ValueError(
                f"target_fraction must be between 0.0 and 1.0, got {target_fraction}"
            )
        if max_age is not None and max_age <= 0:
            raise ValueError(f"max_age must be positive, got {max_age}")

        self.cache_dir = Path(cache_dir)
        self.blob_dir = self.cache_dir / "blobs"
        self.db_path = self.cache_dir / "index.db"
        self.max_bytes = max_bytes
        self.max_age = max_age
        self.target_fraction = target_fraction
        self.suffix = suffix
        self._clock = clock
        self.on_evict = on_evict
        self._lock = threading.RLock()

        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.corrupt_purged = 0

        try:
            self.blob_dir.mkdir(parents=True, exist_ok=True)
            self._init_db()
        except (OSError, sqlite3.Error) as e:
            raise TierUnavailable(
                f"Cannot open local cache at {self.cache_dir}: {e}", "local", e
            ) from e

        self._recover()

    # -- async API ---------------------------------------------------------

    async def get(self, key: str) -> ArtifactRecord | None:
        """Return the record for key, or None on miss.

        A record whose blob has vanished is purged and reported as a miss.

        Raises:
            TierUnavailable: If the index cannot be read
        """
        return await asyncio.to_thread(self._get_sync, key)

    async def put(
        self, key: str, data: bytes, metadata: dict[str, Any] | None = None
    ) -> ArtifactRecord:
        """Store bytes under key and return the published record.

        Raises:
            TierUnavailable: If the blob or index cannot be written, or the
                artifact alone exceeds the byte budget
        """
        return await asyncio.to_thread(self._put_sync, key, data, metadata or {})

    async def remove(self, key: str) -> bool:
        return await asyncio.to_thread(self._remove_sync, key)

    async def clear(self) -> int:
        """Remove every entry. Returns the number of entries removed."""
        return await asyncio.to_thread(self._clear_sync)

    async def sweep(self) -> list[str]:
        """Run the age and size sweeps now. Returns evicted keys."""
        return await asyncio.to_thread(self._sweep_sync, None)

    async def mark_uploaded(self, key: str, url: str) -> None:
        await asyncio.to_thread(self._mark_uploaded_sync, key, url)

    async def pending_uploads(self, limit: int = 100) -> list[ArtifactRecord]:
        """Entries not yet confirmed in the remote tier, oldest first."""
        return await asyncio.to_thread(self._pending_uploads_sync, limit)

    async def stats(self) -> dict[str, Any]:
        return await asyncio.to_thread(self._stats_sync)

    def used_bytes(self) -> int:
        """Aggregate size of indexed blobs."""
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT COALESCE(SUM(byte_size), 0) AS used FROM artifacts"
            ).fetchone()
        finally:
            conn.close()
        return int(row["used"])

    # -- database ------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        """Get a new database connection with WAL mode for concurrency."""
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=30.0,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        # FULL so a committed index row never outlives a power loss
        conn.execute("PRAGMA synchronous=FULL")
        return conn

    def _init_db(self) -> None:
        """Initialize database schema with tables and indexes."""
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS artifacts (
                    key TEXT PRIMARY KEY,
                    filename TEXT NOT NULL,
                    byte_size INTEGER NOT NULL,
                    created_at REAL NOT NULL,
                    last_accessed_at REAL NOT NULL,
                    access_count INTEGER NOT NULL DEFAULT 1,
                    source_metadata TEXT NOT NULL DEFAULT '{}',
                    remote_url TEXT
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_artifacts_last_accessed
                ON artifacts(last_accessed_at)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_artifacts_created
                ON artifacts(created_at)
            """)
            conn.commit()
        finally:
            conn.close()

    def _row_to_record(self, row: sqlite3.Row) -> ArtifactRecord:
        try:
            metadata = json.loads(row["source_metadata"])
        except json.JSONDecodeError:
            metadata = {}
        return ArtifactRecord(
            key=row["key"],
            tier_location=self.blob_dir / row["filename"],
            byte_size=row["byte_size"],
            created_at=row["created_at"],
            last_accessed_at=row["last_accessed_at"],
            access_count=row["access_count"],
            source_metadata=metadata,
            remote_url=row["remote_url"],
        )

    # -- sync implementation ---------------------------------------------------

    def _get_sync(self, key: str) -> ArtifactRecord | None:
        with self._lock:
            try:
                conn = self._get_connection()
                try:
                    row = conn.execute(
                        "SELECT * FROM artifacts WHERE key = ?", (key,)
                    ).fetchone()
                    if row is None:
                        self.misses += 1
                        return None

                    record = self._row_to_record(row)
                    now = self._clock()

                    if self._is_expired(record, now):
                        logger.debug(f"Local entry {key} expired, removing")
                        self._delete_rows(conn, [record])
                        self.evictions += 1
                        self.misses += 1
                        self._notify_evicted([key])
                        return None

                    if not record.tier_location.exists():
                        error = CorruptEntry(key, str(record.tier_location))
                        logger.warning(f"Cache corruption healed: {error}")
                        self._delete_rows(conn, [record])
                        self.corrupt_purged += 1
                        self.misses += 1
                        self._notify_evicted([key])
                        return None

                    conn.execute(
                        """
                        UPDATE artifacts
                        SET last_accessed_at = ?, access_count = access_count + 1
                        WHERE key = ?
                        """,
                        (now, key),
                    )
                    conn.commit()
                finally:
                    conn.close()
            except sqlite3.Error as e:
                raise TierUnavailable(f"Local index read failed: {e}", "local", e) from e

            record.last_accessed_at = now
            record.access_count += 1
            self.hits += 1
            return record

    def _put_sync(
        self, key: str, data: bytes, metadata: dict[str, Any]
    ) -> ArtifactRecord:
        size = len(data)
        if size > self.max_bytes:
            raise TierUnavailable(
                f"Artifact {key} ({size} bytes) exceeds local budget of "
                f"{self.max_bytes} bytes",
                "local",
            )

        filename = f"{key}{self.suffix}"
        final_path = self.blob_dir / filename
        tmp_path = self.blob_dir / f"{TMP_PREFIX}{key}-{uuid.uuid4().hex}"

        # Blob first, fully durable, then the index row that publishes it
        try:
            with open(tmp_path, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, final_path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise TierUnavailable(f"Failed to write blob for {key}: {e}", "local", e) from e

        now = self._clock()
        record = ArtifactRecord(
            key=key,
            tier_location=final_path,
            byte_size=size,
            created_at=now,
            last_accessed_at=now,
            access_count=1,
            source_metadata=dict(metadata),
        )

        with self._lock:
            try:
                conn = self._get_connection()
                try:
                    conn.execute(
                        """
                        INSERT OR REPLACE INTO artifacts
                            (key, filename, byte_size, created_at, last_accessed_at,
                             access_count, source_metadata, remote_url)
                        VALUES (?, ?, ?, ?, ?, ?, ?, NULL)
                        """,
                        (
                            key,
                            filename,
                            size,
                            now,
                            now,
                            1,
                            json.dumps(metadata, default=str),
                        ),
                    )
                    conn.commit()
                finally:
                    conn.close()
            except sqlite3.Error as e:
                final_path.unlink(missing_ok=True)
                raise TierUnavailable(
                    f"Failed to index blob for {key}: {e}", "local", e
                ) from e

            logger.debug(f"Stored {key} locally ({size} bytes)")
            self._sweep_sync(protect=key)

        return record

    def _remove_sync(self, key: str) -> bool:
        with self._lock:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM artifacts WHERE key = ?", (key,)
                ).fetchone()
                if row is None:
                    return False
                self._delete_rows(conn, [self._row_to_record(row)])
                return True
            finally:
                conn.close()

    def _clear_sync(self) -> int:
        with self._lock:
            conn = self._get_connection()
            try:
                count = conn.execute("SELECT COUNT(*) AS n FROM artifacts").fetchone()["n"]
                conn.execute("DELETE FROM artifacts")
                conn.commit()
            finally:
                conn.close()

            for path in self.blob_dir.iterdir():
                if path.is_file():
                    path.unlink(missing_ok=True)

            logger.info(f"Cleared {count} local cache entries")
            return count

    def _sweep_sync(self, protect: str | None) -> list[str]:
        """Age sweep, then size sweep down to the target fraction."""
        with self._lock:
            evicted: list[ArtifactRecord] = []
            conn = self._get_connection()
            try:
                if self.max_age is not None:
                    cutoff = self._clock() - self.max_age
                    rows = conn.execute(
                        "SELECT * FROM artifacts WHERE created_at <= ?", (cutoff,)
                    ).fetchall()
                    expired = [
                        self._row_to_record(row) for row in rows if row["key"] != protect
                    ]
                    if expired:
                        logger.debug(f"Age sweep removing {len(expired)} entries")
                        self._delete_rows(conn, expired)
                        evicted.extend(expired)

                used = conn.execute(
                    "SELECT COALESCE(SUM(byte_size), 0) AS used FROM artifacts"
                ).fetchone()["used"]

                if used > self.max_bytes:
                    target = self.max_bytes * self.target_fraction
                    rows = conn.execute(
                        """
                        SELECT * FROM artifacts
                        ORDER BY last_accessed_at ASC, created_at ASC
                        """
                    ).fetchall()
                    victims = []
                    for row in rows:
                        if used <= target:
                            break
                        if row["key"] == protect:
                            continue
                        victims.append(self._row_to_record(row))
                        used -= row["byte_size"]
                    if victims:
                        logger.debug(
                            f"Size sweep removing {len(victims)} entries, "
                            f"usage now {used}/{self.max_bytes} bytes"
                        )
                        self._delete_rows(conn, victims)
                        evicted.extend(victims)
            finally:
                conn.close()

            self.evictions += len(evicted)
            keys = [record.key for record in evicted]
            self._notify_evicted(keys)
            return keys

    def _mark_uploaded_sync(self, key: str, url: str) -> None:
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute(
                    "UPDATE artifacts SET remote_url = ? WHERE key = ?", (url, key)
                )
                conn.commit()
            finally:
                conn.close()

    def _pending_uploads_sync(self, limit: int) -> list[ArtifactRecord]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                """
                SELECT * FROM artifacts WHERE remote_url IS NULL
                ORDER BY created_at ASC LIMIT ?
                """,
                (limit,),
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_record(row) for row in rows]

    def _stats_sync(self) -> dict[str, Any]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                """
                SELECT COUNT(*) AS entries,
                       COALESCE(SUM(byte_size), 0) AS used,
                       COALESCE(SUM(remote_url IS NULL), 0) AS pending
                FROM artifacts
                """
            ).fetchone()
        finally:
            conn.close()
        lookups = self.hits + self.misses
        return {
            "entries": row["entries"],
            "used_bytes": row["used"],
            "max_bytes": self.max_bytes,
            "usage_percent": row["used"] / self.max_bytes * 100,
            "pending_uploads": row["pending"],
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "corrupt_purged": self.corrupt_purged,
            "hit_rate": self.hits / lookups if lookups else 0.0,
        }

    # -- helpers -------------------------------------------------------------

    def _is_expired(self, record: ArtifactRecord, now: float) -> bool:
        return self.max_age is not None and now - record.created_at >= self.max_age

    def _delete_rows(
        self, conn: sqlite3.Connection, records: list[ArtifactRecord]
    ) -> None:
        """Unpublish index rows, then delete their blobs."""
        conn.executemany(
            "DELETE FROM artifacts WHERE key = ?", [(r.key,) for r in records]
        )
        conn.commit()
        for record in records:
            try:
                record.tier_location.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to delete blob {record.tier_location}: {e}")

    def _notify_evicted(self, keys: list[str]) -> None:
        if self.on_evict is None:
            return
        for key in keys:
            try:
                self.on_evict(key)
            except Exception as e:
                logger.error(f"Eviction callback failed for {key}: {e}")

    def _recover(self) -> None:
        """Reconcile index and blob directory after a restart or crash."""
        with self._lock:
            leftovers = 0
            orphans = 0
            stale: list[ArtifactRecord] = []

            conn = self._get_connection()
            try:
                records = [
                    self._row_to_record(row)
                    for row in conn.execute("SELECT * FROM artifacts").fetchall()
                ]
                indexed = {record.tier_location.name for record in records}

                stale = [r for r in records if not r.tier_location.exists()]
                if stale:
                    self._delete_rows(conn, stale)
            finally:
                conn.close()

            for path in self.blob_dir.iterdir():
                if not path.is_file():
                    continue
                if path.name.startswith(TMP_PREFIX):
                    path.unlink(missing_ok=True)
                    leftovers += 1
                elif path.name not in indexed:
                    path.unlink(missing_ok=True)
                    orphans += 1

            self.corrupt_purged += len(stale)

        swept = self._sweep_sync(protect=None)

        if stale or leftovers or orphans or swept:
            logger.info(
                f"Local cache recovery at {self.cache_dir}: purged {len(stale)} "
                f"stale entries, {leftovers} partial writes, {orphans} orphaned "
                f"blobs, swept {len(swept)} entries"
            )

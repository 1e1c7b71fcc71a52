"""Tiered cache orchestrator: memory, local disk, remote store, then generation."""

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, replace
from typing import Any, Generic, TypeVar

from ..errors import (
    CacheError,
    CorruptEntry,
    GenerationFailed,
    ProviderError,
    QuotaError,
    QuotaExceeded,
    RateLimited,
    TierUnavailable,
)
from ..providers.base import Generator
from ..quota import QuotaGovernor
from .coalescer import RequestCoalescer
from .keys import KeyDeriver
from .local import LocalTier
from .memory import MemoryTier
from .models import (
    ArtifactHandle,
    BestEffortResult,
    ClearScope,
    PreloadItemResult,
    PreloadSummary,
    Source,
)
from .remote import RemoteTier

logger = logging.getLogger(__name__)

RequestT = TypeVar("RequestT")

ProgressCallback = Callable[[int, int, PreloadItemResult], None]


@dataclass
class _PreloadRun:
    epoch: int
    quota_exhausted: bool = False


class TieredCache(Generic[RequestT]):
    """Single entry point for cached generated content.

    Lookup order is memory, local, remote; the first hit wins and fills the
    faster tiers. On a full miss the request goes through the coalescer
    (one generation per key at a time) and the quota governor before the
    generator is called. Generated artifacts are written to the local tier
    and memory before ``fetch`` returns; the remote upload runs as a
    detached task whose outcome lands in ``remote_results``.

    Only ``CacheError`` subclasses leave ``fetch``:
    - ``QuotaExceeded`` / ``RateLimited`` when the governor denies the call
    - ``GenerationFailed`` when the generator fails for any other reason

    Tier failures are logged and fall through to the next tier.

    Example:
        cache = TieredCache("speech", KeyDeriver("speech"), generator,
                            MemoryTier(50 * MB), LocalTier(path, 100 * MB),
                            governor=QuotaGovernor("elevenlabs", STANDARD_TIER))
        handle = await cache.fetch(SpeechRequest(text="Breathe deeply"))
        audio = handle.read_bytes()
    """

    def __init__(
        self,
        name: str,
        keys: KeyDeriver,
        generator: Generator,
        memory: MemoryTier,
        local: LocalTier,
        governor: QuotaGovernor | None = None,
        remote: RemoteTier | None = None,
        coalescer: RequestCoalescer | None = None,
        preload_concurrency: int = 2,
        preload_pause: float = 0.5,
        preload_max_attempts: int = 3,
        sync_pause: float = 0.1,
        history_size: int = 100,
        on_remote_result: Callable[[BestEffortResult], None] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Wire the tiers together.

        Args:
            name: Cache name used in logs and stats ("speech", "personalization")
            keys: Key deriver for this artifact kind
            generator: Produces artifact bytes on a full miss
            memory: In-process tier
            local: Persistent tier
            governor: Quota gate in front of the generator (None = ungoverned)
            remote: Shared tier (None disables it)
            coalescer: In-flight deduplication (a fresh one by default)
            preload_concurrency: Requests started together per preload batch
            preload_pause: Minimum seconds between preload batches
            preload_max_attempts: Tries per preload item denied as rate limited
            sync_pause: Seconds between uploads in ``sync_remote``
            history_size: Number of remote write outcomes kept
            on_remote_result: Called with every remote write outcome
            sleep: Awaitable sleep (tests substitute a fake)

        Raises:
            ValueError: If a preload setting is out of range
        """
        if preload_concurrency < 1:
            raise ValueError(f"preload_concurrency must be >= 1, got {preload_concurrency}")
        if preload_max_attempts < 1:
            raise ValueError(
                f"preload_max_attempts must be >= 1, got {preload_max_attempts}"
            )
        if preload_pause < 0 or sync_pause < 0:
            raise ValueError("pauses cannot be negative")

        self.name = name
        self.keys = keys
        self.generator = generator
        self.memory = memory
        self.local = local
        self.governor = governor
        self.remote = remote
        self.coalescer = coalescer or RequestCoalescer()
        self.preload_concurrency = preload_concurrency
        self.preload_pause = preload_pause
        self.preload_max_attempts = preload_max_attempts
        self.sync_pause = sync_pause
        self.on_remote_result = on_remote_result
        self._sleep = sleep

        # Whatever the local tier drops must not linger in memory
        if self.local.on_evict is None:
            self.local.on_evict = self.memory.discard

        self.remote_results: deque[BestEffortResult] = deque(maxlen=history_size)
        self._background: set[asyncio.Task] = set()
        self._epoch = 0
        self._reset_counters()

    def _reset_counters(self) -> None:
        self.fetches = 0
        self.served: dict[Source, int] = {source: 0 for source in Source}
        self.remote_writes_ok = 0
        self.remote_writes_failed = 0

    # -- fetch -----------------------------------------------------------------

    async def fetch(self, request: RequestT) -> ArtifactHandle:
        """Return the artifact for request, generating it on a full miss.

        Raises:
            QuotaExceeded: Daily budget spent; retry after ``wait_seconds``
            RateLimited: Too soon or backing off; retry after ``wait_seconds``
            GenerationFailed: Generator failed for a non-quota reason
            CacheError: Request could not be keyed, or an unexpected failure
        """
        try:
            key = self.keys.derive(request)
        except TypeError as e:
            raise CacheError(f"Cannot derive cache key: {e}", e) from e

        self.fetches += 1
        try:
            handle = await self._lookup(key, request)
        except CacheError:
            raise
        except Exception as e:
            logger.error(f"[{self.name}] Unexpected failure fetching {key}: {e}")
            raise CacheError(
                f"Unexpected failure in {self.name} cache: {e}", e
            ) from e

        self.served[handle.source] += 1
        return handle

    async def _lookup(self, key: str, request: RequestT) -> ArtifactHandle:
        handle = self._from_memory(key)
        if handle is not None:
            logger.debug(f"[{self.name}] Memory hit for {key}")
            return handle

        handle = await self._from_local(key)
        if handle is not None:
            logger.debug(f"[{self.name}] Local hit for {key}")
            return handle

        handle = await self._from_remote(key, request)
        if handle is not None:
            logger.info(f"[{self.name}] Remote hit for {key}, stored locally")
            return handle

        logger.debug(f"[{self.name}] Cache miss for {key}")
        return await self.coalescer.run(key, lambda: self._produce(key, request))

    def _from_memory(self, key: str) -> ArtifactHandle | None:
        handle = self.memory.get(key)
        if handle is None:
            return None
        if not handle.is_available():
            error = CorruptEntry(key, str(handle.path))
            logger.warning(f"[{self.name}] Memory entry healed: {error}")
            self.memory.discard(key)
            return None
        return replace(handle, source=Source.MEMORY)

    async def _from_local(self, key: str) -> ArtifactHandle | None:
        try:
            record = await self.local.get(key)
        except TierUnavailable as e:
            logger.warning(f"[{self.name}] Local tier unavailable, skipping: {e}")
            return None
        if record is None:
            return None

        handle = ArtifactHandle(
            key=key,
            path=record.tier_location,
            byte_size=record.byte_size,
            source=Source.LOCAL,
            metadata=record.source_metadata,
        )
        self.memory.put(key, handle, record.byte_size)
        return handle

    async def _from_remote(self, key: str, request: RequestT) -> ArtifactHandle | None:
        if self.remote is None:
            return None

        url = await self.remote.get(key)
        if url is None:
            return None

        try:
            data = await self.remote.download(url)
        except TierUnavailable as e:
            logger.warning(f"[{self.name}] Remote download failed for {key}: {e}")
            return None

        handle = await self._store(key, data, self._metadata(request), Source.REMOTE)
        if handle.path is not None:
            try:
                await self.local.mark_uploaded(key, url)
            except Exception as e:
                logger.warning(f"[{self.name}] Could not record remote url for {key}: {e}")
        return handle

    async def _produce(self, key: str, request: RequestT) -> ArtifactHandle:
        # A generation that finished after our lookup already filled memory
        if key in self.memory:
            handle = self._from_memory(key)
            if handle is not None:
                return handle

        try:
            if self.governor is not None:
                data = await self.governor.gate(lambda: self.generator.generate(request))
            else:
                data = await self.generator.generate(request)
        except QuotaError as e:
            logger.warning(f"[{self.name}] Generation denied for {key}: {e}")
            raise
        except ProviderError as e:
            raise GenerationFailed(
                f"{self.generator.name} failed to generate {key}: {e}", e
            ) from e
        except CacheError:
            raise
        except Exception as e:
            raise GenerationFailed(
                f"Unexpected {self.generator.name} failure for {key}: {e}", e
            ) from e

        if not data:
            raise GenerationFailed(f"{self.generator.name} returned no data for {key}")

        metadata = self._metadata(request)
        handle = await self._store(key, data, metadata, Source.GENERATED)
        logger.info(
            f"[{self.name}] Generated and cached {key} ({len(data)} bytes) "
            f"via {self.generator.name}"
        )
        self._schedule_remote_write(key, data, metadata)
        return handle

    async def _store(
        self, key: str, data: bytes, metadata: dict[str, Any], source: Source
    ) -> ArtifactHandle:
        """Write through to local and memory. Falls back to an inline handle."""
        try:
            record = await self.local.put(key, data, metadata)
            handle = ArtifactHandle(
                key=key,
                path=record.tier_location,
                byte_size=record.byte_size,
                source=source,
                metadata=record.source_metadata,
            )
        except TierUnavailable as e:
            logger.warning(f"[{self.name}] Local write failed for {key}, serving inline: {e}")
            handle = ArtifactHandle(
                key=key,
                path=None,
                byte_size=len(data),
                source=source,
                metadata=metadata,
                data=data,
            )

        self.memory.put(key, handle, len(data))
        return handle

    def _metadata(self, request: RequestT) -> dict[str, Any]:
        metadata: dict[str, Any] = {"generator": self.generator.name, "cache": self.name}
        describe = getattr(request, "describe", None)
        if callable(describe):
            metadata["request"] = describe()
        return metadata

    # -- remote best-effort writes ---------------------------------------------

    def _schedule_remote_write(
        self, key: str, data: bytes, metadata: dict[str, Any]
    ) -> None:
        if self.remote is None:
            return
        task = asyncio.create_task(self._remote_write(key, data, metadata))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _remote_write(
        self, key: str, data: bytes, metadata: dict[str, Any]
    ) -> BestEffortResult:
        try:
            url = await self.remote.put(key, data, metadata)
        except TierUnavailable as e:
            logger.warning(f"[{self.name}] Remote write failed for {key}: {e}")
            result = BestEffortResult(key=key, ok=False, error=str(e))
        else:
            try:
                await self.local.mark_uploaded(key, url)
            except Exception as e:
                logger.warning(f"[{self.name}] Uploaded {key} but could not record it: {e}")
            result = BestEffortResult(key=key, ok=True, url=url)

        self._record_remote_result(result)
        return result

    def _record_remote_result(self, result: BestEffortResult) -> None:
        if result.ok:
            self.remote_writes_ok += 1
        else:
            self.remote_writes_failed += 1
        self.remote_results.append(result)
        if self.on_remote_result is not None:
            try:
                self.on_remote_result(result)
            except Exception as e:
                logger.error(f"[{self.name}] Remote result callback failed: {e}")

    async def drain(self) -> None:
        """Wait for every detached remote write to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def sync_remote(self, limit: int = 100) -> list[BestEffortResult]:
        """Upload local entries the remote tier has never confirmed.

        Returns:
            One result per attempted upload (empty without a remote tier)
        """
        if self.remote is None:
            return []

        records = await self.local.pending_uploads(limit)
        results = []
        for i, record in enumerate(records):
            if i:
                await self._sleep(self.sync_pause)
            try:
                data = await asyncio.to_thread(record.tier_location.read_bytes)
            except OSError as e:
                logger.warning(f"[{self.name}] Skipping upload of {record.key}: {e}")
                result = BestEffortResult(key=record.key, ok=False, error=str(e))
                self._record_remote_result(result)
                results.append(result)
                continue
            results.append(
                await self._remote_write(record.key, data, record.source_metadata)
            )

        uploaded = sum(1 for r in results if r.ok)
        logger.info(f"[{self.name}] Remote sync uploaded {uploaded}/{len(records)} entries")
        return results

    # -- batch -----------------------------------------------------------------

    async def preload(
        self,
        requests: Iterable[RequestT],
        on_progress: ProgressCallback | None = None,
    ) -> PreloadSummary:
        """Fetch many requests with bounded concurrency and paced batches.

        Items denied as ``RateLimited`` wait the reported delay and retry.
        After a ``QuotaExceeded`` the remaining items are skipped, as are
        items not yet started when ``cancel_all()`` is called.

        Args:
            requests: Requests to warm the cache with
            on_progress: Called as (completed, total, item_result) after each item

        Returns:
            Per-item outcomes in input order
        """
        items = list(requests)
        summary = PreloadSummary(total=len(items))
        run = _PreloadRun(epoch=self._epoch)
        pause = self.preload_pause
        if self.governor is not None:
            pause = max(pause, self.governor.limits.min_interval)

        completed = 0
        logger.info(f"[{self.name}] Preloading {len(items)} requests")

        for start in range(0, len(items), self.preload_concurrency):
            batch = items[start : start + self.preload_concurrency]
            if start and not self._halted(run):
                await self._sleep(pause)

            outcomes = await asyncio.gather(
                *(
                    self._preload_one(start + offset, request, run)
                    for offset, request in enumerate(batch)
                )
            )
            for outcome in outcomes:
                summary.results.append(outcome)
                completed += 1
                if on_progress is not None:
                    try:
                        on_progress(completed, summary.total, outcome)
                    except Exception as e:
                        logger.error(f"[{self.name}] Progress callback failed: {e}")

        logger.info(f"[{self.name}] Preload finished: {summary.as_dict()}")
        return summary

    def _halted(self, run: _PreloadRun) -> bool:
        return run.quota_exhausted or run.epoch != self._epoch

    async def _preload_one(
        self, index: int, request: RequestT, run: _PreloadRun
    ) -> PreloadItemResult:
        try:
            key = self.keys.derive(request)
        except TypeError as e:
            return PreloadItemResult(
                index=index, key="", error=CacheError(f"Cannot derive cache key: {e}", e)
            )

        attempt = 0
        while True:
            if self._halted(run):
                return PreloadItemResult(index=index, key=key, skipped=True)

            attempt += 1
            try:
                handle = await self.fetch(request)
            except RateLimited as e:
                if attempt >= self.preload_max_attempts:
                    return PreloadItemResult(index=index, key=key, error=e)
                delay = e.wait_seconds if e.wait_seconds is not None else self.preload_pause
                logger.debug(
                    f"[{self.name}] Preload item {index} rate limited, "
                    f"retrying in {delay:.2f}s (attempt {attempt})"
                )
                await self._sleep(delay)
            except QuotaExceeded as e:
                if not run.quota_exhausted:
                    logger.warning(
                        f"[{self.name}] Quota exhausted during preload, "
                        f"skipping remaining items: {e}"
                    )
                run.quota_exhausted = True
                return PreloadItemResult(index=index, key=key, error=e)
            except CacheError as e:
                logger.warning(f"[{self.name}] Preload item {index} failed: {e}")
                return PreloadItemResult(index=index, key=key, error=e)
            else:
                return PreloadItemResult(index=index, key=key, handle=handle)

    # -- maintenance -------------------------------------------------------------

    async def invalidate(self, request: RequestT) -> bool:
        """Drop request's artifact from memory and local tiers.

        Returns:
            True if an entry was removed from either tier

        Raises:
            CacheError: If the request cannot be keyed
        """
        try:
            key = self.keys.derive(request)
        except TypeError as e:
            raise CacheError(f"Cannot derive cache key: {e}", e) from e
        in_memory = self.memory.discard(key)
        in_local = await self.local.remove(key)
        logger.info(f"[{self.name}] Invalidated {key}")
        return in_memory or in_local

    async def clear(self, scope: ClearScope | str = ClearScope.ALL) -> int:
        """Empty tiers. The shared remote store is never touched.

        - ``memory``: memory tier only
        - ``local``: local tier, and memory with it
        - ``all``: both tiers plus hit statistics and remote write history

        Returns:
            Number of entries removed
        """
        scope = ClearScope(scope)
        removed = len(self.memory)
        self.memory.clear()
        if scope is not ClearScope.MEMORY:
            removed += await self.local.clear()
        if scope is ClearScope.ALL:
            self._reset_counters()
            self.remote_results.clear()
        logger.info(f"[{self.name}] Cleared {scope.value} scope ({removed} entries)")
        return removed

    def cancel_all(self) -> int:
        """Discard pending generations and queued preload items.

        Calls already sent to the provider are not interrupted.

        Returns:
            Number of pending generation records discarded
        """
        self._epoch += 1
        return self.coalescer.cancel_all()

    async def get_stats(self) -> dict[str, Any]:
        """Hit rates per tier, quota usage and pending work."""
        try:
            local_stats = await self.local.stats()
        except Exception as e:
            local_stats = {"error": str(e)}

        hit_rates = {
            source.value: (self.served[source] / self.fetches if self.fetches else 0.0)
            for source in Source
        }
        return {
            "name": self.name,
            "generator": self.generator.name,
            "fetches": self.fetches,
            "served": {source.value: count for source, count in self.served.items()},
            "hit_rates": hit_rates,
            "memory": self.memory.stats(),
            "local": local_stats,
            "remote": self.remote.stats() if self.remote is not None else None,
            "quota": await self.governor.status() if self.governor is not None else None,
            "pending": self.coalescer.pending_count,
            "coalescer": self.coalescer.stats(),
            "remote_writes": {
                "in_flight": len(self._background),
                "succeeded": self.remote_writes_ok,
                "failed": self.remote_writes_failed,
            },
        }

    async def close(self) -> None:
        """Finish detached writes and release network resources."""
        await self.drain()
        if self.remote is not None:
            await self.remote.close()

"""Unit tests for the persistent local tier."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from vizcache.cache.local import LocalTier
from vizcache.errors import TierUnavailable


class TestLocalTierReadWrite:
    """Test basic put/get behavior."""

    @pytest.mark.asyncio
    async def test_put_then_get_returns_record(self, cache_dir: Path, clock) -> None:
        """Test that a stored blob is indexed and readable."""
        tier = LocalTier(cache_dir, 1000, clock=clock, suffix=".mp3")

        record = await tier.put("k1", b"audio", {"generator": "fake"})
        fetched = await tier.get("k1")

        assert record.tier_location.name == "k1.mp3"
        assert fetched is not None
        assert fetched.tier_location.read_bytes() == b"audio"
        assert fetched.byte_size == 5
        assert fetched.source_metadata == {"generator": "fake"}

    @pytest.mark.asyncio
    async def test_get_updates_access_stats(self, cache_dir: Path, clock) -> None:
        """Test that every hit bumps last access time and count."""
        tier = LocalTier(cache_dir, 1000, clock=clock)
        await tier.put("k1", b"audio")

        clock.advance(10)
        await tier.get("k1")
        clock.advance(10)
        record = await tier.get("k1")

        assert record.access_count == 3
        assert record.last_accessed_at == clock.now

    @pytest.mark.asyncio
    async def test_unknown_key_is_miss(self, cache_dir: Path, clock) -> None:
        """Test that an unknown key returns None and counts a miss."""
        tier = LocalTier(cache_dir, 1000, clock=clock)

        assert await tier.get("nope") is None
        assert tier.misses == 1

    @pytest.mark.asyncio
    async def test_missing_blob_is_purged_as_miss(self, cache_dir: Path, clock) -> None:
        """Test that an index entry whose file vanished heals into a miss."""
        evicted = []
        tier = LocalTier(cache_dir, 1000, clock=clock, on_evict=evicted.append)
        record = await tier.put("k1", b"audio")
        record.tier_location.unlink()

        assert await tier.get("k1") is None
        assert tier.corrupt_purged == 1
        assert evicted == ["k1"]
        assert (await tier.stats())["entries"] == 0

    @pytest.mark.asyncio
    async def test_oversized_artifact_raises(self, cache_dir: Path, clock) -> None:
        """Test that an artifact larger than the whole budget is refused."""
        tier = LocalTier(cache_dir, 10, clock=clock)

        with pytest.raises(TierUnavailable, match="exceeds local budget"):
            await tier.put("big", b"x" * 11)

    @pytest.mark.asyncio
    async def test_replace_keeps_single_entry(self, cache_dir: Path, clock) -> None:
        """Test that rewriting a key replaces blob and row."""
        tier = LocalTier(cache_dir, 1000, clock=clock)
        await tier.put("k1", b"old")
        await tier.put("k1", b"newer")

        record = await tier.get("k1")

        assert record.tier_location.read_bytes() == b"newer"
        assert tier.used_bytes() == 5


class TestLocalTierEviction:
    """Test age and size sweeps."""

    @pytest.mark.asyncio
    async def test_expired_entry_is_miss(self, cache_dir: Path, clock) -> None:
        """Test that entries older than max_age are removed on access."""
        tier = LocalTier(cache_dir, 1000, max_age=60, clock=clock)
        record = await tier.put("k1", b"audio")

        clock.advance(61)

        assert await tier.get("k1") is None
        assert not record.tier_location.exists()

    @pytest.mark.asyncio
    async def test_size_sweep_reduces_to_target_fraction(
        self, cache_dir: Path, clock
    ) -> None:
        """Test that exceeding the budget evicts LRU entries down to 80%."""
        evicted = []
        tier = LocalTier(
            cache_dir, 1000, target_fraction=0.8, clock=clock, on_evict=evicted.append
        )
        for i in range(3):
            await tier.put(f"k{i}", b"x" * 300)
            clock.advance(1)

        # Make k0 recently used so k1 is the coldest
        await tier.get("k0")
        clock.advance(1)
        await tier.put("k3", b"x" * 300)

        assert evicted == ["k1", "k2"]
        assert tier.used_bytes() <= 800
        assert await tier.get("k0") is not None
        assert await tier.get("k3") is not None

    @pytest.mark.asyncio
    async def test_usage_never_exceeds_budget(self, cache_dir: Path, clock) -> None:
        """Test the eviction bound over a sequence of writes."""
        tier = LocalTier(cache_dir, 1000, clock=clock)

        for i, size in enumerate([400, 300, 500, 200, 900, 100, 650]):
            await tier.put(f"k{i}", b"x" * size)
            clock.advance(1)
            assert tier.used_bytes() <= 1000

    @pytest.mark.asyncio
    async def test_explicit_sweep_removes_aged_entries(self, cache_dir: Path, clock) -> None:
        """Test that sweep() applies the age limit without any access."""
        tier = LocalTier(cache_dir, 1000, max_age=100, clock=clock)
        await tier.put("old", b"a")
        clock.advance(50)
        await tier.put("new", b"b")
        clock.advance(60)

        assert await tier.sweep() == ["old"]


class TestLocalTierMaintenance:
    """Test upload tracking, clear and validation."""

    @pytest.mark.asyncio
    async def test_pending_uploads_until_marked(self, cache_dir: Path, clock) -> None:
        """Test that entries stay pending until their remote url is recorded."""
        tier = LocalTier(cache_dir, 1000, clock=clock)
        await tier.put("a", b"1")
        clock.advance(1)
        await tier.put("b", b"2")

        await tier.mark_uploaded("a", "https://store/a")
        pending = await tier.pending_uploads()

        assert [r.key for r in pending] == ["b"]
        assert (await tier.get("a")).remote_url == "https://store/a"

    @pytest.mark.asyncio
    async def test_clear_removes_rows_and_blobs(self, cache_dir: Path, clock) -> None:
        """Test that clear empties index and blob directory."""
        tier = LocalTier(cache_dir, 1000, clock=clock)
        await tier.put("a", b"1")
        await tier.put("b", b"2")

        assert await tier.clear() == 2
        assert list(tier.blob_dir.iterdir()) == []
        assert await tier.get("a") is None

    @pytest.mark.asyncio
    async def test_remove_single_key(self, cache_dir: Path, clock) -> None:
        """Test that remove drops one entry."""
        tier = LocalTier(cache_dir, 1000, clock=clock)
        await tier.put("a", b"1")

        assert await tier.remove("a") is True
        assert await tier.remove("a") is False

    def test_invalid_target_fraction_raises(self, cache_dir: Path) -> None:
        """Test that target_fraction must be in (0, 1]."""
        with pytest.raises(ValueError, match="target_fraction"):
            LocalTier(cache_dir, 1000, target_fraction=0.0)

    def test_invalid_budget_raises(self, cache_dir: Path) -> None:
        """Test that max_bytes must be positive."""
        with pytest.raises(ValueError, match="max_bytes must be positive"):
            LocalTier(cache_dir, 0)

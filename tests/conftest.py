"""Pytest configuration and fixtures for vizcache tests."""

import asyncio
import sys
from collections.abc import Callable, Iterator
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Any

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from vizcache.cache import KeyDeriver, LocalTier, MemoryTier, TieredCache
from vizcache.models import SpeechRequest
from vizcache.providers.base import Generator
from vizcache.quota import QuotaGovernor, QuotaTier

# 2024-03-10 12:00:00 UTC, a Sunday afternoon in Los Angeles
START_TIME = 1710072000.0


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """Records requested sleeps and advances the clock instead of waiting."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds)
        await asyncio.sleep(0)


class FakeGenerator(Generator):
    """Generator returning deterministic bytes and counting calls."""

    name = "fake"
    suffix = ".bin"

    def __init__(self) -> None:
        self.calls: list[Any] = []
        self.errors: list[Exception] = []
        self.release: asyncio.Event | None = None

    def hold(self) -> None:
        """Block generations until ``release.set()``."""
        self.release = asyncio.Event()

    async def generate(self, request: Any) -> bytes:
        self.calls.append(request)
        if self.release is not None:
            await self.release.wait()
        if self.errors:
            raise self.errors.pop(0)
        return f"artifact:{request.text}".encode()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep(clock: FakeClock) -> FakeSleep:
    return FakeSleep(clock)


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def cache_dir() -> Iterator[Path]:
    with TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def make_cache(
    cache_dir: Path, clock: FakeClock, generator: FakeGenerator, fake_sleep: FakeSleep
) -> Callable[..., TieredCache]:
    """Factory for a speech cache over temporary storage and a fake clock."""

    def _make(
        daily_limit: int = 1500,
        min_interval: float = 0.0,
        memory_bytes: int = 1024 * 1024,
        local_bytes: int = 4 * 1024 * 1024,
        remote: Any = None,
        governor: QuotaGovernor | None = None,
        **kwargs: Any,
    ) -> TieredCache:
        memory = MemoryTier(memory_bytes, clock=clock)
        local = LocalTier(cache_dir / "speech", local_bytes, clock=clock)
        if governor is None:
            governor = QuotaGovernor(
                "fake",
                QuotaTier("test", daily_limit=daily_limit, min_interval=min_interval),
                clock=clock,
            )
        return TieredCache(
            "speech",
            KeyDeriver("speech", defaults=SpeechRequest.KEY_DEFAULTS),
            generator,
            memory,
            local,
            governor=governor,
            remote=remote,
            sleep=fake_sleep,
            **kwargs,
        )

    return _make

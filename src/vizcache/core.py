"""Core functionality for vizcache - wires tiers, governors and generators."""

import json
import logging
import shutil
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import httpx

from .cache import (
    ArtifactHandle,
    ClearScope,
    KeyDeriver,
    LocalTier,
    MemoryTier,
    PreloadSummary,
    RemoteTier,
    TieredCache,
)
from .cache.orchestrator import ProgressCallback
from .config import QuotaConfig, TierLimits, VizcacheConfig, load_config
from .models import (
    PersonalizationContext,
    PersonalizationRequest,
    PersonalizedContent,
    SpeechRequest,
)
from .paths import get_cache_dir, get_data_dir
from .providers import Generator, GeneratorRegistry
from .quota import QuotaGovernor, StateStore

logger = logging.getLogger(__name__)

SPEECH = "speech"
PERSONALIZATION = "personalization"


class DeferredGenerator(Generator):
    """Creates the registered generator on first use.

    Keeps commands that never generate (stats, clear, quota) working
    without provider credentials.
    """

    def __init__(self, provider: str, **kwargs: Any) -> None:
        generator_class = GeneratorRegistry.get(provider)
        self.name = generator_class.name
        self.suffix = generator_class.suffix
        self.content_type = generator_class.content_type
        self._provider = provider
        self._kwargs = kwargs
        self._instance: Generator | None = None

    async def generate(self, request: Any) -> bytes:
        if self._instance is None:
            self._instance = GeneratorRegistry.create(self._provider, **self._kwargs)
        return await self._instance.generate(request)


def build_governor(
    name: str,
    quota: QuotaConfig,
    store: StateStore | None,
    clock: Callable[[], float] = time.time,
) -> QuotaGovernor:
    return QuotaGovernor(
        name,
        quota.resolve(),
        store=store,
        reset_timezone=quota.reset_timezone,
        reset_hour=quota.reset_hour,
        backoff=quota.backoff_seconds,
        clock=clock,
    )


def build_cache(
    name: str,
    key_defaults: dict[str, Any],
    generator: Generator,
    limits: TierLimits,
    governor: QuotaGovernor | None,
    config: VizcacheConfig,
    cache_root: Path,
    remote_client: httpx.AsyncClient | None = None,
    clock: Callable[[], float] = time.time,
) -> TieredCache:
    """Construct one tiered cache from configuration.

    Raises:
        TierUnavailable: If the local tier cannot be opened
    """
    memory = MemoryTier(limits.memory_bytes, clock=clock)
    local = LocalTier(
        cache_root / name,
        limits.local_bytes,
        max_age=limits.max_age_seconds,
        target_fraction=config.cache.target_fraction,
        suffix=generator.suffix,
        clock=clock,
        on_evict=memory.discard,
    )

    remote = None
    if config.remote.enabled:
        remote = RemoteTier(
            config.remote.url,
            namespace=name,
            suffix=generator.suffix,
            content_type=generator.content_type,
            token=config.remote.token,
            timeout=config.remote.timeout,
            client=remote_client,
        )

    return TieredCache(
        name,
        KeyDeriver(name, defaults=key_defaults),
        generator,
        memory,
        local,
        governor=governor,
        remote=remote,
        preload_concurrency=config.preload.concurrency,
        preload_pause=config.preload.pause_seconds,
        preload_max_attempts=config.preload.max_attempts,
        sync_pause=config.remote.sync_pause,
    )


@dataclass
class CacheService:
    """The two caches the app uses, built once and passed around."""

    speech: TieredCache
    personalization: TieredCache

    def get(self, name: str) -> TieredCache:
        """Return a cache by name.

        Raises:
            KeyError: If name is not a known cache
        """
        caches = {SPEECH: self.speech, PERSONALIZATION: self.personalization}
        if name not in caches:
            raise KeyError(f"Unknown cache '{name}'. Available: {', '.join(caches)}")
        return caches[name]

    def all(self) -> list[TieredCache]:
        return [self.speech, self.personalization]

    def cancel_all(self) -> int:
        return sum(cache.cancel_all() for cache in self.all())

    async def close(self) -> None:
        for cache in self.all():
            await cache.close()


def build_service(
    config: VizcacheConfig | None = None,
    cache_dir: Path | None = None,
    data_dir: Path | None = None,
    speech_generator: Generator | None = None,
    personalization_generator: Generator | None = None,
    remote_client: httpx.AsyncClient | None = None,
    clock: Callable[[], float] = time.time,
) -> CacheService:
    """Build both caches with their governors.

    Args:
        config: Configuration (loaded from the config file if omitted)
        cache_dir: Root for local tiers (XDG cache dir if omitted)
        data_dir: Where quota state persists (XDG data dir if omitted)
        speech_generator: Override the configured speech generator
        personalization_generator: Override the configured personalizer
        remote_client: Shared HTTP client for remote tiers
        clock: Time source for tiers and governors
    """
    config = config or load_config()
    cache_root = cache_dir or get_cache_dir()
    store = StateStore(data_dir or get_data_dir())

    speech_generator = speech_generator or DeferredGenerator(config.speech.provider)
    personalization_generator = personalization_generator or DeferredGenerator(
        config.personalization.provider
    )

    speech = build_cache(
        SPEECH,
        SpeechRequest.KEY_DEFAULTS,
        speech_generator,
        config.cache.speech,
        build_governor(speech_generator.name, config.speech.quota, store, clock),
        config,
        cache_root,
        remote_client=remote_client,
        clock=clock,
    )
    personalization = build_cache(
        PERSONALIZATION,
        PersonalizationRequest.KEY_DEFAULTS,
        personalization_generator,
        config.cache.personalization,
        build_governor(
            personalization_generator.name, config.personalization.quota, store, clock
        ),
        config,
        cache_root,
        remote_client=remote_client,
        clock=clock,
    )
    logger.debug(f"Caches ready under {cache_root}")
    return CacheService(speech=speech, personalization=personalization)


@asynccontextmanager
async def open_service(**kwargs: Any) -> AsyncIterator[CacheService]:
    """Build the service and close it (draining remote writes) on exit."""
    service = build_service(**kwargs)
    try:
        yield service
    finally:
        await service.close()


def load_speech_requests(
    path: Path, voice: str | None = None, model: str | None = None
) -> list[SpeechRequest]:
    """Read speech requests from a JSON-lines file.

    Each line is an object with ``text`` and optional ``voice``, ``model``,
    ``speed`` and ``context``. Blank lines are ignored.

    Raises:
        ValueError: If a line is not valid JSON or not a valid request
    """
    requests = []
    for number, line in enumerate(path.read_text().splitlines(), 1):
        if not line.strip():
            continue
        try:
            item = json.loads(line)
            context = item.get("context")
            requests.append(
                SpeechRequest(
                    text=item["text"],
                    voice=item.get("voice") or voice,
                    model=item.get("model") or model,
                    speed=item.get("speed"),
                    context=PersonalizationContext(**context) if context else None,
                )
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise ValueError(f"{path}:{number}: invalid request: {e}") from e
    return requests


async def speak_text(
    text: str,
    voice: str | None = None,
    model: str | None = None,
    speed: float = 1.0,
    context: PersonalizationContext | None = None,
    output_file: str | None = None,
    config: VizcacheConfig | None = None,
) -> ArtifactHandle:
    """Fetch synthesized speech for text, optionally copying it to a file.

    Raises:
        ValueError: If the request is invalid
        CacheError: If the audio cannot be fetched or generated
        OSError: If the output file cannot be written
    """
    config = config or load_config()
    request = SpeechRequest(
        text=text,
        voice=voice or config.speech.voice,
        model=model or config.speech.model,
        speed=speed,
        context=context,
    )

    async with open_service(config=config) as service:
        handle = await service.speech.fetch(request)

    logger.info(f"Speech for {handle.key} served from {handle.source.value}")
    if output_file:
        if handle.path is not None:
            shutil.copyfile(handle.path, output_file)
        else:
            Path(output_file).write_bytes(handle.read_bytes())
    return handle


async def personalize_visualization(
    request: PersonalizationRequest, config: VizcacheConfig | None = None
) -> tuple[PersonalizedContent, ArtifactHandle]:
    """Fetch personalized steps for a visualization.

    A request without a model uses the configured personalization model.

    Raises:
        CacheError: If the content cannot be fetched or generated
        ValueError: If the cached artifact is not valid personalized content
    """
    config = config or load_config()
    if request.model is None:
        request = replace(request, model=config.personalization.model)
    async with open_service(config=config) as service:
        handle = await service.personalization.fetch(request)
    return PersonalizedContent.from_bytes(handle.read_bytes()), handle


async def preload_speech(
    requests: list[SpeechRequest],
    on_progress: ProgressCallback | None = None,
    config: VizcacheConfig | None = None,
) -> PreloadSummary:
    """Warm the speech cache with a batch of requests."""
    async with open_service(config=config or load_config()) as service:
        return await service.speech.preload(requests, on_progress=on_progress)


async def collect_stats(config: VizcacheConfig | None = None) -> dict[str, Any]:
    async with open_service(config=config or load_config()) as service:
        return {cache.name: await cache.get_stats() for cache in service.all()}


async def quota_status(
    reset: str | None = None, config: VizcacheConfig | None = None
) -> dict[str, Any]:
    """Report quota usage per cache, resetting one cache's quota first if asked.

    Raises:
        KeyError: If reset names an unknown cache
    """
    async with open_service(config=config or load_config()) as service:
        if reset is not None:
            await service.get(reset).governor.reset()
        return {cache.name: await cache.governor.status() for cache in service.all()}


async def clear_caches(
    scope: ClearScope, name: str | None = None, config: VizcacheConfig | None = None
) -> dict[str, int]:
    """Clear one cache or both. Returns entries removed per cache."""
    async with open_service(config=config or load_config()) as service:
        caches = [service.get(name)] if name else service.all()
        return {cache.name: await cache.clear(scope) for cache in caches}


async def sync_remote(config: VizcacheConfig | None = None) -> dict[str, dict[str, int]]:
    """Upload local entries missing from the remote store.

    Raises:
        ValueError: If no remote store is configured
    """
    config = config or load_config()
    if not config.remote.enabled:
        raise ValueError("No remote store configured (set remote.url)")

    report = {}
    async with open_service(config=config) as service:
        for cache in service.all():
            results = await cache.sync_remote()
            report[cache.name] = {
                "uploaded": sum(1 for r in results if r.ok),
                "failed": sum(1 for r in results if not r.ok),
            }
    return report

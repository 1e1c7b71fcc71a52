"""Unit tests for service wiring and the high-level core functions."""

import os
import sys
from contextlib import asynccontextmanager
from dataclasses import replace
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from vizcache.cache import ArtifactHandle, ClearScope, Source
from vizcache.config import default_config
from vizcache.core import (
    DeferredGenerator,
    build_service,
    clear_caches,
    load_speech_requests,
    personalize_visualization,
    quota_status,
    sync_remote,
)
from vizcache.models import (
    PersonalizationRequest,
    PersonalizedContent,
    PersonalizedStep,
    SpeechRequest,
)
from vizcache.providers import GeneratorRegistry

CLEAN_ENV = {k: v for k, v in os.environ.items() if not k.startswith("VIZCACHE_")}


@pytest.fixture
def config():
    with patch.dict(os.environ, CLEAN_ENV, clear=True):
        return default_config()


class TestLoadSpeechRequests:
    """Test JSON-lines request parsing."""

    def test_reads_requests_with_defaults(self, cache_dir: Path) -> None:
        """Test that missing fields fall back to the given defaults."""
        path = cache_dir / "requests.jsonl"
        path.write_text(
            '{"text": "Breathe"}\n'
            "\n"
            '{"text": "Focus", "voice": "Y", "speed": 1.2, "context": {"sport": "Dance"}}\n'
        )

        requests = load_speech_requests(path, voice="X", model="m1")

        assert requests == [
            SpeechRequest(text="Breathe", voice="X", model="m1"),
            SpeechRequest(
                text="Focus",
                voice="Y",
                model="m1",
                speed=1.2,
                context=requests[1].context,
            ),
        ]
        assert requests[1].context.sport == "Dance"

    def test_invalid_line_reports_line_number(self, cache_dir: Path) -> None:
        """Test that errors name the offending line."""
        path = cache_dir / "requests.jsonl"
        path.write_text('{"text": "ok"}\n{"voice": "X"}\n')

        with pytest.raises(ValueError, match="requests.jsonl:2"):
            load_speech_requests(path)


class TestBuildService:
    """Test service construction from configuration."""

    def test_builds_two_isolated_caches(self, cache_dir: Path, config, generator) -> None:
        """Test that speech and personalization get their own tiers and governors."""
        service = build_service(
            config=config,
            cache_dir=cache_dir / "cache",
            data_dir=cache_dir / "data",
            speech_generator=generator,
            personalization_generator=generator,
        )

        assert service.speech.local.cache_dir == cache_dir / "cache" / "speech"
        assert service.personalization.local.cache_dir == cache_dir / "cache" / "personalization"
        assert service.speech.memory.max_bytes == config.cache.speech.memory_bytes
        assert service.speech.governor.limits.name == "standard"
        assert service.personalization.governor.limits.name == "free"
        assert service.speech.remote is None

    def test_unknown_cache_name_raises(self, cache_dir: Path, config, generator) -> None:
        """Test CacheService.get validation."""
        service = build_service(
            config=config,
            cache_dir=cache_dir,
            data_dir=cache_dir,
            speech_generator=generator,
            personalization_generator=generator,
        )

        with pytest.raises(KeyError, match="Unknown cache 'video'"):
            service.get("video")


class TestDeferredGenerator:
    """Test lazy generator construction."""

    def test_describes_artifacts_without_credentials(self) -> None:
        """Test that no client is built until generation."""
        with patch.object(GeneratorRegistry, "create") as mock_create:
            deferred = DeferredGenerator("elevenlabs")

            assert deferred.name == "elevenlabs"
            assert deferred.suffix == ".mp3"
            mock_create.assert_not_called()

    @pytest.mark.asyncio
    async def test_creates_once_on_first_generate(self) -> None:
        """Test that the real generator is created on first use and reused."""
        instance = MagicMock()

        async def fake_generate(request):
            return b"audio"

        instance.generate = fake_generate
        with patch.object(GeneratorRegistry, "create", return_value=instance) as mock_create:
            deferred = DeferredGenerator("elevenlabs")
            await deferred.generate("a")
            await deferred.generate("b")

        mock_create.assert_called_once_with("elevenlabs")

    def test_unknown_provider_raises(self) -> None:
        """Test that misconfigured providers fail at wiring time."""
        with pytest.raises(KeyError, match="Generator 'nope' not found"):
            DeferredGenerator("nope")


class TestCoreCommands:
    """Test the high-level functions the CLI calls."""

    @pytest.mark.asyncio
    async def test_sync_without_remote_raises(self, config) -> None:
        """Test that sync requires a configured remote store."""
        with pytest.raises(ValueError, match="No remote store configured"):
            await sync_remote(config=config)

    @pytest.mark.asyncio
    async def test_quota_status_and_clear(self, cache_dir: Path, config) -> None:
        """Test stats-style commands work without provider credentials."""
        env = dict(
            CLEAN_ENV,
            VIZCACHE_CACHE_DIR=str(cache_dir / "cache"),
            XDG_DATA_HOME=str(cache_dir / "data"),
        )
        with patch.dict(os.environ, env, clear=True):
            status = await quota_status(config=config)
            removed = await clear_caches(ClearScope.ALL, config=config)

        assert status["speech"]["provider"] == "elevenlabs"
        assert status["personalization"]["limit"] == 1500
        assert removed == {"speech": 0, "personalization": 0}


class TestPersonalizeVisualization:
    """Test that personalization requests pick up configured defaults."""

    @pytest.mark.asyncio
    async def test_unset_model_uses_configured_model(self, config) -> None:
        """Test that [personalization] model applies unless the request names one."""
        config = replace(
            config, personalization=replace(config.personalization, model="gemini-1.5-pro")
        )
        content = PersonalizedContent(
            visualization_id="calm",
            steps=(PersonalizedStep(content="Relax."),),
            model="gemini-1.5-pro",
        )
        handle = ArtifactHandle(
            key="k", path=None, byte_size=1, source=Source.GENERATED, data=content.to_bytes()
        )
        service = MagicMock()
        service.personalization.fetch = AsyncMock(return_value=handle)

        @asynccontextmanager
        async def fake_open_service(**kwargs):
            yield service

        with patch("vizcache.core.open_service", fake_open_service):
            result, _ = await personalize_visualization(
                PersonalizationRequest(visualization_id="calm", base_content=("Relax.",)),
                config=config,
            )
            await personalize_visualization(
                PersonalizationRequest(
                    visualization_id="calm", base_content=("Relax.",), model="explicit"
                ),
                config=config,
            )

        calls = service.personalization.fetch.call_args_list
        assert calls[0].args[0].model == "gemini-1.5-pro"
        assert calls[1].args[0].model == "explicit"
        assert result.model == "gemini-1.5-pro"

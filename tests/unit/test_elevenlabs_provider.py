"""Unit tests for ElevenLabsSpeechGenerator error handling and logic."""

import os
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from vizcache.errors import (
    NetworkError,
    ProviderError,
    ProviderQuotaExceeded,
    ProviderRateLimited,
)
from vizcache.models import SpeechRequest
from vizcache.providers.elevenlabs import ElevenLabsSpeechGenerator, VoiceSettings


class FakeApiError(Exception):
    """Mimics the SDK's ApiError attributes."""

    def __init__(self, status_code: int, body: object) -> None:
        super().__init__(f"status_code: {status_code}, body: {body}")
        self.status_code = status_code
        self.body = body


class TestElevenLabsInitialization:
    """Test ElevenLabsSpeechGenerator initialization and authentication errors."""

    def test_initialization_with_provided_api_key(self) -> None:
        """Test that the generator builds a client from the given key."""
        with patch("vizcache.providers.elevenlabs.ElevenLabs") as mock_elevenlabs:
            mock_client = MagicMock()
            mock_elevenlabs.return_value = mock_client

            generator = ElevenLabsSpeechGenerator(api_key="test_key")

            mock_elevenlabs.assert_called_once_with(api_key="test_key")
            assert generator._client == mock_client

    def test_initialization_with_env_var_api_key(self) -> None:
        """Test that the generator reads ELEVENLABS_API_KEY."""
        with patch.dict(os.environ, {"ELEVENLABS_API_KEY": "env_test_key"}):
            with patch("vizcache.providers.elevenlabs.ElevenLabs") as mock_elevenlabs:
                ElevenLabsSpeechGenerator()

                mock_elevenlabs.assert_called_once_with(api_key="env_test_key")

    def test_initialization_no_api_key_raises(self) -> None:
        """Test that a missing key raises ProviderError."""
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ProviderError, match="ElevenLabs API key not found"):
                ElevenLabsSpeechGenerator()

    def test_client_failure_raises(self) -> None:
        """Test that client construction errors are wrapped."""
        with patch("vizcache.providers.elevenlabs.ElevenLabs") as mock_elevenlabs:
            mock_elevenlabs.side_effect = Exception("Invalid API key")

            with pytest.raises(ProviderError, match="Failed to initialize ElevenLabs client"):
                ElevenLabsSpeechGenerator(api_key="invalid_key")

    def test_artifact_description(self) -> None:
        """Test the class-level artifact attributes."""
        assert ElevenLabsSpeechGenerator.name == "elevenlabs"
        assert ElevenLabsSpeechGenerator.suffix == ".mp3"
        assert ElevenLabsSpeechGenerator.content_type == "audio/mpeg"


class TestElevenLabsGenerate:
    """Test generate() with a mocked SDK client."""

    def setup_method(self) -> None:
        """Set up generator with an injected client."""
        self.client = MagicMock()
        self.generator = ElevenLabsSpeechGenerator(client=self.client)

    @pytest.mark.asyncio
    async def test_generate_joins_audio_chunks(self) -> None:
        """Test that streamed chunks are concatenated."""
        self.client.text_to_speech.convert.return_value = iter([b"ab", b"cd"])

        audio = await self.generator.generate(
            SpeechRequest(text=" Breathe deeply ", voice="X", speed=1.2)
        )

        assert audio == b"abcd"
        kwargs = self.client.text_to_speech.convert.call_args.kwargs
        assert kwargs["text"] == "Breathe deeply"
        assert kwargs["voice_id"] == "X"
        assert kwargs["model_id"] == "eleven_multilingual_v2"
        assert kwargs["voice_settings"]["speed"] == 1.2

    @pytest.mark.asyncio
    async def test_empty_audio_raises(self) -> None:
        """Test that an empty stream is a provider error."""
        self.client.text_to_speech.convert.return_value = iter([])

        with pytest.raises(ProviderError, match="No audio data received"):
            await self.generator.generate(SpeechRequest(text="Breathe"))

    @pytest.mark.asyncio
    async def test_quota_exceeded_detail(self) -> None:
        """Test that spent credits map to ProviderQuotaExceeded."""
        self.client.text_to_speech.convert.side_effect = FakeApiError(
            401, {"detail": {"status": "quota_exceeded"}}
        )

        with pytest.raises(ProviderQuotaExceeded) as exc_info:
            await self.generator.generate(SpeechRequest(text="Breathe"))

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_429_maps_to_rate_limited(self) -> None:
        """Test that throttling maps to ProviderRateLimited."""
        self.client.text_to_speech.convert.side_effect = FakeApiError(
            429, {"detail": {"status": "too_many_concurrent_requests"}}
        )

        with pytest.raises(ProviderRateLimited):
            await self.generator.generate(SpeechRequest(text="Breathe"))

    @pytest.mark.asyncio
    async def test_unauthorized_is_plain_provider_error(self) -> None:
        """Test that a bad key is not mistaken for a quota error."""
        self.client.text_to_speech.convert.side_effect = FakeApiError(
            401, {"detail": "invalid api key"}
        )

        with pytest.raises(ProviderError, match="authentication failed") as exc_info:
            await self.generator.generate(SpeechRequest(text="Breathe"))

        assert not isinstance(exc_info.value, ProviderQuotaExceeded)

    @pytest.mark.asyncio
    async def test_server_error(self) -> None:
        """Test that 5xx responses are reported as server errors."""
        self.client.text_to_speech.convert.side_effect = FakeApiError(503, "unavailable")

        with pytest.raises(ProviderError, match="server error"):
            await self.generator.generate(SpeechRequest(text="Breathe"))

    @pytest.mark.asyncio
    async def test_transport_error_maps_to_network_error(self) -> None:
        """Test that connection failures map to NetworkError."""
        self.client.text_to_speech.convert.side_effect = httpx.ConnectError("down")

        with pytest.raises(NetworkError, match="ElevenLabs unreachable"):
            await self.generator.generate(SpeechRequest(text="Breathe"))


class TestVoiceSettings:
    """Test VoiceSettings validation."""

    def test_defaults_serialize(self) -> None:
        """Test the default settings dictionary."""
        assert VoiceSettings().to_dict() == {
            "stability": 0.65,
            "similarity_boost": 0.75,
            "style": 0.4,
            "use_speaker_boost": True,
            "speed": 1.0,
        }

    def test_out_of_range_speed_raises(self) -> None:
        """Test that speed is bounded."""
        with pytest.raises(ValueError, match="speed must be between"):
            VoiceSettings(speed=5.0)

    def test_out_of_range_stability_raises(self) -> None:
        """Test that stability is bounded."""
        with pytest.raises(ValueError, match="stability"):
            VoiceSettings(stability=1.5)

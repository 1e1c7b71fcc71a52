"""ElevenLabs speech synthesis generator."""

import asyncio
import logging
import os
from dataclasses import dataclass

import httpx
from elevenlabs.client import ElevenLabs

from ..errors import (
    NetworkError,
    ProviderError,
    ProviderQuotaExceeded,
    ProviderRateLimited,
)
from ..models import SpeechRequest
from .base import Generator

logger = logging.getLogger(__name__)


@dataclass
class VoiceSettings:
    """Voice generation settings.

    Args:
        stability: Voice stability (0.0-1.0)
        similarity_boost: Voice similarity boost (0.0-1.0)
        style: Voice style exaggeration (0.0-1.0)
        use_speaker_boost: Whether to use speaker boost
        speed: Speaking rate (0.25-4.0)
    """

    stability: float = 0.65
    similarity_boost: float = 0.75
    style: float = 0.4
    use_speaker_boost: bool = True
    speed: float = 1.0

    def __post_init__(self) -> None:
        """Validate voice settings."""
        if not 0.0 <= self.stability <= 1.0:
            raise ValueError("stability must be between 0.0 and 1.0")
        if not 0.0 <= self.similarity_boost <= 1.0:
            raise ValueError("similarity_boost must be between 0.0 and 1.0")
        if not 0.0 <= self.style <= 1.0:
            raise ValueError("style must be between 0.0 and 1.0")
        if not 0.25 <= self.speed <= 4.0:
            raise ValueError("speed must be between 0.25 and 4.0")

    def to_dict(self) -> dict:
        return {
            "stability": self.stability,
            "similarity_boost": self.similarity_boost,
            "style": self.style,
            "use_speaker_boost": self.use_speaker_boost,
            "speed": self.speed,
        }


class ElevenLabsSpeechGenerator(Generator):
    """Synthesizes speech for ``SpeechRequest`` with the ElevenLabs API."""

    name = "elevenlabs"
    suffix = ".mp3"
    content_type = "audio/mpeg"

    def __init__(self, api_key: str | None = None, client: ElevenLabs | None = None) -> None:
        """Initialize ElevenLabs generator.

        Args:
            api_key: ElevenLabs API key. If not provided, reads from
                    ELEVENLABS_API_KEY environment variable.
            client: Pre-built client (tests inject a mock)

        Raises:
            ProviderError: If API key is missing or the client cannot be built
        """
        if client is not None:
            self._client = client
            return

        self._api_key = api_key or os.getenv("ELEVENLABS_API_KEY")
        if not self._api_key:
            raise ProviderError(
                "ElevenLabs API key not found. Set ELEVENLABS_API_KEY environment "
                "variable or provide api_key parameter."
            )

        try:
            self._client = ElevenLabs(api_key=self._api_key)
        except Exception as e:
            raise ProviderError(f"Failed to initialize ElevenLabs client: {e}", None, e) from e

    async def generate(self, request: SpeechRequest) -> bytes:
        """Convert the request text to MP3 bytes.

        Raises:
            ProviderQuotaExceeded: If the account's character quota is spent
            ProviderRateLimited: If the API throttles the call
            NetworkError: If the API cannot be reached
            ProviderError: For any other API failure
        """
        settings = VoiceSettings(speed=request.speed)

        # Run synchronous ElevenLabs client in thread to avoid blocking event loop
        def _sync_convert() -> bytes:
            audio_generator = self._client.text_to_speech.convert(
                text=request.text.strip(),
                voice_id=request.voice,
                model_id=request.model,
                voice_settings=settings.to_dict(),
            )
            # Collect all audio chunks
            return b"".join(audio_generator)

        try:
            audio_bytes = await asyncio.to_thread(_sync_convert)
        except (httpx.TransportError, ConnectionError, TimeoutError) as e:
            raise NetworkError(f"ElevenLabs unreachable: {e}", None, e) from e
        except Exception as e:
            raise _map_api_error(e) from e

        if not audio_bytes:
            raise ProviderError("No audio data received from ElevenLabs")

        logger.debug(
            f"Synthesized {len(audio_bytes)} bytes with voice {request.voice} "
            f"({request.model})"
        )
        return audio_bytes


def _map_api_error(error: Exception) -> ProviderError:
    """Translate an SDK error into a provider error by status and body."""
    status = getattr(error, "status_code", None)
    detail = f"{getattr(error, 'body', '')} {error}".lower()

    # Spent credits come back as 401 or 429 with a quota_exceeded detail
    if "quota_exceeded" in detail or "quota exceeded" in detail:
        return ProviderQuotaExceeded(f"ElevenLabs quota exceeded: {error}", status, error)
    if status == 429 or "too_many_concurrent_requests" in detail:
        return ProviderRateLimited(f"ElevenLabs rate limit exceeded: {error}", status, error)
    if status == 401 or "unauthorized" in detail:
        return ProviderError(f"ElevenLabs authentication failed: {error}", status, error)
    if status is not None and status >= 500:
        return ProviderError(f"ElevenLabs server error: {error}", status, error)
    return ProviderError(f"ElevenLabs API call failed: {error}", status, error)

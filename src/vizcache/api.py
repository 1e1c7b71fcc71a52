"""High-level API for vizcache library usage."""

from pathlib import Path

from .core import personalize_visualization, speak_text
from .models import PersonalizationContext, PersonalizationRequest, PersonalizedContent


async def speak(
    text: str,
    voice: str | None = None,
    model: str | None = None,
    speed: float = 1.0,
    context: PersonalizationContext | None = None,
    output: str | Path | None = None,
) -> bytes:
    """Get synthesized speech for text, from cache when possible.

    Args:
        text: Text to speak
        voice: Voice ID (from config if omitted)
        model: Speech model ID (from config if omitted)
        speed: Speaking rate (0.25-4.0)
        context: Personalization context the text was written for
        output: File path to also save the audio to

    Returns:
        Audio bytes

    Raises:
        QuotaExceeded: If the daily speech quota is spent
        RateLimited: If called too soon after the previous generation
        GenerationFailed: If synthesis fails
        ValueError: If text is empty or speed out of range
        OSError: If file save fails
    """
    handle = await speak_text(
        text=text,
        voice=voice,
        model=model,
        speed=speed,
        context=context,
        output_file=str(output) if output else None,
    )
    return handle.read_bytes()


async def personalize(
    visualization_id: str,
    base_content: list[str],
    context: PersonalizationContext | None = None,
    title: str | None = None,
    tone: str = "motivational",
    length: str = "medium",
    time_until_event: str | None = None,
    mood: str | None = None,
    model: str | None = None,
) -> PersonalizedContent:
    """Get a visualization personalized for an athlete, from cache when possible.

    Raises:
        QuotaExceeded: If the daily personalization quota is spent
        RateLimited: If called too soon after the previous generation
        GenerationFailed: If personalization fails
        ValueError: If the request is invalid
    """
    request = PersonalizationRequest(
        visualization_id=visualization_id,
        context=context or PersonalizationContext(),
        base_content=tuple(base_content),
        title=title,
        tone=tone,
        length=length,
        time_until_event=time_until_event,
        mood=mood,
        model=model,
    )
    content, _ = await personalize_visualization(request)
    return content

"""Gemini text personalizer for visualization scripts."""

import json
import logging
import os

import httpx
from google import genai
from google.genai import errors as genai_errors

from ..errors import (
    NetworkError,
    ProviderError,
    ProviderQuotaExceeded,
    ProviderRateLimited,
)
from ..models import PersonalizationRequest, PersonalizedContent, PersonalizedStep
from .base import Generator

logger = logging.getLogger(__name__)

# Words per second used to estimate a step's duration when the model omits it
SPEAKING_RATE = 2.5

LENGTH_GUIDANCE = {
    "short": "Keep each step brief, around 2-3 sentences.",
    "medium": "Keep each step at a similar length to its template.",
    "long": "Expand each step with richer sensory detail, up to twice the template length.",
}

TONE_GUIDANCE = {
    "motivational": "uplifting and confident",
    "calming": "slow, soothing and reassuring",
    "focused": "precise, calm and concentrated",
    "energizing": "vivid, upbeat and driving",
}


def build_prompt(request: PersonalizationRequest) -> str:
    """Render the personalization prompt for one request."""
    context = request.context
    sport = context.sport or "their sport"
    if context.track_field_event:
        sport = f"{sport} ({context.track_field_event})"

    profile = [f"- Sport: {sport}"]
    if context.experience_level:
        profile.append(f"- Experience level: {context.experience_level}")
    if context.primary_focus:
        profile.append(f"- Primary focus: {context.primary_focus}")
    if request.time_until_event:
        profile.append(f"- Time until next event: {request.time_until_event}")
    if request.mood:
        profile.append(f"- Current mood: {request.mood}")

    templates = "\n\n".join(
        f"Step {i + 1}: {text}" for i, text in enumerate(request.base_content)
    )
    title = request.title or request.visualization_id

    return f"""You are personalizing a mental training visualization for an athlete.

ATHLETE PROFILE:
{chr(10).join(profile)}

VISUALIZATION: {title}

PERSONALIZATION GUIDELINES:
1. Replace generic references with scenarios from the athlete's sport
2. Use real equipment, environments and movements from that sport
3. Address the mental challenges typical of that sport
4. Maintain the emotional journey and timing of each step
5. Use a {TONE_GUIDANCE[request.tone]} tone
6. {LENGTH_GUIDANCE[request.length]}

Templates to personalize:
{templates}

Return a JSON object with an array called "steps" holding exactly one entry
per template, in order, where each step contains:
- "content": the personalized script text
- "duration": suggested duration in seconds (integer)
- "sportElements": array of 2-3 specific sport terms you incorporated"""


def estimate_duration(text: str) -> int:
    return max(5, round(len(text.split()) / SPEAKING_RATE))


def parse_steps(raw: str, request: PersonalizationRequest) -> tuple[PersonalizedStep, ...]:
    """Parse the model's JSON answer into steps.

    Missing step text falls back to the matching template.

    Raises:
        ProviderError: If the answer is not JSON or holds no steps
    """
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProviderError(f"Gemini returned invalid JSON: {e}", None, e) from e

    steps = parsed.get("steps") if isinstance(parsed, dict) else None
    if not steps:
        raise ProviderError("Gemini returned empty steps array")

    fallback_element = f"Adapted for {request.context.sport or 'athlete'}"
    result = []
    for index, step in enumerate(steps):
        if not isinstance(step, dict):
            continue
        content = step.get("content")
        if not content and index < len(request.base_content):
            content = request.base_content[index]
        if not content:
            continue
        duration = step.get("duration")
        result.append(
            PersonalizedStep(
                content=content,
                duration=int(duration) if duration else estimate_duration(content),
                emphasis=step.get("emphasis", "normal"),
                personalized_elements=tuple(step.get("sportElements") or [fallback_element]),
            )
        )

    if not result:
        raise ProviderError("Gemini returned no usable steps")
    return tuple(result)


class GeminiPersonalizer(Generator):
    """Personalizes ``PersonalizationRequest`` scripts with Gemini.

    The artifact is the JSON encoding of ``PersonalizedContent``.
    """

    name = "gemini"
    suffix = ".json"
    content_type = "application/json"

    def __init__(
        self,
        api_key: str | None = None,
        client: genai.Client | None = None,
        temperature: float = 0.7,
        max_output_tokens: int = 8192,
    ) -> None:
        """Initialize Gemini personalizer.

        Args:
            api_key: Gemini API key. If not provided, reads from
                    GEMINI_API_KEY or GOOGLE_API_KEY environment variables.
            client: Pre-built client (tests inject a mock)
            temperature: Sampling temperature
            max_output_tokens: Response token cap

        Raises:
            ProviderError: If API key is missing
        """
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens

        if client is not None:
            self._client = client
            return

        api_key = api_key or os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
        if not api_key:
            raise ProviderError(
                "Gemini API key not found. Set GEMINI_API_KEY environment "
                "variable or provide api_key parameter."
            )
        self._client = genai.Client(api_key=api_key)

    async def generate(self, request: PersonalizationRequest) -> bytes:
        """Personalize the request's base content.

        Raises:
            ProviderQuotaExceeded: If the daily quota is spent
            ProviderRateLimited: If the per-minute limit is hit
            NetworkError: If the API cannot be reached
            ProviderError: For any other failure, including unusable output
        """
        prompt = build_prompt(request)

        try:
            response = await self._client.aio.models.generate_content(
                model=request.model_id,
                contents=prompt,
                config={
                    "temperature": self.temperature,
                    "max_output_tokens": self.max_output_tokens,
                    "response_mime_type": "application/json",
                },
            )
        except genai_errors.APIError as e:
            raise _map_api_error(e) from e
        except (httpx.TransportError, ConnectionError, TimeoutError) as e:
            raise NetworkError(f"Gemini unreachable: {e}", None, e) from e

        raw = response.text
        if not raw:
            raise ProviderError("Empty response from Gemini")

        steps = parse_steps(raw, request)
        logger.debug(
            f"Personalized {request.visualization_id} into {len(steps)} steps "
            f"with {request.model_id}"
        )
        content = PersonalizedContent(
            visualization_id=request.visualization_id,
            steps=steps,
            model=request.model_id,
        )
        return content.to_bytes()


def _map_api_error(error: genai_errors.APIError) -> ProviderError:
    code = getattr(error, "code", None)
    detail = f"{getattr(error, 'status', '')} {error}".lower()

    if code == 429 or "resource_exhausted" in detail:
        # Daily caps name the per-day quota metric; everything else is per minute
        if "per day" in detail or "perday" in detail:
            return ProviderQuotaExceeded(f"Gemini daily quota exceeded: {error}", code, error)
        return ProviderRateLimited(f"Gemini rate limit exceeded: {error}", code, error)
    if code is not None and code >= 500:
        return ProviderError(f"Gemini server error: {error}", code, error)
    return ProviderError(f"Gemini API call failed: {error}", code, error)

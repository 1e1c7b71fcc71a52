"""Request and payload models with validation."""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar

DEFAULT_VOICE = "21m00Tcm4TlvDq8ikWAM"  # Rachel
DEFAULT_SPEECH_MODEL = "eleven_multilingual_v2"
DEFAULT_SPEED = 1.0
DEFAULT_PERSONALIZATION_MODEL = "gemini-2.0-flash"

TONES = ("motivational", "calming", "focused", "energizing")
LENGTHS = ("short", "medium", "long")
EMPHASES = ("normal", "slow", "powerful")


@dataclass(frozen=True)
class PersonalizationContext:
    """Athlete context that shapes personalized content.

    Args:
        sport: Sport or activity (e.g. "track-and-field", "dance")
        track_field_event: Event within track and field (e.g. "sprinting")
        experience_level: Self-reported level (e.g. "beginner", "elite")
        primary_focus: One of consistency, performance, mindset, recovery
    """

    sport: str | None = None
    track_field_event: str | None = None
    experience_level: str | None = None
    primary_focus: str | None = None

    def as_dict(self) -> dict[str, str]:
        """Return only the populated fields."""
        return {
            name: value
            for name, value in asdict(self).items()
            if value is not None and value.strip()
        }

    def is_empty(self) -> bool:
        return not self.as_dict()


@dataclass(frozen=True)
class SpeechRequest:
    """A text-to-speech synthesis request.

    Args:
        text: Text to synthesize
        voice: Provider voice ID
        model: Provider model ID
        speed: Speaking rate (0.25-4.0)
        context: Personalization context the text was generated for, if any
    """

    KEY_DEFAULTS: ClassVar[dict[str, Any]] = {
        "voice": DEFAULT_VOICE,
        "model": DEFAULT_SPEECH_MODEL,
        "speed": DEFAULT_SPEED,
    }

    text: str
    voice: str = DEFAULT_VOICE
    model: str = DEFAULT_SPEECH_MODEL
    speed: float = DEFAULT_SPEED
    context: PersonalizationContext | None = None

    def __post_init__(self) -> None:
        """Validate and normalize the request."""
        if not self.text or not self.text.strip():
            raise ValueError("Text cannot be empty")
        if not self.voice:
            object.__setattr__(self, "voice", DEFAULT_VOICE)
        if not self.model:
            object.__setattr__(self, "model", DEFAULT_SPEECH_MODEL)
        if self.speed is None:
            object.__setattr__(self, "speed", DEFAULT_SPEED)
        object.__setattr__(self, "speed", float(self.speed))
        if not 0.25 <= self.speed <= 4.0:
            raise ValueError("speed must be between 0.25 and 4.0")

    def key_fields(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "voice": self.voice,
            "model": self.model,
            "speed": self.speed,
            "context": self.context.as_dict() if self.context else None,
        }

    def describe(self) -> dict[str, Any]:
        """Provenance recorded alongside the cached artifact."""
        fields = self.key_fields()
        fields["text"] = self.text.strip()[:200]
        return fields


@dataclass(frozen=True)
class PersonalizationRequest:
    """A request to personalize a visualization script for an athlete.

    Args:
        visualization_id: Template identifier of the base visualization
        context: Athlete context to personalize for
        base_content: Base step texts the personalization starts from
        title: Visualization title given to the model
        tone: One of motivational, calming, focused, energizing
        length: One of short, medium, long
        time_until_event: Free-form (e.g. "2 hours", "1 week")
        mood: Athlete's current mood
        model: LLM model ID (None lets the service apply its configured model)
    """

    KEY_DEFAULTS: ClassVar[dict[str, Any]] = {
        "tone": "motivational",
        "length": "medium",
        "model": DEFAULT_PERSONALIZATION_MODEL,
    }

    visualization_id: str
    context: PersonalizationContext = field(default_factory=PersonalizationContext)
    base_content: tuple[str, ...] = ()
    title: str | None = None
    tone: str = "motivational"
    length: str = "medium"
    time_until_event: str | None = None
    mood: str | None = None
    model: str | None = None

    def __post_init__(self) -> None:
        """Validate and normalize the request."""
        if not self.visualization_id or not self.visualization_id.strip():
            raise ValueError("visualization_id cannot be empty")
        object.__setattr__(self, "base_content", tuple(self.base_content))
        if not self.base_content:
            raise ValueError("base_content must contain at least one step")
        if not self.tone:
            object.__setattr__(self, "tone", "motivational")
        if not self.length:
            object.__setattr__(self, "length", "medium")
        if not self.model:
            object.__setattr__(self, "model", None)
        if self.tone not in TONES:
            raise ValueError(f"tone must be one of {', '.join(TONES)}")
        if self.length not in LENGTHS:
            raise ValueError(f"length must be one of {', '.join(LENGTHS)}")

    @property
    def model_id(self) -> str:
        return self.model or DEFAULT_PERSONALIZATION_MODEL

    def key_fields(self) -> dict[str, Any]:
        return {
            "visualization_id": self.visualization_id,
            "context": self.context.as_dict(),
            "base_content": list(self.base_content),
            "title": self.title,
            "tone": self.tone,
            "length": self.length,
            "time_until_event": self.time_until_event,
            "mood": self.mood,
            "model": self.model_id,
        }

    def describe(self) -> dict[str, Any]:
        fields = self.key_fields()
        fields["base_content"] = len(self.base_content)
        return fields


@dataclass(frozen=True)
class PersonalizedStep:
    """One personalized visualization step.

    Args:
        content: Step text ready for speech synthesis
        duration: Suggested duration in seconds
        emphasis: Delivery hint for synthesis (normal, slow, powerful)
        personalized_elements: What was personalized in this step
    """

    content: str
    duration: int | None = None
    emphasis: str = "normal"
    personalized_elements: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.content or not self.content.strip():
            raise ValueError("content cannot be empty")
        if self.emphasis not in EMPHASES:
            object.__setattr__(self, "emphasis", "normal")
        object.__setattr__(
            self, "personalized_elements", tuple(self.personalized_elements)
        )


@dataclass(frozen=True)
class PersonalizedContent:
    """Personalized visualization, serialized as the cached text artifact."""

    visualization_id: str
    steps: tuple[PersonalizedStep, ...]
    model: str
    generated_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_bytes(self) -> bytes:
        payload = {
            "visualization_id": self.visualization_id,
            "model": self.model,
            "generated_at": self.generated_at,
            "steps": [
                {
                    "content": step.content,
                    "duration": step.duration,
                    "emphasis": step.emphasis,
                    "personalized_elements": list(step.personalized_elements),
                }
                for step in self.steps
            ],
        }
        return json.dumps(payload, ensure_ascii=False).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "PersonalizedContent":
        """Parse a cached artifact.

        Raises:
            ValueError: If the payload is not valid personalized content
        """
        try:
            payload = json.loads(data.decode("utf-8"))
            steps = tuple(
                PersonalizedStep(
                    content=step["content"],
                    duration=step.get("duration"),
                    emphasis=step.get("emphasis", "normal"),
                    personalized_elements=tuple(
                        step.get("personalized_elements", ())
                    ),
                )
                for step in payload["steps"]
            )
            return cls(
                visualization_id=payload["visualization_id"],
                steps=steps,
                model=payload["model"],
                generated_at=payload["generated_at"],
            )
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError) as e:
            raise ValueError(f"Invalid personalized content: {e}") from e

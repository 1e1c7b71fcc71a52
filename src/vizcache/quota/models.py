"""Quota data models and tier presets."""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any


class QuotaStatus(str, Enum):
    """Governor state for the current quota day."""

    OPEN = "open"
    RATE_LIMITED = "rate_limited"
    QUOTA_EXHAUSTED = "quota_exhausted"
    BACKOFF = "backoff"


@dataclass(frozen=True)
class QuotaTier:
    """Provider limits for one billing tier.

    Args:
        name: Tier name shown in stats
        daily_limit: Requests allowed per quota day
        min_interval: Minimum seconds between request starts
    """

    name: str
    daily_limit: int
    min_interval: float

    def __post_init__(self) -> None:
        if self.daily_limit <= 0:
            raise ValueError("daily_limit must be positive")
        if self.min_interval < 0:
            raise ValueError("min_interval cannot be negative")

    @property
    def requests_per_minute(self) -> float | None:
        return 60.0 / self.min_interval if self.min_interval else None


# Gemini free tier: 1,500 requests/day, 10 rpm
FREE_TIER = QuotaTier("free", daily_limit=1500, min_interval=6.0)
# Gemini paid tier: 2,000,000 requests/day, 2,000 rpm
PAID_TIER = QuotaTier("paid", daily_limit=2_000_000, min_interval=0.03)
# ElevenLabs-style plans: generous daily cap, about one request per second
STANDARD_TIER = QuotaTier("standard", daily_limit=10_000, min_interval=1.0)

TIERS = {tier.name: tier for tier in (FREE_TIER, PAID_TIER, STANDARD_TIER)}


@dataclass
class QuotaState:
    """Persisted counters for one governed provider.

    Times are Unix timestamps in seconds.
    """

    daily_count: int
    daily_limit: int
    window_reset_at: float
    last_request_at: float = 0.0
    min_interval: float = 0.0
    last_provider_error_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QuotaState":
        """Rebuild persisted state.

        Raises:
            ValueError: If required fields are missing or malformed
        """
        try:
            error_at = data.get("last_provider_error_at")
            return cls(
                daily_count=int(data["daily_count"]),
                daily_limit=int(data["daily_limit"]),
                window_reset_at=float(data["window_reset_at"]),
                last_request_at=float(data.get("last_request_at", 0.0)),
                min_interval=float(data.get("min_interval", 0.0)),
                last_provider_error_at=float(error_at) if error_at is not None else None,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Invalid quota state: {e}") from e


@dataclass(frozen=True)
class QuotaDecision:
    """Answer to "may a request go out now?"."""

    allowed: bool
    status: QuotaStatus
    reason: str | None = None
    wait_seconds: float | None = None

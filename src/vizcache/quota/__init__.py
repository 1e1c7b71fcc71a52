"""Quota governance for externally billed generation providers."""

from .governor import QuotaGovernor
from .models import (
    FREE_TIER,
    PAID_TIER,
    STANDARD_TIER,
    TIERS,
    QuotaDecision,
    QuotaState,
    QuotaStatus,
    QuotaTier,
)
from .store import StateStore

__all__ = [
    "FREE_TIER",
    "PAID_TIER",
    "STANDARD_TIER",
    "TIERS",
    "QuotaDecision",
    "QuotaGovernor",
    "QuotaState",
    "QuotaStatus",
    "QuotaTier",
    "StateStore",
]

"""Tiered caching of generated content."""

from .coalescer import RequestCoalescer
from .keys import KeyDeriver
from .local import LocalTier
from .memory import MemoryTier
from .models import (
    ArtifactHandle,
    ArtifactRecord,
    BestEffortResult,
    ClearScope,
    PreloadItemResult,
    PreloadSummary,
    Source,
)
from .orchestrator import TieredCache
from .remote import RemoteTier

__all__ = [
    "ArtifactHandle",
    "ArtifactRecord",
    "BestEffortResult",
    "ClearScope",
    "KeyDeriver",
    "LocalTier",
    "MemoryTier",
    "PreloadItemResult",
    "PreloadSummary",
    "RemoteTier",
    "RequestCoalescer",
    "Source",
    "TieredCache",
]

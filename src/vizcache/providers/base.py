"""Abstract base class for content generators.

This module defines the interface every generation backend implements so
the tiered cache can call any of them the same way.
"""

from abc import ABC, abstractmethod
from typing import Any, ClassVar


class Generator(ABC):
    """Abstract base class for expensive, externally billed generators.

    A generator turns one request into raw artifact bytes. It owns its own
    timeouts and reports failures with the provider error types:

    - ``ProviderQuotaExceeded``: the account's quota is spent
    - ``ProviderRateLimited``: the provider throttled the call
    - ``NetworkError``: the provider could not be reached
    - ``ProviderError``: anything else

    Class attributes describe the artifacts so tiers can store them:
        name: Registry name, also recorded in artifact provenance
        suffix: File extension for stored blobs
        content_type: MIME type for remote uploads
    """

    name: ClassVar[str] = "generator"
    suffix: ClassVar[str] = ".bin"
    content_type: ClassVar[str] = "application/octet-stream"

    @abstractmethod
    async def generate(self, request: Any) -> bytes:
        """Produce the artifact for request.

        Args:
            request: Request object understood by this generator

        Returns:
            Artifact bytes (never empty)

        Raises:
            ProviderError: If generation fails
        """
        pass

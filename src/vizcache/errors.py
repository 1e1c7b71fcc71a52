"""Typed errors raised by the cache and by content generators."""


class CacheError(Exception):
    """Base exception for everything that can cross the fetch boundary."""

    def __init__(
        self, message: str, original_error: Exception | None = None
    ) -> None:
        super().__init__(message)
        self.original_error = original_error


class TierUnavailable(CacheError):
    """A storage tier could not be reached or written.

    Always recovered inside the cache by falling through to the next tier:
    - local disk full, unreadable or not writable
    - remote store unreachable or returning 5xx
    """

    def __init__(
        self,
        message: str,
        tier: str,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, original_error)
        self.tier = tier


class CorruptEntry(CacheError):
    """An index entry points at a blob that is missing or unreadable.

    Healed by purging the entry; never surfaced to callers.
    """

    def __init__(self, key: str, path: str) -> None:
        super().__init__(f"Index entry {key} references missing blob {path}")
        self.key = key
        self.path = path


class QuotaError(CacheError):
    """Base for governor denials. Retryable once ``wait_seconds`` elapses."""

    def __init__(
        self,
        message: str,
        wait_seconds: float | None = None,
        provider_reported: bool = False,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, original_error)
        self.wait_seconds = wait_seconds
        self.provider_reported = provider_reported


class QuotaExceeded(QuotaError):
    """Daily request budget is spent; resolves at the next reset boundary."""

    pass


class RateLimited(QuotaError):
    """Too soon since the last request, or backing off after a provider error."""

    pass


class GenerationFailed(CacheError):
    """The generator failed for a reason unrelated to quota.

    This typically occurs when:
    - the provider rejects the request (bad voice, bad credentials)
    - the provider returns an empty or malformed payload
    - the network call fails
    """

    pass


class ProviderError(Exception):
    """Base exception raised by Generator implementations."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.original_error = original_error


class ProviderQuotaExceeded(ProviderError):
    """Provider reports the account's quota is spent."""

    pass


class ProviderRateLimited(ProviderError):
    """Provider rejected the call for exceeding its request rate."""

    pass


class NetworkError(ProviderError):
    """Provider could not be reached."""

    pass

"""Daily quota and request spacing governor for billed providers."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from datetime import time as dtime
from typing import Any, TypeVar
from zoneinfo import ZoneInfo

from ..errors import (
    ProviderQuotaExceeded,
    ProviderRateLimited,
    QuotaExceeded,
    RateLimited,
)
from .models import QuotaDecision, QuotaState, QuotaStatus, QuotaTier
from .store import StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RESET_TIMEZONE = "America/Los_Angeles"
DEFAULT_BACKOFF = 60.0
QUOTA_WARNING_THRESHOLD = 0.8


class QuotaGovernor:
    """Gates generator calls against a provider's daily cap and rate limit.

    States, checked in this order on every request:

    - ``QUOTA_EXHAUSTED``: daily count plus reserved in-flight requests
      reached the limit; lifts at the next reset boundary
    - ``BACKOFF``: the provider itself reported a quota or rate error
      recently; lifts after a fixed cool-down
    - ``RATE_LIMITED``: too soon after the previous request start; lifts
      after ``min_interval``
    - ``OPEN``: request may go out

    The quota day ends at a fixed wall-clock instant (midnight Pacific by
    default, the Gemini billing day), not 24 hours after the last use.
    Provider-reported quota errors are authoritative: they push the daily
    count to the limit at once.

    Counters are persisted after every mutation when a ``StateStore`` is
    given.

    Example:
        governor = QuotaGovernor("gemini", FREE_TIER, store=StateStore(data_dir))
        text = await governor.gate(lambda: personalizer.generate(request))
    """

    def __init__(
        self,
        name: str,
        tier: QuotaTier,
        store: StateStore | None = None,
        reset_timezone: str = DEFAULT_RESET_TIMEZONE,
        reset_hour: int = 0,
        backoff: float = DEFAULT_BACKOFF,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize quota governor.

        Args:
            name: Provider name, also the persistence key
            tier: Limits to enforce
            store: Where counters persist (None keeps them in memory only)
            reset_timezone: IANA timezone of the reset boundary
            reset_hour: Hour of day (0-23) at which the quota day starts
            backoff: Seconds to hold off after a provider quota/rate error
            clock: Time source

        Raises:
            ValueError: If reset_hour or backoff is out of range
            ZoneInfoNotFoundError: If reset_timezone is unknown
        """
        if not 0 <= reset_hour <= 23:
            raise ValueError(f"reset_hour must be between 0 and 23, got {reset_hour}")
        if backoff < 0:
            raise ValueError(f"backoff cannot be negative, got {backoff}")

        self.name = name
        self.tier = tier
        self.backoff = backoff
        self.reset_hour = reset_hour
        self._tz = ZoneInfo(reset_timezone)
        self._store = store
        self._clock = clock
        self._lock = asyncio.Lock()
        self._state: QuotaState | None = None
        # Requests admitted by gate() whose call has not finished yet
        self._in_flight = 0
        self._warned_window: float | None = None

    @property
    def state_key(self) -> str:
        return f"quota:{self.name}"

    @property
    def limits(self) -> QuotaTier:
        """Limits of the active tier."""
        return self.tier

    def next_reset_after(self, now: float) -> float:
        """Return the first reset boundary strictly after ``now``."""
        local = datetime.fromtimestamp(now, self._tz)
        boundary = datetime.combine(local.date(), dtime(self.reset_hour), tzinfo=self._tz)
        if boundary.timestamp() <= now:
            boundary = datetime.combine(
                local.date() + timedelta(days=1), dtime(self.reset_hour), tzinfo=self._tz
            )
        return boundary.timestamp()

    async def can_proceed(self) -> QuotaDecision:
        """Check whether a request may go out now, without reserving it."""
        async with self._lock:
            state = await self._load()
            return await self._evaluate(state, self._clock())

    async def record_success(self) -> None:
        """Count one successful provider call against today's budget."""
        async with self._lock:
            state = await self._load()
            now = self._clock()
            await self._roll_window(state, now)
            state.daily_count += 1
            await self._save(state)

            logger.debug(
                f"[{self.name}] Request recorded: {state.daily_count}/{state.daily_limit}"
            )
            if (
                state.daily_count >= state.daily_limit * QUOTA_WARNING_THRESHOLD
                and self._warned_window != state.window_reset_at
            ):
                self._warned_window = state.window_reset_at
                logger.warning(
                    f"[{self.name}] Approaching daily limit: "
                    f"{state.daily_count}/{state.daily_limit}"
                )

    async def record_provider_error(self) -> None:
        """Treat a provider quota or rate error as today's budget being spent."""
        async with self._lock:
            state = await self._load()
            now = self._clock()
            await self._roll_window(state, now)
            state.daily_count = max(state.daily_count, state.daily_limit)
            state.last_provider_error_at = now
            await self._save(state)
            logger.error(
                f"[{self.name}] Provider quota error recorded, blocking requests "
                f"until {datetime.fromtimestamp(state.window_reset_at, self._tz).isoformat()}"
            )

    async def gate(self, call: Callable[[], Awaitable[T]]) -> T:
        """Run ``call`` if the governor allows it.

        A slot of today's budget is reserved before the call starts and held
        until it finishes, so concurrent callers never overrun the daily cap
        and stay spaced by ``min_interval``. No lock is held while the call
        runs. A success turns the reservation into a counted request; any
        failure releases it.

        A provider throttle is recorded like a provider quota error: the day
        is treated as spent, so both surface as ``QuotaExceeded`` with the
        wait until the next reset.

        Raises:
            QuotaExceeded: If today's budget is spent (locally or per provider)
            RateLimited: If called too soon or while backing off
            Exception: Whatever ``call`` raises for non-quota failures
        """
        async with self._lock:
            state = await self._load()
            now = self._clock()
            decision = await self._evaluate(state, now)
            if not decision.allowed:
                raise self._denial(decision)
            state.last_request_at = now
            await self._save(state)
            self._in_flight += 1

        try:
            try:
                result = await call()
            except (ProviderQuotaExceeded, ProviderRateLimited) as e:
                await self.record_provider_error()
                kind = "rate limit" if isinstance(e, ProviderRateLimited) else "quota exhausted"
                raise QuotaExceeded(
                    f"{self.name} reported {kind}: {e}",
                    wait_seconds=await self._seconds_until_reset(),
                    provider_reported=True,
                    original_error=e,
                ) from e

            await self.record_success()
            return result
        finally:
            self._in_flight -= 1

    async def status(self) -> dict[str, Any]:
        """Snapshot of usage and limits for observability."""
        async with self._lock:
            state = await self._load()
            decision = await self._evaluate(state, self._clock())
            return {
                "provider": self.name,
                "tier": self.tier.name,
                "used": state.daily_count,
                "in_flight": self._in_flight,
                "limit": state.daily_limit,
                "percentage": state.daily_count / state.daily_limit * 100,
                "reset_at": datetime.fromtimestamp(
                    state.window_reset_at, self._tz
                ).isoformat(),
                "min_interval": state.min_interval,
                "requests_per_minute": self.tier.requests_per_minute,
                "state": decision.status.value,
                "can_proceed": decision.allowed,
            }

    async def snapshot(self) -> QuotaState:
        """Copy of the current counters."""
        async with self._lock:
            state = await self._load()
            await self._roll_window(state, self._clock())
            return QuotaState(**state.to_dict())

    async def reset(self) -> None:
        """Manually start a fresh quota day."""
        async with self._lock:
            self._state = self._fresh_state(self._clock())
            await self._save(self._state)
            logger.info(f"[{self.name}] Quota manually reset")

    # -- internals -----------------------------------------------------------

    def _fresh_state(self, now: float) -> QuotaState:
        return QuotaState(
            daily_count=0,
            daily_limit=self.tier.daily_limit,
            window_reset_at=self.next_reset_after(now),
            min_interval=self.tier.min_interval,
        )

    async def _load(self) -> QuotaState:
        if self._state is not None:
            return self._state

        now = self._clock()
        state = None
        if self._store is not None:
            try:
                data = await asyncio.to_thread(self._store.get, self.state_key)
                if data is not None:
                    state = QuotaState.from_dict(data)
            except Exception as e:
                logger.error(f"[{self.name}] Failed to load quota state, starting fresh: {e}")

        if state is None:
            state = self._fresh_state(now)
            self._state = state
            await self._save(state)
        else:
            # Limits always come from the configured tier
            state.daily_limit = self.tier.daily_limit
            state.min_interval = self.tier.min_interval
            self._state = state
        return state

    async def _save(self, state: QuotaState) -> None:
        if self._store is None:
            return
        try:
            await asyncio.to_thread(self._store.set, self.state_key, state.to_dict())
        except Exception as e:
            logger.error(f"[{self.name}] Failed to persist quota state: {e}")

    async def _roll_window(self, state: QuotaState, now: float) -> bool:
        """Reset the counter once the boundary has passed. Returns True if reset."""
        if now < state.window_reset_at:
            return False
        state.daily_count = 0
        state.window_reset_at = self.next_reset_after(now)
        await self._save(state)
        logger.info(f"[{self.name}] Daily quota reset")
        return True

    async def _evaluate(self, state: QuotaState, now: float) -> QuotaDecision:
        await self._roll_window(state, now)

        if state.daily_count + self._in_flight >= state.daily_limit:
            wait = max(0.0, state.window_reset_at - now)
            return QuotaDecision(
                allowed=False,
                status=QuotaStatus.QUOTA_EXHAUSTED,
                reason=(
                    f"Daily quota exceeded ({state.daily_limit:,} requests). "
                    f"Resets in {_format_wait(wait)}."
                ),
                wait_seconds=wait,
            )

        if state.last_provider_error_at is not None:
            since_error = now - state.last_provider_error_at
            if since_error < self.backoff:
                return QuotaDecision(
                    allowed=False,
                    status=QuotaStatus.BACKOFF,
                    reason="Recent provider quota error. Waiting before retry.",
                    wait_seconds=self.backoff - since_error,
                )

        since_request = now - state.last_request_at
        if state.last_request_at and since_request < state.min_interval:
            return QuotaDecision(
                allowed=False,
                status=QuotaStatus.RATE_LIMITED,
                reason="Rate limit: too many requests",
                wait_seconds=state.min_interval - since_request,
            )

        return QuotaDecision(allowed=True, status=QuotaStatus.OPEN)

    def _denial(self, decision: QuotaDecision) -> Exception:
        message = f"[{self.name}] {decision.reason}"
        if decision.status is QuotaStatus.QUOTA_EXHAUSTED:
            return QuotaExceeded(message, wait_seconds=decision.wait_seconds)
        return RateLimited(message, wait_seconds=decision.wait_seconds)

    async def _seconds_until_reset(self) -> float:
        async with self._lock:
            state = await self._load()
            return max(0.0, state.window_reset_at - self._clock())


def _format_wait(seconds: float) -> str:
    if seconds <= 0:
        return "any moment (reset pending)"
    hours = seconds / 3600
    if hours > 1:
        return f"{int(-(-seconds // 3600))} hours"
    minutes = seconds / 60
    if minutes > 1:
        return f"{int(-(-seconds // 60))} minutes"
    return "less than a minute"

"""Merges concurrent generations for the same key into one upstream call."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .models import PendingRequest

logger = logging.getLogger(__name__)


class RequestCoalescer:
    """Deduplicates in-flight work per key.

    The first caller for a key starts ``generate_fn`` in its own task;
    later callers subscribe to the same future. Every subscriber gets the
    same result or the same exception. The pending record is removed before
    the future resolves, so a call made after completion starts fresh.

    A subscriber that is cancelled stops waiting but does not cancel the
    shared generation, since other subscribers may still need it.

    The registry is only touched from the event loop thread with no await
    between lookup and insert, which serializes access to it.
    """

    def __init__(self) -> None:
        self._pending: dict[str, PendingRequest] = {}
        self.started = 0
        self.joined = 0

    async def run(self, key: str, generate_fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run generate_fn for key, or join the call already in flight.

        Args:
            key: Cache key identifying the work
            generate_fn: Zero-argument coroutine function doing the work

        Returns:
            Whatever generate_fn returned

        Raises:
            Whatever generate_fn raised
        """
        pending = self._pending.get(key)
        if pending is None:
            loop = asyncio.get_running_loop()
            pending = PendingRequest(key=key, result_future=loop.create_future())
            # Retrieve the exception even if every subscriber went away
            pending.result_future.add_done_callback(_consume_exception)
            self._pending[key] = pending
            pending.task = asyncio.create_task(self._drive(pending, generate_fn))
            self.started += 1
            logger.debug(f"Starting generation for {key}")
        else:
            self.joined += 1
            logger.debug(
                f"Joining in-flight generation for {key} "
                f"({pending.waiter_count} already waiting)"
            )

        pending.waiter_count += 1
        try:
            return await asyncio.shield(pending.result_future)
        finally:
            pending.waiter_count -= 1

    async def _drive(
        self, pending: PendingRequest, generate_fn: Callable[[], Awaitable[Any]]
    ) -> None:
        try:
            result = await generate_fn()
        except BaseException as e:
            self._release(pending)
            if not pending.result_future.done():
                if isinstance(e, asyncio.CancelledError):
                    pending.result_future.cancel()
                else:
                    pending.result_future.set_exception(e)
            if not isinstance(e, Exception):
                raise
        else:
            self._release(pending)
            if not pending.result_future.done():
                pending.result_future.set_result(result)

    def _release(self, pending: PendingRequest) -> None:
        # A cancel_all() may already have dropped or replaced this record
        if self._pending.get(pending.key) is pending:
            del self._pending[pending.key]

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def cancel_all(self) -> int:
        """Forget every pending record.

        Calls already running are left to finish and still resolve their
        current subscribers; new callers start fresh attempts.

        Returns:
            Number of records discarded
        """
        count = len(self._pending)
        self._pending.clear()
        if count:
            logger.info(f"Discarded {count} pending generation records")
        return count

    def stats(self) -> dict[str, int]:
        return {
            "pending": len(self._pending),
            "waiters": sum(p.waiter_count for p in self._pending.values()),
            "started": self.started,
            "joined": self.joined,
        }


def _consume_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()

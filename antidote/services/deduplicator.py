"""
PendingRequestRegistry - Collapses concurrent identical requests.

The first caller for a key owns the request and must settle it; callers
arriving while it is in flight attach as waiters and receive the identical
outcome. Entries are removed at settlement and never reused.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from loguru import logger

from antidote.services.errors import RequestCancelledError
from antidote.utils import utcnow


@dataclass
class PendingEntry:
    """One in-flight request and its shared outcome."""

    key: str
    future: asyncio.Future[Any]
    created_at: datetime
    waiters: int = 0


@dataclass
class PendingHandle:
    """Returned by ``enter``: whether the caller owns the entry, and the entry."""

    is_new: bool
    entry: PendingEntry
    _registry: "PendingRequestRegistry" = field(repr=False)

    @property
    def key(self) -> str:
        return self.entry.key

    async def wait(self) -> Any:
        """
        Wait for the shared outcome.

        Cancelling this wait only affects the caller; the shared future and
        the other waiters are untouched.
        """
        return await asyncio.shield(self.entry.future)

    def settle(self, result: Any = None, error: BaseException | None = None) -> None:
        self._registry.settle_entry(self.entry, result=result, error=error)


class PendingRequestRegistry:
    """
    In-memory map from canonical request key to in-flight request.

    Usage:
        registry = PendingRequestRegistry()

        handle = registry.enter(key)
        if not handle.is_new:
            return await handle.wait()
        try:
            response = await send()
        except ApiError as e:
            handle.settle(error=e)
            raise
        handle.settle(result=response)
        return response
    """

    def __init__(self, debug: bool = False):
        self._in_flight: dict[str, PendingEntry] = {}
        self._debug = debug
        self._stats = DeduplicatorStats()

    def enter(self, key: str) -> PendingHandle:
        """Attach to the in-flight entry for ``key``, or create one."""
        entry = self._in_flight.get(key)
        if entry is not None:
            entry.waiters += 1
            self._stats.deduplicated += 1
            self._log(f"DEDUPE: Waiting for in-flight request: {key[:50]}...")
            return PendingHandle(is_new=False, entry=entry, _registry=self)

        future = asyncio.get_running_loop().create_future()
        entry = PendingEntry(key=key, future=future, created_at=utcnow())
        self._in_flight[key] = entry
        self._stats.total += 1
        self._log(f"NEW: Starting request: {key[:50]}...")
        return PendingHandle(is_new=True, entry=entry, _registry=self)

    def settle(
        self,
        key: str,
        result: Any = None,
        error: BaseException | None = None,
    ) -> bool:
        """
        Complete the entry for ``key`` with a result or an error and remove it.

        Every waiter observes the same result object or exception instance.
        Returns False if there was nothing to settle.
        """
        entry = self._in_flight.get(key)
        if entry is None:
            return False
        return self.settle_entry(entry, result=result, error=error)

    def settle_entry(
        self,
        entry: PendingEntry,
        result: Any = None,
        error: BaseException | None = None,
    ) -> bool:
        """Settle ``entry``; a later entry registered under the same key is left alone."""
        key = entry.key
        if self._in_flight.get(key) is entry:
            del self._in_flight[key]
        if entry.future.done():
            return False

        if error is not None:
            entry.future.set_exception(error)
            # Mark retrieved so an entry without waiters does not log
            # "exception was never retrieved".
            entry.future.exception()
            self._log(f"FAILED: {key[:50]}... ({type(error).__name__})")
        else:
            entry.future.set_result(result)
            self._log(f"DONE: Request completed: {key[:50]}...")
        return True

    def cancel(self, key: str) -> bool:
        """Settle the entry for ``key`` with RequestCancelledError."""
        cancelled = self.settle(key, error=RequestCancelledError())
        if cancelled:
            self._log(f"CANCEL: Request cancelled: {key[:50]}...")
        return cancelled

    def cancel_all(self) -> int:
        """Settle all in-flight entries with RequestCancelledError."""
        count = 0
        for key in list(self._in_flight):
            if self.settle(key, error=RequestCancelledError()):
                count += 1
        if count:
            logger.info(f"Cancelled {count} pending requests")
        return count

    def get_in_flight_count(self) -> int:
        """Get number of in-flight requests."""
        return len(self._in_flight)

    def get_stats(self) -> "DeduplicatorStats":
        """Get deduplication statistics."""
        self._stats.in_flight = len(self._in_flight)
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[Deduplicator] {message}")


class DeduplicatorStats:
    """Statistics for request deduplication."""

    def __init__(self):
        self.total: int = 0  # Unique requests that reached the network stages
        self.deduplicated: int = 0  # Requests that attached to an in-flight one
        self.in_flight: int = 0

    @property
    def dedup_rate(self) -> float:
        """Calculate deduplication rate."""
        total = self.total + self.deduplicated
        if total == 0:
            return 0.0
        return self.deduplicated / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_requests": self.total,
            "deduplicated": self.deduplicated,
            "in_flight": self.in_flight,
            "dedup_rate": f"{self.dedup_rate:.2%}",
        }

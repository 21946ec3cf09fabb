"""
Request coalescing to prevent duplicate upstream API calls.

When multiple concurrent requests miss the cache for the same key, only one
upstream call is made and all requesters share the result. Callers wait on
the event loop, so a herd on one hot key never ties up worker threads that
other requests need.
"""
import asyncio
import logging
from typing import Dict, Optional, Callable, Any, Awaitable, Tuple
from dataclasses import dataclass

logger = logging.getLogger("cache.coalescer")


@dataclass
class InFlightRequest:
    """Tracks an in-progress upstream request."""
    label: str
    task: Optional["asyncio.Task[Any]"] = None
    waiter_count: int = 0


class RequestCoalescer:
    """
    Ensures concurrent requests for the same cache key share one upstream call.

    Pattern:
    - First request for a key registers itself and starts the fetch as a task
    - Subsequent requests for the same key await that task
    - When the fetch settles, all callers receive the same result or error
    - The registration is removed before any caller resumes

    Keys are never logged; callers pass a display label instead, because a
    key built from a query string can carry a credential.

    Usage:
        coalescer = RequestCoalescer()
        result, joined = await coalescer.get_or_fetch(
            cache_key="/3/movie/550",
            fetch_fn=lambda: run_in_threadpool(forwarder.fetch, ...),
            label="/3/movie/550",
        )
    """

    def __init__(self, timeout: float = 30.0):
        """
        Initialize the coalescer.

        Args:
            timeout: Max seconds a joining caller waits on an in-flight request
        """
        self._in_flight: Dict[str, InFlightRequest] = {}
        self._timeout = timeout

    async def get_or_fetch(
        self,
        cache_key: str,
        fetch_fn: Callable[[], Awaitable[Any]],
        label: str = "request",
    ) -> Tuple[Any, bool]:
        """
        Either join an existing in-flight request or initiate a new one.

        Args:
            cache_key: Unique key for this request
            fetch_fn: Coroutine function to call if we need to fetch
            label: Redacted description used in logs and errors

        Returns:
            (result, joined) where joined is True if this caller attached to
            another caller's fetch

        Raises:
            TimeoutError: If waiting for an in-flight request times out
            Exception: Any error from fetch_fn is propagated to every caller
        """
        in_flight = self._in_flight.get(cache_key)
        if in_flight is None:
            in_flight = InFlightRequest(label=label)
            in_flight.task = asyncio.ensure_future(self._run(cache_key, in_flight, fetch_fn))
            in_flight.task.add_done_callback(_consume_error)
            self._in_flight[cache_key] = in_flight
            logger.debug(f"Initiating fetch for {label}")
            # Shielded so a cancelled initiator does not cancel the shared fetch
            return await asyncio.shield(in_flight.task), False

        in_flight.waiter_count += 1
        logger.debug(f"Coalescing request for {label} (waiters: {in_flight.waiter_count})")
        try:
            result = await asyncio.wait_for(asyncio.shield(in_flight.task), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.error(f"Timeout waiting for coalesced request: {label}")
            raise TimeoutError(f"Coalesced request timed out after {self._timeout}s") from None
        return result, True

    async def _run(
        self,
        cache_key: str,
        in_flight: InFlightRequest,
        fetch_fn: Callable[[], Awaitable[Any]],
    ) -> Any:
        try:
            return await fetch_fn()
        except Exception as e:
            logger.warning(f"Fetch failed for {in_flight.label}: {e}")
            raise
        finally:
            if self._in_flight.get(cache_key) is in_flight:
                del self._in_flight[cache_key]

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight requests."""
        return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        return {
            "active_requests": len(self._in_flight),
            "active_labels": [in_flight.label for in_flight in self._in_flight.values()],
        }


def _consume_error(task: "asyncio.Task[Any]") -> None:
    # Nobody may be left awaiting the task; mark its error as retrieved
    if not task.cancelled():
        task.exception()

"""Last-request-wins gating and debouncing for outbound suggestion calls.

Nothing here cancels a request that has already been sent; a superseded
request runs to completion and its result is dropped on arrival.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Any, Awaitable, Callable, Optional, Tuple

import structlog


logger = structlog.get_logger(__name__)

CoroFactory = Callable[[], Awaitable[Any]]


class RequestTracker:
    def __init__(self):
        self._counter = itertools.count(1)
        self.current = 0

    def issue(self) -> int:
        self.current = next(self._counter)
        return self.current

    def is_current(self, token: int) -> bool:
        return token == self.current

    async def run(self, factory: CoroFactory) -> Tuple[bool, Any]:
        """Await ``factory()`` under a fresh token.

        Returns ``(True, result)`` when this is still the latest request and
        ``(False, None)`` when a newer one was issued meanwhile. Errors from
        stale requests are dropped the same way.
        """
        token = self.issue()
        try:
            result = await factory()
        except Exception:
            if not self.is_current(token):
                logger.debug("Discarding error from stale request", token=token)
                return False, None
            raise
        if not self.is_current(token):
            logger.debug("Discarding stale result", token=token, latest=self.current)
            return False, None
        return True, result


class Debouncer:
    """Coalesce rapid triggers into one call after ``delay`` seconds of quiet."""

    def __init__(self, delay: float = 0.35, tracker: Optional[RequestTracker] = None):
        self.delay = delay
        self.tracker = tracker or RequestTracker()
        self._timer: Optional[asyncio.Task] = None
        self._last: Optional[asyncio.Task] = None

    def trigger(
        self,
        factory: CoroFactory,
        on_result: Optional[Callable[[Any], None]] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
    ) -> asyncio.Task:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = self._last = asyncio.ensure_future(self._fire(factory, on_result, on_error))
        return self._timer

    async def _fire(self, factory, on_result, on_error) -> None:
        await asyncio.sleep(self.delay)
        # Past the quiet period: later triggers start a new timer instead of cancelling this request
        self._timer = None
        try:
            applied, result = await self.tracker.run(factory)
        except Exception as e:
            if on_error is not None:
                on_error(e)
                return
            raise
        if applied and on_result is not None:
            on_result(result)

    async def flush(self) -> None:
        """Wait for the most recent trigger to fire and its request to finish."""
        last = self._last
        if last is not None:
            try:
                await last
            except asyncio.CancelledError:
                pass

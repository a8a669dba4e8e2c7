"""Timer service for suspension points (backoff waits, delay nodes).

Waits are scheduled continuations on the event loop (``loop.call_later``
resolving a future), never blocking sleeps, and every wait can be cut short
by a cancel event.
"""

import asyncio
import time
from typing import Dict, Optional, Tuple

from flowengine.core.logging import get_logger

logger = get_logger(__name__)

TimerKey = Tuple[str, str]


def _fire(future: asyncio.Future) -> None:
    if not future.done():
        future.set_result(None)


class TimerService:
    """Cancellable timers keyed by (execution_id, node_id)."""

    def __init__(self):
        self._pending: Dict[TimerKey, float] = {}

    async def wait(self, delay: float, cancel_event: Optional[asyncio.Event] = None,
                   key: Optional[TimerKey] = None) -> bool:
        """Wait ``delay`` seconds.

        Returns:
            True if the delay elapsed, False if ``cancel_event`` was set first.
        """
        if cancel_event is not None and cancel_event.is_set():
            return False

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        handle = loop.call_later(max(0.0, delay), _fire, future)
        cancel_waiter = asyncio.ensure_future(cancel_event.wait()) if cancel_event is not None else None
        if key is not None:
            self._pending[key] = time.time() + max(0.0, delay)

        try:
            waiters = {future} if cancel_waiter is None else {future, cancel_waiter}
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            handle.cancel()
            if not future.done():
                future.cancel()
            if cancel_waiter is not None and not cancel_waiter.done():
                cancel_waiter.cancel()
            if key is not None:
                self._pending.pop(key, None)

        cancelled = cancel_event is not None and cancel_event.is_set()
        if cancelled:
            logger.debug("Timer cancelled", key=key, delay=delay)
        return not cancelled

    async def wait_until(self, resume_at: float, cancel_event: Optional[asyncio.Event] = None,
                         key: Optional[TimerKey] = None) -> bool:
        """Wait until epoch ``resume_at``; returns immediately if it has passed."""
        return await self.wait(resume_at - time.time(), cancel_event, key)

    def pending(self) -> Dict[TimerKey, float]:
        """Currently scheduled continuations and their due times (epoch)."""
        return dict(self._pending)

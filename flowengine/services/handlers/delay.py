"""Delay node handler - durable timed pause.

The wake-up time is stored as a continuation before waiting, so an execution
resumed by another process waits only for what is left of the original delay.
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, TYPE_CHECKING

from flowengine.core.errors import CancellationSignal, ExecutionError
from flowengine.core.logging import get_logger

if TYPE_CHECKING:
    from flowengine.services.execution.store import ExecutionStore
    from flowengine.services.node_dispatcher import DispatchContext
    from flowengine.services.timers import TimerService

logger = get_logger(__name__)


def _parse_until(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        moment = datetime.fromisoformat(text)
    except ValueError as e:
        raise ExecutionError(f"'until' is not an ISO-8601 timestamp: {value!r}", code="BAD_INPUT") from e
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


def requested_delay(config: Dict[str, Any], now: float = None) -> float:
    """Seconds to wait, measured from ``now``.

    Raises:
        ExecutionError: BAD_INPUT for a negative or unparseable duration.
    """
    now = time.time() if now is None else now
    if config.get('until') is not None:
        return max(0.0, _parse_until(config['until']) - now)
    try:
        seconds = float(config.get('seconds'))
    except (TypeError, ValueError) as e:
        raise ExecutionError(f"'seconds' must be a number, got {config.get('seconds')!r}",
                             code="BAD_INPUT") from e
    if seconds < 0:
        raise ExecutionError("'seconds' must be >= 0", code="BAD_INPUT")
    return seconds


async def handle_delay(
    node_id: str,
    config: Dict[str, Any],
    context: "DispatchContext",
    store: "ExecutionStore",
    timers: "TimerService",
    max_delay: float,
) -> Dict[str, Any]:
    """Wait, then return ``{"waited", "resumed_at"}``.

    Raises:
        CancellationSignal: the wait was cut short by a cancel request.
    """
    execution_id = context.execution_id
    resume_at = await store.get_continuation(execution_id, node_id)
    if resume_at is None:
        delay = requested_delay(config)
        if delay > max_delay:
            raise ExecutionError(f"Delay of {delay:g}s exceeds the maximum of {max_delay:g}s",
                                 code="BAD_INPUT")
        resume_at = time.time() + delay
        await store.save_continuation(execution_id, node_id, resume_at)
        logger.info("[Delay] Scheduled", node_id=node_id, delay=delay, resume_at=resume_at)
    else:
        logger.info("[Delay] Resuming continuation", node_id=node_id, resume_at=resume_at)

    started = time.time()
    elapsed = await timers.wait_until(resume_at, context.cancel_event, key=(execution_id, node_id))
    if not elapsed:
        raise CancellationSignal()

    await store.delete_continuation(execution_id, node_id)
    return {"waited": round(time.time() - started, 3), "resumed_at": time.time()}

"""Call timing.

Wall-clock timestamps are taken for reporting; the elapsed time is measured
with a monotonic clock so it cannot go negative across clock adjustments.
"""

import time
from contextlib import aclosing
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional

from fiesta.app.services.models import (
    DoneEvent,
    ErrorEvent,
    MetaEvent,
    NormalizedResult,
    StreamEvent,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Stopwatch:
    """Start time of one call plus the monotonic origin for its duration."""
    start_time: datetime = field(default_factory=_utcnow)
    _origin: float = field(default_factory=time.perf_counter, repr=False)

    def elapsed_ms(self) -> float:
        return round((time.perf_counter() - self._origin) * 1000, 3)

    def stamp(self) -> Dict[str, object]:
        """Timing fields as of now."""
        return {
            "start_time": self.start_time,
            "end_time": _utcnow(),
            "response_time": self.elapsed_ms(),
        }


async def timed_complete(call: Callable[[], Awaitable[NormalizedResult]]) -> NormalizedResult:
    """Run a direct call and stamp its result with start, end and duration.

    ``text``/``error``/``aborted`` are carried over untouched.
    """
    watch = Stopwatch()
    result = await call()
    return result.model_copy(update=watch.stamp())


async def timed_stream(
    events: AsyncIterator[StreamEvent], watch: Optional[Stopwatch] = None
) -> AsyncIterator[StreamEvent]:
    """Stamp a stream's events with timing.

    ``Meta`` events get the start time; ``Error`` and ``Done`` events, which
    end the stream, get the full start/end/duration triple. The stream
    endpoint repeats the full set in a closing meta frame before ``[DONE]``.
    """
    watch = watch or Stopwatch()
    async with aclosing(events):
        async for event in events:
            if isinstance(event, MetaEvent):
                yield replace(event, start_time=watch.start_time)
            elif isinstance(event, (ErrorEvent, DoneEvent)):
                yield replace(event, **watch.stamp())
            else:
                yield event

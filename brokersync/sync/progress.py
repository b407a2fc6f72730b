"""
Progress events for a sync pass.

The controller writes events to a ProgressChannel; consumers iterate it
with `async for`. The channel is closed when the pass ends, which stops
the iteration.
"""
import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

_CLOSED = object()


@dataclass(frozen=True)
class ProgressEvent:
    """Running counts emitted after each staged page."""
    page_index: int
    operations_count: int
    pages_fetched: int
    estimated_total: Optional[int] = None


class ProgressChannel:
    """Unbounded single-consumer stream of ProgressEvent."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ProgressEvent) -> None:
        if self._closed:
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ProgressEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    def drain(self) -> List[ProgressEvent]:
        """Events published so far, without waiting."""
        events = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is _CLOSED:
                break
            events.append(item)
        return events

"""
VulnScan - Event Bus
In-process fan-out of scan progress events to live subscribers.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Set

from vulnscan.models import STATUS_CANCELLED, STATUS_COMPLETED, ScanEvent, ScanResult


logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Scan cancelled by user."
DEFAULT_MAX_QUEUE = 1000


def is_terminal(event: ScanEvent) -> bool:
    return event.module == "system" and event.status in ("completed", "error")


def terminal_event_for(scan: ScanResult) -> ScanEvent:
    """Synthetic terminal event describing an already-finished scan."""
    if scan.status == STATUS_COMPLETED:
        return ScanEvent(scan.id, "system", "completed", 100, "Scan completed.")
    if scan.status == STATUS_CANCELLED:
        return ScanEvent(scan.id, "system", "error", 100, CANCELLED_MESSAGE)
    last_error = next(
        (e.message for e in reversed(scan.events) if e.module == "system" and e.status == "error"),
        "Scan failed.",
    )
    return ScanEvent(scan.id, "system", "error", 100, last_error)


class Subscription:
    """Async iterator over one scan's events; stops after the terminal event.

    The queue is bounded. A slow consumer loses progress events past the
    bound; the terminal event always gets through, evicting the oldest one.
    """

    def __init__(self, scan_id: str, max_queue: int = DEFAULT_MAX_QUEUE):
        self.scan_id = scan_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self.dropped = 0
        self._done = False

    def deliver(self, event: ScanEvent) -> bool:
        """Queue the event; False when it was dropped."""
        if self.queue.full():
            self.dropped += 1
            if not is_terminal(event):
                return False
            self.queue.get_nowait()
        self.queue.put_nowait(event)
        return True

    def __aiter__(self):
        return self

    async def __anext__(self) -> ScanEvent:
        if self._done:
            raise StopAsyncIteration
        event = await self.queue.get()
        if is_terminal(event):
            self._done = True
        return event

    async def next(self, timeout: Optional[float] = None) -> ScanEvent:
        return await asyncio.wait_for(self.__anext__(), timeout)


class EventBus:
    def __init__(self, max_queue: int = DEFAULT_MAX_QUEUE):
        self.max_queue = max_queue
        self._subscribers: Dict[str, Set[Subscription]] = {}

    def subscriber_count(self, scan_id: str) -> int:
        return len(self._subscribers.get(scan_id, ()))

    def publish(self, event: ScanEvent):
        """Deliver to every current subscriber of the event's scan, in call order."""
        for sub in list(self._subscribers.get(event.scan_id, ())):
            if not sub.deliver(event) and sub.dropped == 1:
                logger.warning("Subscriber for %s is falling behind, dropping progress events", event.scan_id)

    @asynccontextmanager
    async def subscribe(self, scan_id: str) -> AsyncIterator[Subscription]:
        sub = Subscription(scan_id, self.max_queue)
        self._subscribers.setdefault(scan_id, set()).add(sub)
        try:
            yield sub
        finally:
            subs = self._subscribers.get(scan_id)
            if subs is not None:
                subs.discard(sub)
                if not subs:
                    del self._subscribers[scan_id]

"""Tests for the event bus and terminal event helpers."""

import asyncio

import pytest

from vulnscan.events import CANCELLED_MESSAGE, EventBus, is_terminal, terminal_event_for
from vulnscan.models import ScanEvent, ScanResult


def _ev(module="crawler", status="started", msg=""):
    return ScanEvent("s1", module, status, 10, msg)


class TestBus:
    """Fan-out and ordering."""

    async def test_order_preserved_and_stops_at_terminal(self, bus):
        async with bus.subscribe("s1") as sub:
            for i in range(3):
                bus.publish(_ev(msg=str(i)))
            bus.publish(_ev("system", "completed", "done"))
            bus.publish(_ev(msg="after"))
            received = [e.message async for e in sub]
        assert received == ["0", "1", "2", "done"]

    async def test_other_scans_not_delivered(self, bus):
        async with bus.subscribe("s1") as sub:
            bus.publish(ScanEvent("s2", "crawler", "started", 1, "x"))
            with pytest.raises(asyncio.TimeoutError):
                await sub.next(timeout=0.05)

    async def test_unsubscribe_on_exit(self, bus):
        async with bus.subscribe("s1"):
            async with bus.subscribe("s1"):
                assert bus.subscriber_count("s1") == 2
        assert bus.subscriber_count("s1") == 0

    def test_publish_without_subscribers(self, bus):
        bus.publish(_ev())


class TestTerminal:
    """is_terminal / terminal_event_for."""

    def test_is_terminal(self):
        assert is_terminal(_ev("system", "completed"))
        assert is_terminal(_ev("system", "error"))
        assert not is_terminal(_ev("system", "warning"))
        assert not is_terminal(_ev("crawler", "error"))

    def test_completed(self):
        event = terminal_event_for(ScanResult(id="s1", target="t", status="completed"))
        assert (event.module, event.status, event.progress_pct) == ("system", "completed", 100)

    def test_cancelled(self):
        event = terminal_event_for(ScanResult(id="s1", target="t", status="cancelled"))
        assert event.status == "error"
        assert event.message == CANCELLED_MESSAGE

    def test_failed_reuses_last_error(self):
        scan = ScanResult(id="s1", target="t", status="failed")
        scan.events = [_ev("system", "error", "Engine failure: boom")]
        assert terminal_event_for(scan).message == "Engine failure: boom"
        assert terminal_event_for(ScanResult(id="s2", target="t", status="failed")).message == "Scan failed."


class TestBackpressure:
    """Bounded subscriber queues."""

    async def test_progress_dropped_terminal_kept(self):
        bus = EventBus(max_queue=3)
        async with bus.subscribe("s1") as sub:
            for i in range(5):
                bus.publish(_ev(msg=str(i)))
            bus.publish(_ev("system", "error", "boom"))
            received = [e.message async for e in sub]
        assert received == ["1", "2", "boom"]
        assert sub.dropped == 3

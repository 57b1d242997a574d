import asyncio

import pytest

from gallery_scraper import events as ev
from gallery_scraper.events import EventBus


@pytest.mark.asyncio
async def test_each_subscriber_sees_events_in_order():
    bus = EventBus()
    a, b = [], []
    bus.subscribe(lambda e: a.append(e.data["n"]))

    async def slow(e):
        await asyncio.sleep(0.001)
        b.append(e.data["n"])

    bus.subscribe(slow)
    for n in range(5):
        bus.emit(ev.PROGRESS, n=n)
    await bus.drain()
    assert a == [0, 1, 2, 3, 4]
    assert b == [0, 1, 2, 3, 4]
    await bus.close()


@pytest.mark.asyncio
async def test_full_queue_drops_oldest():
    bus = EventBus(maxsize=2)
    got = []
    gate = asyncio.Event()

    async def blocked(e):
        await gate.wait()
        got.append(e.data["n"])

    sub = bus.subscribe(blocked)
    bus.emit(ev.PROGRESS, n=0)
    await asyncio.sleep(0)  # subscriber picks up n=0 and blocks
    for n in range(1, 5):
        bus.emit(ev.PROGRESS, n=n)
    assert sub.dropped == 2

    gate.set()
    await bus.drain()
    assert got == [0, 3, 4]
    await bus.close()


@pytest.mark.asyncio
async def test_failing_handler_does_not_stop_subscription(caplog):
    bus = EventBus()
    got = []

    def handler(e):
        if e.data["n"] == 1:
            raise RuntimeError("boom")
        got.append(e.data["n"])

    bus.subscribe(handler)
    for n in range(3):
        bus.emit(ev.ERROR, n=n)
    await bus.drain()
    assert got == [0, 2]
    assert "subscriber failed" in caplog.text
    await bus.close()


@pytest.mark.asyncio
async def test_unsubscribe_and_emit_returns_event():
    bus = EventBus()
    got = []
    sub = bus.subscribe(lambda e: got.append(e.type))
    bus.emit(ev.BATCH_START, batch=1)
    await bus.unsubscribe(sub)
    event = bus.emit(ev.BATCH_COMPLETE, batch=1)
    await asyncio.sleep(0)
    assert got == [ev.BATCH_START]
    assert event.type == "batch-complete"
    assert event.data == {"batch": 1}
    assert event.at

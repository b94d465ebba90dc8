import asyncio

import pytest

from chat_core.domain.exceptions import BusinessError
from chat_core.domain.models import ResultFragment
from chat_core.domain.streaming import FragmentChannel, RequestScope
from chat_core.engine.events import EventBus, OrchestratorEvent


@pytest.mark.asyncio
async def test_channel_delivers_then_closes():
    channel = FragmentChannel(maxsize=4)
    await channel.put(ResultFragment.text(0, "a"))
    await channel.put(ResultFragment.text(1, "b"))
    channel.close()
    channel.close()

    received = [f.sequence_id async for f in channel]
    assert received == [0, 1]
    assert await channel.get() is None

    with pytest.raises(RuntimeError):
        await channel.put(ResultFragment.text(2, "c"))


@pytest.mark.asyncio
async def test_close_wakes_waiting_consumer():
    channel = FragmentChannel()
    waiter = asyncio.create_task(channel.get())
    await asyncio.sleep(0)
    channel.close()
    assert await asyncio.wait_for(waiter, 1) is None


@pytest.mark.asyncio
async def test_detached_channel_ignores_puts():
    channel = FragmentChannel(maxsize=1)
    await channel.put(ResultFragment.text(0, "a"))
    channel.detach()
    await asyncio.wait_for(channel.put(ResultFragment.text(1, "b")), 1)


@pytest.mark.asyncio
async def test_scope_cancels_bound_task():
    scope = RequestScope()
    task = asyncio.create_task(asyncio.sleep(10))
    scope.bind(task)

    assert scope.cancel() is True
    assert scope.cancel() is False
    assert scope.cancelled
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_binding_after_cancel_cancels_immediately():
    scope = RequestScope()
    scope.cancel()
    task = asyncio.create_task(asyncio.sleep(10))
    scope.bind(task)
    with pytest.raises(asyncio.CancelledError):
        await task


def test_event_bus_isolates_listener_failures():
    bus = EventBus()
    seen = []

    def broken(event):
        raise BusinessError(code="X", message="listener failed")

    bus.subscribe(broken)
    unsubscribe = bus.subscribe(seen.append)
    bus.emit(OrchestratorEvent(kind="chunk_processed", current_answer="a"))
    unsubscribe()
    bus.emit(OrchestratorEvent(kind="chunk_processed", current_answer="b"))

    assert [e.current_answer for e in seen] == ["a"]

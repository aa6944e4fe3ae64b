"""
Tests for progress broadcasting and cancel tokens.
"""

import asyncio

import pytest

from cartographer_agent.cancellation import CancelToken
from cartographer_agent.exceptions import CancellationRequested, ScanCancelled, SubscriptionClosed
from cartographer_agent.progress import ProgressBroadcaster


class TestProgressBroadcaster:
    """Test fan-out of progress events."""

    @pytest.mark.asyncio
    async def test_every_subscriber_gets_every_event(self):
        broadcaster = ProgressBroadcaster("test")
        first = broadcaster.subscribe()
        second = broadcaster.subscribe()

        for i in range(3):
            broadcaster.publish(i)

        assert first.drain() == [0, 1, 2]
        assert second.drain() == [0, 1, 2]
        assert broadcaster.last_event == 2

    @pytest.mark.asyncio
    async def test_late_subscriber_sees_only_new_events(self):
        broadcaster = ProgressBroadcaster()
        broadcaster.publish("old")
        sub = broadcaster.subscribe()
        broadcaster.publish("new")
        assert sub.drain() == ["new"]

    @pytest.mark.asyncio
    async def test_slow_subscriber_drops_oldest(self):
        """Publishing never blocks on a full subscriber queue."""
        broadcaster = ProgressBroadcaster()
        sub = broadcaster.subscribe(maxsize=2)

        for i in range(5):
            broadcaster.publish(i)

        assert sub.drain() == [3, 4]
        assert sub.dropped == 3

    @pytest.mark.asyncio
    async def test_close_unsubscribes(self):
        broadcaster = ProgressBroadcaster()
        with broadcaster.subscribe() as sub:
            assert broadcaster.subscriber_count == 1
        assert broadcaster.subscriber_count == 0
        broadcaster.publish("ignored")
        assert sub.pending() == 0

    @pytest.mark.asyncio
    async def test_async_iteration(self):
        broadcaster = ProgressBroadcaster()
        sub = broadcaster.subscribe()
        received = []

        async def consume():
            async for event in sub:
                received.append(event)
                if event == "done":
                    sub.close()

        task = asyncio.create_task(consume())
        for event in ("a", "b", "done"):
            broadcaster.publish(event)
        await asyncio.wait_for(task, timeout=1)

        assert received == ["a", "b", "done"]

    @pytest.mark.asyncio
    async def test_get_timeout(self):
        sub = ProgressBroadcaster().subscribe()
        with pytest.raises(asyncio.TimeoutError):
            await sub.get(timeout=0.01)

    @pytest.mark.asyncio
    async def test_close_wakes_idle_iterator(self):
        """Closing from outside ends an async for that is waiting for events."""
        broadcaster = ProgressBroadcaster()
        sub = broadcaster.subscribe()
        received = []

        async def consume():
            async for event in sub:
                received.append(event)

        task = asyncio.create_task(consume())
        broadcaster.publish("a")
        await asyncio.sleep(0.01)
        sub.close()
        await asyncio.wait_for(task, timeout=1)

        assert received == ["a"]

    @pytest.mark.asyncio
    async def test_close_wakes_waiting_get(self):
        sub = ProgressBroadcaster().subscribe()
        waiter = asyncio.create_task(sub.get())
        await asyncio.sleep(0)
        sub.close()
        with pytest.raises(SubscriptionClosed):
            await asyncio.wait_for(waiter, timeout=1)


class TestCancelToken:
    """Test cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_sets_reason_once(self):
        token = CancelToken()
        assert not token.cancelled
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled
        assert token.reason == "first"

    @pytest.mark.asyncio
    async def test_raise_if_cancelled(self):
        token = CancelToken()
        token.raise_if_cancelled()
        token.cancel("stop")
        with pytest.raises(CancellationRequested, match="stop"):
            token.raise_if_cancelled()
        with pytest.raises(ScanCancelled):
            token.raise_if_cancelled(ScanCancelled)

    @pytest.mark.asyncio
    async def test_wait_wakes_on_cancel(self):
        token = CancelToken()
        waiter = asyncio.create_task(token.wait())
        await asyncio.sleep(0)
        assert not waiter.done()
        token.cancel()
        await asyncio.wait_for(waiter, timeout=1)

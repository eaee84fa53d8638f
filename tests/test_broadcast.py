"""
Broadcast Tests
===============

Tests for QueueSink and BroadcastRegistry.
"""

import asyncio

import pytest

from camstream.broadcast import BroadcastRegistry, QueueSink
from camstream.errors import SinkClosedError
from camstream.stream import Frame, encode_part

from conftest import FailingSink, RecordingSink, make_jpeg, wait_until


class TestQueueSink:
    """Tests for the bounded viewer queue."""

    def test_drops_oldest_when_full(self):
        sink = QueueSink(maxsize=2)

        sink.write(b"a")
        sink.write(b"b")
        sink.write(b"c")

        assert sink.pending == 2
        assert sink.dropped_count == 1
        assert sink.total_written == 3

    def test_write_after_close_raises(self):
        sink = QueueSink()
        sink.close()

        with pytest.raises(SinkClosedError):
            sink.write(b"a")

    def test_close_is_idempotent(self):
        sink = QueueSink()
        sink.close()
        sink.close()

        assert sink.closed

    def test_invalid_maxsize(self):
        with pytest.raises(ValueError):
            QueueSink(maxsize=0)

    @pytest.mark.asyncio
    async def test_get_returns_parts_in_order(self):
        sink = QueueSink(maxsize=4)
        sink.write(b"a")
        sink.write(b"b")

        assert await sink.get() == b"a"
        assert await sink.get() == b"b"

    @pytest.mark.asyncio
    async def test_get_times_out(self):
        sink = QueueSink()

        assert await sink.get(timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_close_wakes_waiting_consumer(self):
        sink = QueueSink()
        waiter = asyncio.create_task(sink.get())
        await asyncio.sleep(0)

        sink.close()

        assert await asyncio.wait_for(waiter, timeout=1.0) is None

    @pytest.mark.asyncio
    async def test_iteration_stops_on_close(self):
        sink = QueueSink(maxsize=4)
        sink.write(b"a")
        received = []

        async def consume():
            async for part in sink:
                received.append(part)

        task = asyncio.create_task(consume())
        await wait_until(lambda: received == [b"a"])
        sink.close()
        await asyncio.wait_for(task, timeout=1.0)

        assert received == [b"a"]


class TestRegistryMembership:
    """Tests for add/remove/prune."""

    def test_add_and_remove(self, registry):
        sink = RecordingSink()

        registry.add(sink, max_fps=5)

        assert sink in registry
        assert len(registry) == 1
        assert registry.remove(sink, "disconnect") is True
        assert sink.closed
        assert registry.is_empty

    def test_remove_twice_is_noop(self, registry):
        sink = RecordingSink()
        registry.add(sink)
        registry.remove(sink, "disconnect")

        assert registry.remove(sink, "disconnect") is False
        assert registry.metrics.clients_removed == 1

    def test_re_adding_returns_existing_registration(self, registry):
        sink = RecordingSink()

        first = registry.add(sink, max_fps=5)
        second = registry.add(sink, max_fps=30)

        assert first is second
        assert len(registry) == 1
        assert second.max_fps == 5

    def test_negative_fps_rejected(self, registry):
        with pytest.raises(ValueError):
            registry.add(RecordingSink(), max_fps=-1)

    def test_late_joiner_receives_latest_frame(self, registry, jpeg):
        frame = Frame(data=jpeg)
        registry.broadcast_latest(frame)
        sink = RecordingSink()

        registry.add(sink)

        assert sink.parts == [encode_part(frame)]

    def test_late_joiner_write_failure_removes_client(self, registry, jpeg):
        registry.broadcast_latest(Frame(data=jpeg))
        sink = FailingSink()

        registry.add(sink)

        assert sink not in registry

    def test_prune_dead(self, registry):
        alive = RecordingSink()
        dead = RecordingSink()
        registry.add(alive)
        registry.add(dead)
        dead.disconnect()

        assert registry.prune_dead() == 1
        assert alive in registry
        assert dead not in registry

    def test_close_all(self, registry):
        sinks = [RecordingSink() for _ in range(3)]
        for sink in sinks:
            registry.add(sink)

        assert registry.close_all("shutdown") == 3
        assert registry.is_empty
        assert all(sink.closed for sink in sinks)


class TestRegistryBroadcast:
    """Tests for frame fan-out and throttling."""

    def test_broadcast_to_unthrottled_clients(self, registry, jpeg):
        sinks = [RecordingSink() for _ in range(3)]
        for sink in sinks:
            registry.add(sink)

        written = registry.broadcast_latest(Frame(data=jpeg))

        assert written == 3
        assert all(len(sink.parts) == 1 for sink in sinks)

    def test_broadcast_caches_latest_without_clients(self, registry, jpeg):
        frame = Frame(data=jpeg)

        assert registry.broadcast_latest(frame) == 0
        assert registry.latest_frame is frame
        assert registry.last_frame_at is not None

    def test_throttled_client_skips_frames_inside_interval(self, clock):
        registry = BroadcastRegistry(keepalive_interval=0, clock=clock)
        slow = RecordingSink()
        fast = RecordingSink()
        registry.add(slow, max_fps=2)
        registry.add(fast)

        registry.broadcast_latest(Frame(data=make_jpeg(b"1")))
        clock.advance(0.1)
        registry.broadcast_latest(Frame(data=make_jpeg(b"2")))
        clock.advance(0.1)
        registry.broadcast_latest(Frame(data=make_jpeg(b"3")))

        assert len(slow.parts) == 1
        assert len(fast.parts) == 3
        assert registry.metrics.throttled_skips == 2

    def test_throttled_client_resumes_after_interval(self, clock):
        registry = BroadcastRegistry(keepalive_interval=0, clock=clock)
        sink = RecordingSink()
        registry.add(sink, max_fps=2)

        registry.broadcast_latest(Frame(data=make_jpeg(b"1")))
        clock.advance(0.5)
        registry.broadcast_latest(Frame(data=make_jpeg(b"2")))

        assert len(sink.parts) == 2

    def test_failing_client_removed_others_served(self, registry, jpeg):
        good = RecordingSink()
        bad = FailingSink()
        registry.add(bad)
        registry.add(good)

        written = registry.broadcast_latest(Frame(data=jpeg))

        assert written == 1
        assert bad not in registry
        assert good in registry
        assert registry.metrics.write_errors == 1

    def test_closed_sink_removed_on_delivery(self, registry, jpeg):
        sink = RecordingSink()
        registry.add(sink)
        sink.disconnect()

        assert registry.broadcast_latest(Frame(data=jpeg)) == 0
        assert sink not in registry

    def test_clear_latest(self, registry, jpeg):
        registry.broadcast_latest(Frame(data=jpeg))

        registry.clear_latest()

        assert registry.latest_frame is None


class TestRegistryKeepalive:
    """Tests for the per-client keep-alive re-send."""

    @pytest.mark.asyncio
    async def test_keepalive_resends_latest_frame(self, jpeg):
        registry = BroadcastRegistry(keepalive_interval=0.02)
        frame = Frame(data=jpeg)
        registry.broadcast_latest(frame)
        sink = RecordingSink()

        registry.add(sink)
        await wait_until(lambda: len(sink.parts) >= 3)

        assert set(sink.parts) == {encode_part(frame)}
        registry.close_all()

    @pytest.mark.asyncio
    async def test_keepalive_failure_removes_client(self, jpeg):
        registry = BroadcastRegistry(keepalive_interval=0.02)
        sink = RecordingSink()
        registry.add(sink)
        registry.broadcast_latest(Frame(data=jpeg))

        def fail(data):
            raise OSError("gone")

        sink.write = fail
        await wait_until(lambda: sink not in registry)

        assert registry.metrics.write_errors == 1
        assert sink.closed

    @pytest.mark.asyncio
    async def test_keepalive_task_cancelled_on_remove(self):
        registry = BroadcastRegistry(keepalive_interval=0.02)
        sink = RecordingSink()
        registration = registry.add(sink)
        task = registration.keepalive_task

        registry.remove(sink, "disconnect")
        await wait_until(task.done)

        assert task.cancelled()

    @pytest.mark.asyncio
    async def test_keepalive_exits_when_connection_closes_without_frames(self):
        registry = BroadcastRegistry(keepalive_interval=0.02)
        sink = RecordingSink()
        registration = registry.add(sink)
        task = registration.keepalive_task

        sink.disconnect()
        await wait_until(task.done)

        assert not task.cancelled()
        assert sink not in registry
        assert registry.metrics.clients_removed == 1

"""Tests for the PCM fan-out duplicator."""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from babel_core.audio.duplicator import DISCARD_SINK_ID, CallableSink, PcmSink, StreamDuplicator

from conftest import drain_loop


class _ListSink(PcmSink):
    def __init__(self):
        self.chunks = []
        self.closed = False

    async def write(self, chunk):
        self.chunks.append(chunk)

    async def close(self):
        self.closed = True


class _BlockedSink(PcmSink):
    """A sink whose writes never complete."""

    def __init__(self):
        self.gate = asyncio.Event()

    async def write(self, chunk):
        await self.gate.wait()


def test_discard_sink_is_always_attached():
    async def scenario():
        duplicator = StreamDuplicator("test")

        assert duplicator.is_attached(DISCARD_SINK_ID)
        assert await duplicator.detach(DISCARD_SINK_ID) is False
        assert duplicator.publish(b"chunk") == 1

    asyncio.run(scenario())


def test_every_sink_receives_every_chunk():
    async def scenario():
        duplicator = StreamDuplicator("test")
        first, second = _ListSink(), _ListSink()
        duplicator.attach("first", first)
        duplicator.attach("second", second)

        for index in range(5):
            duplicator.publish(bytes([index]) * 4)
        await drain_loop()

        expected = [bytes([i]) * 4 for i in range(5)]
        assert first.chunks == expected
        assert second.chunks == expected

    asyncio.run(scenario())


def test_duplicate_sink_id_is_rejected():
    async def scenario():
        duplicator = StreamDuplicator("test")

        assert duplicator.attach("one", _ListSink()) is True
        assert duplicator.attach("one", _ListSink()) is False

    asyncio.run(scenario())


def test_slow_sink_drops_oldest_without_stalling_others():
    async def scenario():
        duplicator = StreamDuplicator("test", max_queue_chunks=2)
        blocked, healthy = _BlockedSink(), _ListSink()
        duplicator.attach("blocked", blocked)
        duplicator.attach("healthy", healthy)
        await drain_loop()

        for index in range(6):
            duplicator.publish(bytes([index]))
            await drain_loop(2)

        assert healthy.chunks == [bytes([i]) for i in range(6)]
        assert duplicator.get_stats()["dropped_chunks"] > 0
        blocked.gate.set()

    asyncio.run(scenario())


def test_failing_sink_is_detached_and_reported():
    async def scenario():
        errors = []
        duplicator = StreamDuplicator("test", sink_error_callback=lambda sid, e: errors.append(sid))

        class _Broken(PcmSink):
            async def write(self, chunk):
                raise BrokenPipeError("Broken pipe")

        healthy = _ListSink()
        duplicator.attach("broken", _Broken())
        duplicator.attach("healthy", healthy)

        duplicator.publish(b"a")
        await drain_loop()
        duplicator.publish(b"b")
        await drain_loop()

        assert errors == ["broken"]
        assert not duplicator.is_attached("broken")
        assert healthy.chunks == [b"a", b"b"]

    asyncio.run(scenario())


def test_replacing_source_keeps_sinks_attached():
    async def scenario():
        duplicator = StreamDuplicator("test")
        sink = _ListSink()
        duplicator.attach("sink", sink)

        first = asyncio.StreamReader()
        confirmed = []
        duplicator.attach_source(first, label="first", on_first_chunk=lambda: confirmed.append("first"))
        first.feed_data(b"one")
        await drain_loop()

        second = asyncio.StreamReader()
        duplicator.attach_source(second, label="second", on_first_chunk=lambda: confirmed.append("second"))
        first.feed_data(b"stale")
        second.feed_data(b"two")
        await drain_loop()

        assert sink.chunks == [b"one", b"two"]
        assert confirmed == ["first", "second"]
        assert duplicator.source_label == "second"
        assert duplicator.is_attached("sink")

    asyncio.run(scenario())


def test_idle_source_detaches_pump():
    async def scenario():
        duplicator = StreamDuplicator("test")
        reader = asyncio.StreamReader()
        duplicator.attach_source(reader, label="capture")

        duplicator.attach_source(None)

        assert duplicator.has_source is False
        assert duplicator.source_label is None

    asyncio.run(scenario())


def test_detach_closes_sink():
    async def scenario():
        duplicator = StreamDuplicator("test")
        sink = _ListSink()
        duplicator.attach("sink", sink)

        assert await duplicator.detach("sink") is True
        assert sink.closed is True
        assert await duplicator.detach("sink") is False

    asyncio.run(scenario())


def test_callable_sink_accepts_sync_writers():
    async def scenario():
        received = []

        class _Target:
            def write(self, chunk):
                received.append(chunk)

        await CallableSink(_Target()).write(b"x")

        assert received == [b"x"]

    asyncio.run(scenario())

"""
BabelPod - Audio Redistribution Daemon
Copyright (c) 2025 Timothy Kramer (KR8MER)

This file is part of BabelPod.

BabelPod is dual-licensed software:
- GNU Affero General Public License v3 (AGPL-3.0) for open-source use
- Commercial License for proprietary use

You should have received a copy of both licenses with this software.
For more information, see LICENSE and LICENSE-COMMERCIAL files.

IMPORTANT: This software cannot be rebranded or have attribution removed.
See NOTICE file for complete terms.
"""

from __future__ import annotations

"""
Stream Duplicator for PCM fan-out

One producer (the current capture stream) is pumped into the duplicator,
which copies every chunk into an independent bounded queue per attached
sink. Each sink drains its own queue in its own task, so a slow or broken
sink never stalls the producer or the other sinks.

Architecture:
    capture stdout → pump → StreamDuplicator.publish()
                                 ↓ (one queue per sink)
                   ┌─────────────┼──────────────┬─────────────┐
                   ↓             ↓              ↓             ↓
              DiscardSink   aplay stdin   raop sender    raop sender

The discard sink is attached at construction and can never be detached, so
the producer always has at least one consumer. Sinks stay attached when the
source is replaced; only ``detach`` removes them.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

DISCARD_SINK_ID = "discard"
DEFAULT_CHUNK_BYTES = 4096
DEFAULT_MAX_QUEUE_CHUNKS = 64


class PcmSink:
    """Something the duplicator can write PCM chunks into."""

    async def write(self, chunk: bytes) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        """Release the sink once it has been detached."""


class DiscardSink(PcmSink):
    """Drops every chunk."""

    async def write(self, chunk: bytes) -> None:
        return None


class StreamWriterSink(PcmSink):
    """Writes into an asyncio StreamWriter such as a child's stdin."""

    def __init__(self, writer: asyncio.StreamWriter):
        self.writer = writer

    async def write(self, chunk: bytes) -> None:
        self.writer.write(chunk)
        await self.writer.drain()

    async def close(self) -> None:
        try:
            self.writer.close()
        except (BrokenPipeError, ConnectionResetError, RuntimeError):
            pass


class CallableSink(PcmSink):
    """Adapts an object exposing ``write(chunk)`` (sync or async)."""

    def __init__(self, target: Any):
        self.target = target

    async def write(self, chunk: bytes) -> None:
        result = self.target.write(chunk)
        if asyncio.iscoroutine(result):
            await result


class _Subscriber:
    def __init__(self, sink_id: str, sink: PcmSink, max_queue_chunks: int):
        self.sink_id = sink_id
        self.sink = sink
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_chunks)
        self.task: Optional[asyncio.Task] = None
        self.delivered_chunks = 0


SinkErrorCallback = Callable[[str, BaseException], None]


class StreamDuplicator:
    """
    Broadcast point for the PCM stream.

    ``publish`` copies a chunk into every subscriber queue and never waits on
    a sink. When a subscriber queue is full the oldest chunk is dropped for
    that subscriber only.
    """

    def __init__(
        self,
        name: str = "pcm-duplicator",
        max_queue_chunks: int = DEFAULT_MAX_QUEUE_CHUNKS,
        chunk_bytes: int = DEFAULT_CHUNK_BYTES,
        sink_error_callback: Optional[SinkErrorCallback] = None,
    ):
        """
        Initialize the duplicator.

        Args:
            name: Identifier used in logs
            max_queue_chunks: Maximum queued chunks per sink before dropping
            chunk_bytes: Read size used when pumping a source stream
            sink_error_callback: Called with (sink_id, error) when a sink's
                write fails and the sink is detached
        """
        self.name = name
        self.max_queue_chunks = max_queue_chunks
        self.chunk_bytes = chunk_bytes
        self.sink_error_callback = sink_error_callback

        self._subscribers: Dict[str, _Subscriber] = {}
        self._source: Optional[asyncio.StreamReader] = None
        self._source_label: Optional[str] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._first_chunk_callback: Optional[Callable[[], None]] = None

        self._published_chunks = 0
        self._published_bytes = 0
        self._dropped_chunks = 0

        self._discard = DiscardSink()
        self._subscribers[DISCARD_SINK_ID] = _Subscriber(DISCARD_SINK_ID, self._discard, max_queue_chunks)

        logger.info(f"Initialized StreamDuplicator '{name}' (max_queue_chunks={max_queue_chunks})")

    # ------------------------------------------------------------------
    # Source side
    # ------------------------------------------------------------------

    @property
    def source_label(self) -> Optional[str]:
        return self._source_label

    @property
    def has_source(self) -> bool:
        return self._source is not None

    def attach_source(
        self,
        reader: Optional[asyncio.StreamReader],
        label: Optional[str] = None,
        on_first_chunk: Optional[Callable[[], None]] = None,
    ) -> None:
        """
        Start pumping ``reader`` into the sinks.

        Any previously attached source is detached first, so at most one
        producer is ever feeding the duplicator. Passing None leaves the
        duplicator idle.

        Args:
            reader: Byte stream to pump, or None for the idle stream
            label: Name used in logs and statistics
            on_first_chunk: Called once when the first chunk arrives
        """
        self.detach_source()
        if reader is None:
            logger.info(f"'{self.name}' source set to idle")
            return

        self._source = reader
        self._source_label = label
        self._first_chunk_callback = on_first_chunk
        self._pump_task = asyncio.get_running_loop().create_task(
            self._pump(reader), name=f"{self.name}-pump"
        )
        logger.info(f"'{self.name}' source attached: {label}")

    def detach_source(self) -> None:
        """Stop pumping the current source (the sinks stay attached)."""
        if self._pump_task is not None:
            self._pump_task.cancel()
            self._pump_task = None
        if self._source is not None:
            logger.info(f"'{self.name}' source detached: {self._source_label}")
        self._source = None
        self._source_label = None
        self._first_chunk_callback = None

    async def _pump(self, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                chunk = await reader.read(self.chunk_bytes)
                if not chunk:
                    logger.debug(f"'{self.name}' source reached EOF")
                    break
                if self._source is not reader:
                    break
                callback = self._first_chunk_callback
                self._first_chunk_callback = None
                if callback is not None:
                    try:
                        callback()
                    except Exception as e:
                        logger.error(f"Error in first-chunk callback: {e}")
                self.publish(chunk)
        except asyncio.CancelledError:
            pass
        except (ConnectionError, OSError) as e:
            logger.error(f"'{self.name}' source read error: {e}")
        finally:
            if self._source is reader:
                self._source = None
                self._source_label = None
                self._pump_task = None

    def publish(self, chunk: bytes) -> int:
        """
        Copy ``chunk`` into every subscriber queue.

        Returns:
            Number of subscribers that received the chunk
        """
        if not chunk:
            return 0

        self._published_chunks += 1
        self._published_bytes += len(chunk)
        delivered = 0

        for subscriber in list(self._subscribers.values()):
            if subscriber.sink_id == DISCARD_SINK_ID:
                subscriber.delivered_chunks += 1
                delivered += 1
                continue
            try:
                subscriber.queue.put_nowait(chunk)
                delivered += 1
            except asyncio.QueueFull:
                try:
                    subscriber.queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                subscriber.queue.put_nowait(chunk)
                delivered += 1
                self._dropped_chunks += 1
                logger.debug(
                    f"Sink '{subscriber.sink_id}' queue full, dropped oldest chunk "
                    f"(total dropped: {self._dropped_chunks})"
                )

        return delivered

    # ------------------------------------------------------------------
    # Sink side
    # ------------------------------------------------------------------

    def attach(self, sink_id: str, sink: PcmSink) -> bool:
        """
        Attach a sink.

        Returns:
            True if attached, False if ``sink_id`` is already attached
        """
        if sink_id in self._subscribers:
            logger.warning(f"Sink '{sink_id}' already attached to '{self.name}'")
            return False

        subscriber = _Subscriber(sink_id, sink, self.max_queue_chunks)
        subscriber.task = asyncio.get_running_loop().create_task(
            self._drain(subscriber), name=f"{self.name}-sink-{sink_id}"
        )
        self._subscribers[sink_id] = subscriber
        logger.info(
            f"Sink '{sink_id}' attached to '{self.name}' "
            f"(total sinks: {len(self._subscribers)})"
        )
        return True

    async def detach(self, sink_id: str) -> bool:
        """
        Detach a sink and close it.

        Returns:
            True if the sink was attached
        """
        if sink_id == DISCARD_SINK_ID:
            return False
        subscriber = self._subscribers.pop(sink_id, None)
        if subscriber is None:
            return False

        if subscriber.task is not None and subscriber.task is not asyncio.current_task():
            subscriber.task.cancel()
            try:
                await subscriber.task
            except asyncio.CancelledError:
                pass
        try:
            await subscriber.sink.close()
        except Exception as e:
            logger.error(f"Error closing sink '{sink_id}': {e}")

        logger.info(
            f"Sink '{sink_id}' detached from '{self.name}' "
            f"(remaining: {len(self._subscribers)})"
        )
        return True

    def is_attached(self, sink_id: str) -> bool:
        return sink_id in self._subscribers

    async def _drain(self, subscriber: _Subscriber) -> None:
        while True:
            chunk = await subscriber.queue.get()
            try:
                await subscriber.sink.write(chunk)
                subscriber.delivered_chunks += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error writing to sink '{subscriber.sink_id}': {e}")
                if self._subscribers.get(subscriber.sink_id) is subscriber:
                    await self.detach(subscriber.sink_id)
                if self.sink_error_callback:
                    try:
                        self.sink_error_callback(subscriber.sink_id, e)
                    except Exception as cb_error:
                        logger.error(f"Error in sink error callback: {cb_error}")
                return

    async def close(self) -> None:
        """Detach the source and every sink."""
        self.detach_source()
        for sink_id in list(self._subscribers):
            await self.detach(sink_id)

    def get_stats(self) -> dict:
        """Get duplicator statistics."""
        return {
            "name": self.name,
            "source": self._source_label,
            "sinks": len(self._subscribers),
            "sink_ids": list(self._subscribers.keys()),
            "published_chunks": self._published_chunks,
            "published_bytes": self._published_bytes,
            "dropped_chunks": self._dropped_chunks,
            "max_queue_chunks": self.max_queue_chunks,
        }

    def __repr__(self) -> str:
        return (
            f"<StreamDuplicator '{self.name}' "
            f"sinks={len(self._subscribers)} "
            f"published={self._published_chunks}>"
        )


__all__ = [
    'DISCARD_SINK_ID',
    'PcmSink',
    'DiscardSink',
    'StreamWriterSink',
    'CallableSink',
    'StreamDuplicator',
]

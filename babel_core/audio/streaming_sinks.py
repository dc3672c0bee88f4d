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
Streaming Sink Providers

A streaming sink is a network audio receiver addressed by (host, port).
The core only needs three operations from the protocol implementation:
add a receiver, stop it, and change its volume. Each added receiver yields
a handle the duplicator writes PCM chunks into.

The default provider runs one external RAOP sender per receiver and feeds
it through stdin, so the wireless protocol itself stays outside this
process.
"""

import asyncio
import logging
import shlex
from typing import Dict, List, Optional

from .process_supervisor import ProcessHandle, ProcessSupervisor, ProgramKind

logger = logging.getLogger(__name__)

DEFAULT_STREAMING_COMMAND = "raop_play -p {port} -v {volume} {host} -"


def sink_key(host: str, port: int) -> str:
    return f"{host}:{port}"


class StreamingSinkHandle:
    """Handle for one active streaming receiver."""

    def __init__(self, host: str, port: int, volume: int, stereo: bool):
        self.host = host
        self.port = int(port)
        self.volume = volume
        self.stereo = stereo

    @property
    def key(self) -> str:
        return sink_key(self.host, self.port)

    async def write(self, chunk: bytes) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.key} volume={self.volume} stereo={self.stereo}>"


class StreamingSinkProvider:
    """
    Interface to the streaming protocol implementation.

    Errors from ``add``/``stop``/``set_volume`` are reported by raising; the
    caller treats them as per-sink, non-fatal failures.
    """

    async def add(self, host: str, port: int, volume: int, stereo: bool) -> StreamingSinkHandle:
        raise NotImplementedError

    async def stop(self, host: str, port: int) -> None:
        raise NotImplementedError

    async def set_volume(self, key: str, value: int) -> None:
        raise NotImplementedError

    async def shutdown(self) -> None:
        """Stop every receiver still active."""


class CommandStreamingSink(StreamingSinkHandle):
    """Streaming receiver driven by an external sender process."""

    def __init__(self, host: str, port: int, volume: int, stereo: bool, process: ProcessHandle):
        super().__init__(host, port, volume, stereo)
        self.process = process
        # Set while the sender is being replaced; chunks are dropped meanwhile
        self.relaunching = False

    async def write(self, chunk: bytes) -> None:
        if self.relaunching:
            return
        process = self.process
        if not process.running or process.stdin is None:
            raise ConnectionError(f"Streaming sender for {self.key} is not running")
        process.stdin.write(chunk)
        await process.stdin.drain()


class CommandStreamingSinkProvider(StreamingSinkProvider):
    """
    Streaming provider that launches one sender program per receiver.

    The command template is split like a shell command line and each token is
    formatted with ``host``, ``port``, ``volume`` and ``stereo``. Senders take
    the volume at connect time, so a volume change relaunches the sender.
    """

    def __init__(self, supervisor: ProcessSupervisor, command_template: str = DEFAULT_STREAMING_COMMAND):
        self._supervisor = supervisor
        self.command_template = command_template
        self._sinks: Dict[str, CommandStreamingSink] = {}

    @property
    def active_keys(self) -> List[str]:
        return list(self._sinks)

    def build_command(self, host: str, port: int, volume: int, stereo: bool) -> List[str]:
        values = {
            'host': host,
            'port': int(port),
            'volume': int(volume),
            'stereo': 1 if stereo else 0,
        }
        return [token.format(**values) for token in shlex.split(self.command_template)]

    async def _launch(self, host: str, port: int, volume: int, stereo: bool) -> ProcessHandle:
        argv = self.build_command(host, port, volume, stereo)
        process = await self._supervisor.spawn(
            ProgramKind.STREAMING, sink_key(host, port), argv, stdin=True
        )
        process.on_exit(self._on_sender_exit)
        return process

    async def add(self, host: str, port: int, volume: int, stereo: bool) -> StreamingSinkHandle:
        key = sink_key(host, port)
        existing = self._sinks.get(key)
        if existing is not None and existing.process.running:
            return existing

        process = await self._launch(host, port, volume, stereo)
        sink = CommandStreamingSink(host, port, volume, stereo, process)
        self._sinks[key] = sink
        logger.info(f"Streaming sink added: {key} (volume={volume}, stereo={stereo})")
        return sink

    async def stop(self, host: str, port: int) -> None:
        key = sink_key(host, port)
        sink = self._sinks.pop(key, None)
        if sink is None:
            return
        await self._supervisor.terminate(sink.process, graceful=True)
        logger.info(f"Streaming sink stopped: {key}")

    async def set_volume(self, key: str, value: int) -> None:
        sink = self._sinks.get(key)
        if sink is None:
            raise KeyError(f"No active streaming sink {key}")
        if sink.volume == value and sink.process.running:
            return

        # Receivers accept one sender at a time: the old one must be gone first.
        # If the relaunch fails the sink keeps its dead process, so the next
        # add() starts a fresh sender.
        sink.relaunching = True
        try:
            await self._supervisor.terminate(sink.process, graceful=True)
            sink.process = await self._launch(sink.host, sink.port, value, sink.stereo)
            sink.volume = value
        finally:
            sink.relaunching = False
        logger.info(f"Streaming sink {key} volume set to {value}")

    async def shutdown(self) -> None:
        sinks = list(self._sinks.values())
        self._sinks.clear()
        await asyncio.gather(
            *(self._supervisor.terminate(s.process, graceful=True) for s in sinks),
            return_exceptions=True,
        )

    def _on_sender_exit(self, process: ProcessHandle) -> None:
        if process.expected_exit:
            return
        if process.crashed:
            logger.error(
                f"Streaming sender for {process.device_id} exited with "
                f"code {process.returncode}, signal {process.signal}"
            )


__all__ = [
    'DEFAULT_STREAMING_COMMAND',
    'StreamingSinkHandle',
    'StreamingSinkProvider',
    'CommandStreamingSink',
    'CommandStreamingSinkProvider',
    'sink_key',
]

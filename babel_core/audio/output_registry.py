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
Output Registry

Owns the set of active outputs and reconciles it against the set the
session owner selected. Each active output holds one sink handle per member
device: a supervised playback process for local devices, or a streaming
sink handle for network receivers. Both are attached to the duplicator.

Failures are isolated per handle: one output that cannot be started or
stopped never prevents the rest of a sync from going through.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from ..devices.models import VOID_OUTPUT_ID, LocalMember, OutputMember, StreamingMember
from ..errors import CatalogMiss, SinkAttachError
from ..events import OUTPUTS_CHANGED, VOLUME_CHANGED, EventEmitter
from .duplicator import CallableSink, StreamDuplicator, StreamWriterSink
from .process_supervisor import ProcessHandle, ProcessSupervisor
from .streaming_sinks import StreamingSinkHandle, StreamingSinkProvider

logger = logging.getLogger(__name__)

DEFAULT_VOLUME = 50


@dataclass
class SinkHandle:
    """One attached sink under an active output."""
    sink_id: str
    member: OutputMember
    process: Optional[ProcessHandle] = None
    streaming: Optional[StreamingSinkHandle] = None

    @property
    def is_local(self) -> bool:
        return isinstance(self.member, LocalMember)


@dataclass
class ActiveOutput:
    ui_id: str
    is_stereo: bool = False
    sink_handles: List[SinkHandle] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'uiId': self.ui_id,
            'isStereo': self.is_stereo,
            'sinks': [h.sink_id for h in self.sink_handles],
        }


def coerce_volume(value: Any) -> int:
    """Coerce a UI volume value to an int in 0..100 (garbage becomes 0)."""
    try:
        volume = int(float(value))
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, volume))


def local_sink_id(device_id: str) -> str:
    return f"local:{device_id}"


def streaming_sink_id(member: StreamingMember) -> str:
    return f"stream:{member.key}"


class OutputRegistry:
    """
    Reconciles selected outputs against active outputs.

    Args:
        supervisor: Starts local playback processes
        duplicator: Fan-out point every sink is attached to
        streaming: Streaming sink provider
        catalog: Device catalog used to resolve ui ids
        gate: Session owner gate
        events: Control-plane event emitter
        initial_volume: Volume applied to streaming sinks until changed
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        duplicator: StreamDuplicator,
        streaming: StreamingSinkProvider,
        catalog: Any,
        gate: Any,
        events: EventEmitter,
        initial_volume: int = DEFAULT_VOLUME,
    ):
        self._supervisor = supervisor
        self._duplicator = duplicator
        self._streaming = streaming
        self._catalog = catalog
        self._gate = gate
        self._events = events

        self._active: Dict[str, ActiveOutput] = {}
        self._selected: List[str] = []
        self._volume = coerce_volume(initial_volume)
        self._lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

        if self._duplicator.sink_error_callback is None:
            self._duplicator.sink_error_callback = self._on_sink_error

    @property
    def volume(self) -> int:
        return self._volume

    def selected_outputs(self) -> List[str]:
        return list(self._selected)

    def active_ids(self) -> Set[str]:
        return set(self._active)

    def active_output(self, ui_id: str) -> Optional[ActiveOutput]:
        return self._active.get(ui_id)

    def snapshot(self) -> Dict[str, Any]:
        return {
            'selected': self.selected_outputs(),
            'active': [o.to_dict() for o in self._active.values()],
            'volume': self._volume,
            'duplicator': self._duplicator.get_stats(),
        }

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def sync(self, desired: Iterable[str], requested_by: Optional[str]) -> bool:
        """
        Make the active outputs match ``desired``.

        All removals are issued before any additions. Non-owners are ignored.

        Returns:
            True if the sync was accepted
        """
        if not self._gate.is_owner(requested_by):
            logger.debug(f"Ignoring output sync from non-owner {requested_by}")
            return False

        ordered: List[str] = []
        for ui_id in desired:
            if ui_id not in ordered:
                ordered.append(ui_id)
        logger.info(f"Switching output to: {ordered}")

        async with self._lock:
            self._selected = ordered
            wanted = set(ordered)
            removed = [ui_id for ui_id in self._active if ui_id not in wanted]
            added = [
                ui_id for ui_id in ordered
                if ui_id not in self._active and ui_id != VOID_OUTPUT_ID
            ]

            for ui_id in removed:
                await self._remove_output(ui_id)
            for ui_id in added:
                await self._add_output(ui_id)

            await self._apply_volume()

        self._events.emit(OUTPUTS_CHANGED, self.selected_outputs())
        self._events.status("Outputs updated")
        return True

    async def set_volume(self, value: Any, requested_by: Optional[str]) -> bool:
        """
        Set the volume of every active streaming sink.

        Returns:
            True if the change was accepted
        """
        if not self._gate.is_owner(requested_by):
            logger.debug(f"Ignoring volume change from non-owner {requested_by}")
            return False

        self._volume = coerce_volume(value)
        logger.info(f"Changing output volume to: {self._volume}")
        async with self._lock:
            await self._apply_volume()
        self._events.emit(VOLUME_CHANGED, self._volume)
        return True

    async def shutdown(self) -> None:
        """Stop every active output."""
        async with self._lock:
            for ui_id in list(self._active):
                await self._remove_output(ui_id)
        for task in list(self._tasks):
            task.cancel()
        logger.info("All outputs stopped")

    # ------------------------------------------------------------------
    # Add / remove
    # ------------------------------------------------------------------

    async def _remove_output(self, ui_id: str) -> None:
        output = self._active.pop(ui_id, None)
        if output is None:
            return

        for handle in output.sink_handles:
            try:
                await self._duplicator.detach(handle.sink_id)
                if handle.process is not None:
                    await self._supervisor.terminate(handle.process, graceful=True)
                elif isinstance(handle.member, StreamingMember):
                    await self._streaming.stop(handle.member.host, handle.member.port)
            except Exception as e:
                error = SinkAttachError(ui_id, f"stopping {handle.sink_id} failed: {e}")
                logger.error(str(error))

        logger.info(f"Output removed: {ui_id}")

    async def _add_output(self, ui_id: str) -> None:
        output = self._catalog.find_output(ui_id)
        if output is None:
            logger.info(str(CatalogMiss(f"Output {ui_id} is no longer available; skipping")))
            return

        active = ActiveOutput(ui_id=ui_id, is_stereo=output.is_stereo)
        for member in output.members:
            try:
                if isinstance(member, LocalMember):
                    handle = await self._start_local(member)
                else:
                    handle = await self._start_streaming(member, output.is_stereo)
                active.sink_handles.append(handle)
            except Exception as e:
                error = SinkAttachError(ui_id, str(e))
                logger.error(f"Error adding output: {error}")
                self._events.error(f"Error adding output {ui_id}: {e}")

        if active.sink_handles:
            self._active[ui_id] = active
            logger.info(f"Output added: {ui_id} ({len(active.sink_handles)} sink(s))")

    async def _start_local(self, member: LocalMember) -> SinkHandle:
        process = await self._supervisor.start_local_sink(member.local_sink_id)
        process.on_exit(self._on_local_sink_exit)
        sink_id = local_sink_id(member.local_sink_id)
        self._duplicator.attach(sink_id, StreamWriterSink(process.stdin))
        return SinkHandle(sink_id=sink_id, member=member, process=process)

    async def _start_streaming(self, member: StreamingMember, stereo: bool) -> SinkHandle:
        streaming = await self._streaming.add(member.host, member.port, self._volume, stereo)
        sink_id = streaming_sink_id(member)
        self._duplicator.attach(sink_id, CallableSink(streaming))
        return SinkHandle(sink_id=sink_id, member=member, streaming=streaming)

    async def _apply_volume(self) -> None:
        for output in self._active.values():
            for handle in output.sink_handles:
                if not isinstance(handle.member, StreamingMember):
                    continue
                try:
                    await self._streaming.set_volume(handle.member.key, self._volume)
                except Exception as e:
                    logger.error(f"Error setting volume for {handle.member.key}: {e}")

    # ------------------------------------------------------------------
    # Sink events
    # ------------------------------------------------------------------

    def _on_local_sink_exit(self, process: ProcessHandle) -> None:
        if process.expected_exit:
            return
        if process.crashed:
            logger.error(
                f"aplay exited with code {process.returncode}, "
                f"signal {process.signal} for {process.device_id}"
            )
        self._spawn_task(self._drop_output_for_sink(local_sink_id(process.device_id)))

    def _on_sink_error(self, sink_id: str, error: BaseException) -> None:
        if sink_id.startswith("local:"):
            self._events.error(f"Local output error: {error}")
        else:
            self._events.error(f"Streaming output error: {error}")
        self._spawn_task(self._drop_output_for_sink(sink_id))

    async def _drop_output_for_sink(self, sink_id: str) -> None:
        """Destroy the active output owning a sink that failed on its own."""
        async with self._lock:
            for ui_id, output in list(self._active.items()):
                if any(h.sink_id == sink_id for h in output.sink_handles):
                    logger.warning(f"Output {ui_id} lost sink {sink_id}; removing it")
                    await self._remove_output(ui_id)

    def _spawn_task(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


__all__ = [
    'DEFAULT_VOLUME',
    'SinkHandle',
    'ActiveOutput',
    'OutputRegistry',
    'coerce_volume',
    'local_sink_id',
    'streaming_sink_id',
]

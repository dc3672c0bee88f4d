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
Device Catalog

Aggregates the three device sources (local PCM enumeration, streaming
receiver discovery, Bluetooth) into the lists the control plane shows:

- inputs:  "None" + local capture devices + Bluetooth inputs
- outputs: local playback devices + streaming receivers, with receivers that
           advertise the same stereo group key merged into one stereo output

Every mutation replaces or patches the underlying descriptor lists and then
notifies listeners only if the UI-facing list actually changed.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .models import (
    VOID_INPUT,
    BluetoothDevice,
    InputDescriptor,
    InputKind,
    LocalMember,
    OutputDescriptor,
    PcmDevice,
    StreamingMember,
    UnifiedOutput,
)
from .pcm import DEFAULT_PCM_PATH, read_pcm_devices

logger = logging.getLogger(__name__)

DEFAULT_RESCAN_INTERVAL = 10.0


@dataclass(frozen=True)
class StreamingEvent:
    """A normalized discovery event for one streaming receiver."""
    name: str
    host: str
    port: int
    stereo_group_key: Optional[str] = None

    @property
    def key(self) -> Tuple[str, int]:
        return self.host, self.port

    def to_descriptor(self) -> OutputDescriptor:
        return OutputDescriptor.streaming(self.name, self.host, self.port, self.stereo_group_key)


def build_unified_outputs(
    local_outputs: Sequence[OutputDescriptor],
    streaming_outputs: Sequence[OutputDescriptor],
) -> List[UnifiedOutput]:
    """
    Build the UI-facing output list.

    Pure function: the same inputs always produce the same list with the same
    ui ids, so repeated rebuilds keep ids stable for unchanged devices.

    Args:
        local_outputs: Local playback descriptors
        streaming_outputs: Streaming descriptors in discovery order

    Returns:
        Local outputs first, then streaming outputs grouped by stereo key
    """
    unified: List[UnifiedOutput] = [
        UnifiedOutput(
            ui_id=o.local_sink_id,
            display_name=f"{o.name} (Output)",
            is_stereo=False,
            members=(LocalMember(o.local_sink_id),),
        )
        for o in local_outputs
        if o.local_sink_id is not None
    ]

    # Same receiver reported more than once: keep the first one seen
    unique: Dict[Tuple[str, str, int], OutputDescriptor] = {}
    for device in streaming_outputs:
        if device.is_local:
            continue
        identity = (device.name or "", device.host, device.port)
        if identity not in unique:
            unique[identity] = device

    # Ungrouped receivers get their own host:port key so they never merge
    grouped: Dict[str, List[OutputDescriptor]] = {}
    for device in unique.values():
        group_key = device.stereo_group_key or f"{device.host}:{device.port}"
        grouped.setdefault(group_key, []).append(device)

    # air:<name> only while the name is unique among single receivers
    single_names = Counter(devices[0].name for devices in grouped.values() if len(devices) == 1)

    for group_key, devices in grouped.items():
        if len(devices) == 1:
            d = devices[0]
            if d.name and single_names[d.name] == 1:
                ui_id = f"air:{d.name}"
            else:
                ui_id = f"air:{d.host}:{d.port}"
            unified.append(UnifiedOutput(
                ui_id=ui_id,
                display_name=f"{d.name or d.host} (AirPlay)",
                is_stereo=False,
                members=(StreamingMember(d.host, d.port),),
            ))
        else:
            unified.append(UnifiedOutput(
                ui_id=f"airpair:{group_key}",
                display_name=f"{group_key} (AirPlay Stereo)",
                is_stereo=True,
                members=tuple(StreamingMember(d.host, d.port) for d in devices),
            ))

    return unified


ListListener = Callable[[List[dict]], None]


class DeviceCatalog:
    """
    Owns every discovered device descriptor.

    Listeners registered with ``on_inputs_changed``/``on_outputs_changed``
    receive the serialized list whenever it changes.
    """

    def __init__(self, pcm_path: str = DEFAULT_PCM_PATH):
        self.pcm_path = pcm_path

        self._local_outputs: List[OutputDescriptor] = []
        self._local_inputs: List[InputDescriptor] = []
        self._streaming: List[OutputDescriptor] = []
        self._bluetooth: List[BluetoothDevice] = []

        self._unified: List[UnifiedOutput] = []
        self._input_listeners: List[ListListener] = []
        self._output_listeners: List[ListListener] = []

        self._rescan_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Listeners and views
    # ------------------------------------------------------------------

    def on_inputs_changed(self, listener: ListListener) -> None:
        self._input_listeners.append(listener)

    def on_outputs_changed(self, listener: ListListener) -> None:
        self._output_listeners.append(listener)

    def inputs(self) -> List[InputDescriptor]:
        """Inputs in UI order, starting with the null input."""
        return [VOID_INPUT, *self._local_inputs, *(d.to_input() for d in self._bluetooth)]

    def unified_outputs(self) -> List[UnifiedOutput]:
        return list(self._unified)

    def find_output(self, ui_id: str) -> Optional[UnifiedOutput]:
        for output in self._unified:
            if output.ui_id == ui_id:
                return output
        return None

    def build_unified_outputs(self) -> List[UnifiedOutput]:
        return build_unified_outputs(self._local_outputs, self._streaming)

    # ------------------------------------------------------------------
    # Local PCM devices
    # ------------------------------------------------------------------

    def rescan_local(self) -> bool:
        """
        Re-read the local PCM enumeration and replace the local lists.

        Returns:
            True if the listing was read, False if it could not be
        """
        try:
            outputs, inputs = read_pcm_devices(self.pcm_path)
        except OSError as e:
            logger.error(f"Error scanning {self.pcm_path}: {e}")
            return False

        self.replace_local(outputs, inputs)
        return True

    def replace_local(self, outputs: Sequence[PcmDevice], inputs: Sequence[PcmDevice]) -> None:
        before_inputs = self._serialized_inputs()
        self._local_outputs = [OutputDescriptor.local(d) for d in outputs]
        self._local_inputs = [
            InputDescriptor(id=d.id, display_name=d.name, kind=InputKind.LOCAL_CAPTURE)
            for d in inputs
        ]
        self._refresh_outputs()
        self._notify_inputs_if_changed(before_inputs)

    def start_periodic_rescan(self, interval: float = DEFAULT_RESCAN_INTERVAL) -> None:
        """Rescan immediately and then every ``interval`` seconds."""
        if self._rescan_task and not self._rescan_task.done():
            logger.warning("PCM rescan already running")
            return
        self.rescan_local()
        self._rescan_task = asyncio.get_running_loop().create_task(
            self._rescan_loop(interval), name="pcm-rescan"
        )
        logger.info(f"PCM device scanning enabled (every {interval:.0f}s)")

    async def stop(self) -> None:
        if self._rescan_task:
            self._rescan_task.cancel()
            try:
                await self._rescan_task
            except asyncio.CancelledError:
                pass
            self._rescan_task = None

    async def _rescan_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                self.rescan_local()
            except Exception as e:
                logger.error(f"Error in PCM rescan loop: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Streaming receivers
    # ------------------------------------------------------------------

    def on_streaming_device_up(self, event: StreamingEvent) -> None:
        if any((d.host, d.port) == event.key for d in self._streaming):
            return
        self._streaming.append(event.to_descriptor())
        logger.info(f"Streaming device discovered: {event.name} at {event.host}:{event.port}")
        self._refresh_outputs()

    def on_streaming_device_changed(self, event: StreamingEvent) -> None:
        for index, device in enumerate(self._streaming):
            if (device.host, device.port) == event.key:
                self._streaming[index] = event.to_descriptor()
                logger.info(f"Streaming device updated: {event.name} at {event.host}:{event.port}")
                self._refresh_outputs()
                return

        # Unknown receiver: merge it in as if it had just come up
        self._streaming.append(event.to_descriptor())
        logger.info(f"Streaming device added via change event: {event.name} at {event.host}:{event.port}")
        self._refresh_outputs()

    def on_streaming_device_down(self, event: StreamingEvent) -> None:
        before = len(self._streaming)
        self._streaming = [d for d in self._streaming if (d.host, d.port) != event.key]
        if len(self._streaming) < before:
            logger.info(f"Streaming device removed: {event.name} at {event.host}:{event.port}")
            self._refresh_outputs()

    # ------------------------------------------------------------------
    # Bluetooth
    # ------------------------------------------------------------------

    def on_bluetooth_devices_changed(self, devices: Sequence[BluetoothDevice]) -> None:
        before_inputs = self._serialized_inputs()
        self._bluetooth = list(devices)
        self._notify_inputs_if_changed(before_inputs)

    def bluetooth_device(self, input_id: str) -> Optional[BluetoothDevice]:
        for device in self._bluetooth:
            if device.input_id == input_id:
                return device
        return None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _serialized_inputs(self) -> List[dict]:
        return [d.to_dict() for d in self.inputs()]

    def _refresh_outputs(self) -> None:
        unified = self.build_unified_outputs()
        if unified == self._unified:
            return
        self._unified = unified
        payload = [o.to_dict() for o in unified]
        for listener in self._output_listeners:
            try:
                listener(payload)
            except Exception as e:
                logger.error(f"Error in output list listener: {e}")

    def _notify_inputs_if_changed(self, before: List[dict]) -> None:
        after = self._serialized_inputs()
        if after == before:
            return
        for listener in self._input_listeners:
            try:
                listener(after)
            except Exception as e:
                logger.error(f"Error in input list listener: {e}")


__all__ = ['DeviceCatalog', 'StreamingEvent', 'build_unified_outputs', 'DEFAULT_RESCAN_INTERVAL']

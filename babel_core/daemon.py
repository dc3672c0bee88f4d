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
BabelPod daemon wiring.

Builds every core component, connects their callbacks to the control-plane
event stream, and exposes the handful of entry points the web boundary
needs: connection bookkeeping, command dispatch and a state snapshot.
"""

import asyncio
import logging
import shutil
from typing import Any, Dict, List, Optional, Tuple

from .audio.duplicator import StreamDuplicator
from .audio.input_session import SETTLE_DELAY, InputSessionManager
from .audio.output_registry import DEFAULT_VOLUME, OutputRegistry
from .audio.process_supervisor import ProcessSupervisor
from .audio.streaming_sinks import CommandStreamingSinkProvider, StreamingSinkProvider
from .devices.bluetooth import BluetoothctlMonitor
from .devices.catalog import DEFAULT_RESCAN_INTERVAL, DeviceCatalog
from .devices.discovery import AvahiAdvertiser, AvahiDiscovery
from .errors import InvalidCommand, PermissionDenied
from .events import (
    INPUT_CHANGED,
    INPUT_LIST_CHANGED,
    LOST_CONTROL,
    OUTPUT_LIST_CHANGED,
    OUTPUTS_CHANGED,
    OWNER_CHANGED,
    VOLUME_CHANGED,
    EventEmitter,
)
from .session import SessionOwnerGate, TakeoverPolicy

logger = logging.getLogger(__name__)

GENERIC_ERROR_NOTICE = "Server encountered an unexpected error"

SWITCH_INPUT = "switchInput"
SYNC_OUTPUTS = "syncOutputs"
SET_VOLUME = "setVolume"
TAKEOVER_CONTROL = "takeoverControl"

COMMAND_TYPES = (SWITCH_INPUT, SYNC_OUTPUTS, SET_VOLUME, TAKEOVER_CONTROL)
MUTATING_COMMANDS = (SWITCH_INPUT, SYNC_OUTPUTS, SET_VOLUME)


class BabelPodDaemon:
    """
    Owns the audio core for the lifetime of the process.

    Collaborators can be injected for testing; anything left out is built
    with its default implementation.
    """

    def __init__(
        self,
        supervisor: Optional[ProcessSupervisor] = None,
        catalog: Optional[DeviceCatalog] = None,
        streaming: Optional[StreamingSinkProvider] = None,
        bluetooth: Optional[BluetoothctlMonitor] = None,
        discovery: Optional[AvahiDiscovery] = None,
        advertiser: Optional[AvahiAdvertiser] = None,
        takeover_policy: TakeoverPolicy = TakeoverPolicy.LAST_CONNECTED,
        initial_volume: int = DEFAULT_VOLUME,
        pcm_scan_enabled: bool = True,
        pcm_scan_interval: float = DEFAULT_RESCAN_INTERVAL,
        settle_delay: float = SETTLE_DELAY,
        scheduler: Optional[Any] = None,
        sleep: Optional[Any] = None,
    ):
        self.events = EventEmitter()
        self.supervisor = supervisor or ProcessSupervisor()
        self.catalog = catalog or DeviceCatalog()
        self.streaming = streaming or CommandStreamingSinkProvider(self.supervisor)
        self.bluetooth = bluetooth
        self.discovery = discovery
        self.advertiser = advertiser
        self.gate = SessionOwnerGate(takeover_policy)
        self.duplicator = StreamDuplicator("capture")

        self.inputs = InputSessionManager(
            self.supervisor,
            self.duplicator,
            self.gate,
            self.events,
            catalog=self.catalog,
            bluetooth=self.bluetooth,
            settle_delay=settle_delay,
            scheduler=scheduler,
            sleep=sleep,
        )
        self.outputs = OutputRegistry(
            self.supervisor,
            self.duplicator,
            self.streaming,
            self.catalog,
            self.gate,
            self.events,
            initial_volume=initial_volume,
        )

        self.pcm_scan_enabled = pcm_scan_enabled
        self.pcm_scan_interval = pcm_scan_interval
        self._running = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._previous_exception_handler = None

        self.catalog.on_inputs_changed(lambda payload: self.events.emit(INPUT_LIST_CHANGED, payload))
        self.catalog.on_outputs_changed(lambda payload: self.events.emit(OUTPUT_LIST_CHANGED, payload))
        self.gate.on_owner_changed(lambda owner: self.events.emit(OWNER_CHANGED, owner))
        self.gate.on_lost_control(lambda previous: self.events.emit(LOST_CONTROL, None, target=previous))

    @classmethod
    def from_settings(cls, settings: Any) -> "BabelPodDaemon":
        """Build a daemon from the application settings object."""
        supervisor = ProcessSupervisor(
            capture_command=settings.capture_command,
            playback_command=settings.playback_command,
        )
        catalog = DeviceCatalog(pcm_path=settings.pcm_proc_path)
        streaming = CommandStreamingSinkProvider(supervisor, settings.streaming_command)

        discovery = None
        if settings.discovery_enabled:
            discovery = AvahiDiscovery(catalog, supervisor)

        advertiser = None
        if settings.advertise_enabled:
            advertiser = AvahiAdvertiser(supervisor, settings.port)

        bluetooth = None
        if settings.bluetooth_enabled:
            if shutil.which("bluetoothctl"):
                bluetooth = BluetoothctlMonitor(catalog, poll_interval=settings.bluetooth_poll_interval)
            else:
                logger.info("bluetoothctl not found; Bluetooth inputs disabled")

        policy = (
            TakeoverPolicy.LAST_CONNECTED
            if settings.session_takeover_on_connect
            else TakeoverPolicy.FIRST_KEEPS
        )

        return cls(
            supervisor=supervisor,
            catalog=catalog,
            streaming=streaming,
            bluetooth=bluetooth,
            discovery=discovery,
            advertiser=advertiser,
            takeover_policy=policy,
            initial_volume=settings.initial_volume,
            pcm_scan_enabled=settings.pcm_scan_enabled,
            pcm_scan_interval=settings.pcm_scan_interval,
        )

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return

        self._loop = asyncio.get_running_loop()
        self._previous_exception_handler = self._loop.get_exception_handler()
        self._loop.set_exception_handler(self._handle_loop_exception)

        if self.pcm_scan_enabled:
            self.catalog.start_periodic_rescan(self.pcm_scan_interval)
        else:
            logger.info("PCM device scanning disabled")

        if self.discovery is not None:
            await self.discovery.start()
        if self.bluetooth is not None:
            await self.bluetooth.start()
        if self.advertiser is not None:
            await self.advertiser.start()

        self._running = True
        logger.info("BabelPod daemon started")

    async def stop(self) -> None:
        """Stop capture, every output, discovery and pollers."""
        if not self._running:
            return
        self._running = False
        logger.info("Stopping BabelPod daemon...")

        await self.inputs.shutdown()
        await self.outputs.shutdown()
        await self.streaming.shutdown()

        if self.advertiser is not None:
            await self.advertiser.stop()
        if self.discovery is not None:
            await self.discovery.stop()
        if self.bluetooth is not None:
            await self.bluetooth.stop()
        await self.catalog.stop()

        await self.duplicator.close()
        await self.supervisor.shutdown()

        if self._loop is not None:
            self._loop.set_exception_handler(self._previous_exception_handler)
            self._loop = None
        logger.info("BabelPod daemon stopped")

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        exc = context.get('exception')
        logger.error(f"Unhandled error in event loop: {context.get('message')}", exc_info=exc)
        self.events.error(GENERIC_ERROR_NOTICE)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def initial_messages(self) -> List[Tuple[str, Any]]:
        """Messages a freshly connected client needs to render the UI."""
        return [
            (INPUT_LIST_CHANGED, [d.to_dict() for d in self.catalog.inputs()]),
            (OUTPUT_LIST_CHANGED, [o.to_dict() for o in self.catalog.unified_outputs()]),
            (INPUT_CHANGED, self.inputs.current_input_id),
            (OUTPUTS_CHANGED, self.outputs.selected_outputs()),
            (VOLUME_CHANGED, self.outputs.volume),
            (OWNER_CHANGED, self.gate.owner),
        ]

    def connect(self, connection_id: str) -> Optional[str]:
        logger.info(f"Client connected: {connection_id}")
        return self.gate.connect(connection_id)

    def disconnect(self, connection_id: str) -> None:
        logger.info(f"Client disconnected: {connection_id}")
        self.gate.disconnect(connection_id)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def handle_command(self, connection_id: str, command: str, data: Any = None) -> bool:
        """
        Dispatch one control-plane command.

        Raises:
            PermissionDenied: if a mutating command comes from a non-owner
            InvalidCommand: for an unknown command type or a missing input id
        """
        if command not in COMMAND_TYPES:
            raise InvalidCommand(f"Unknown command: {command}")

        if command == TAKEOVER_CONTROL:
            self.gate.takeover(connection_id)
            return True

        if command in MUTATING_COMMANDS and not self.gate.is_owner(connection_id):
            raise PermissionDenied(f"Connection {connection_id} does not control the session")

        if command == SWITCH_INPUT:
            if data is None or not str(data).strip():
                raise InvalidCommand("switchInput requires an input id")
            return await self.inputs.switch_input(str(data), connection_id)
        if command == SYNC_OUTPUTS:
            if data is None:
                desired = []
            elif isinstance(data, (list, tuple)):
                desired = [str(ui_id) for ui_id in data]
            else:
                desired = [str(data)]
            return await self.outputs.sync(desired, connection_id)
        return await self.outputs.set_volume(data, connection_id)

    def snapshot(self) -> Dict[str, Any]:
        return {
            'inputs': [d.to_dict() for d in self.catalog.inputs()],
            'outputs': [o.to_dict() for o in self.catalog.unified_outputs()],
            'currentInput': self.inputs.current_input_id,
            'selectedOutputs': self.outputs.selected_outputs(),
            'volume': self.outputs.volume,
            'owner': self.gate.owner,
            'session': self.inputs.snapshot(),
            'duplicator': self.duplicator.get_stats(),
            'running': self._running,
        }


__all__ = [
    'BabelPodDaemon',
    'COMMAND_TYPES',
    'GENERIC_ERROR_NOTICE',
    'SWITCH_INPUT',
    'SYNC_OUTPUTS',
    'SET_VOLUME',
    'TAKEOVER_CONTROL',
]

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
Input Session Manager

Owns the single "current input" and the one capture process feeding the
duplicator. State machine:

    VOID → STARTING → STREAMING → RETRYING → STARTING | FAILED
    any  → VOID      (switch to the null input)
    any  → STARTING  (switch to a device)

Recovery policies:
- Busy retry: while a manual switch is in flight, a "device busy"/"open
  error" report is retried up to 5 times with exponential backoff
  (200, 400, 800, 1600, 3200 ms).
- Crash restart: an unexpected non-zero/signal exit outside a manual switch
  is restarted up to 3 times, 2 s apart.

Every start (manual, retry or restart) runs the same sequence: kill orphaned
capture processes for the device, wait a settle delay, spawn, pipe. Every
scheduled retry/restart remembers the switch generation and the device and
does nothing if either has changed by the time it fires.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from ..devices.models import VOID_INPUT_ID, InputKind, classify_input_id
from ..errors import DeviceBusyError, SpawnError, UnexpectedExitError
from ..events import INPUT_CHANGED, EventEmitter
from .duplicator import StreamDuplicator
from .process_supervisor import ProcessHandle, ProcessSupervisor

logger = logging.getLogger(__name__)

SETTLE_DELAY = 0.5
MAX_BUSY_RETRIES = 5
BUSY_RETRY_BASE_DELAY = 0.2
MAX_CRASH_RESTARTS = 3
CRASH_RESTART_DELAY = 2.0
BLUETOOTH_CONNECT_DELAY = 5.0

BUSY_MARKERS = ("device or resource busy", "busy", "open error")
ERROR_MARKERS = ("error", "failed")


class InputState(Enum):
    """State of the input session."""
    VOID = "void"
    STARTING = "starting"
    STREAMING = "streaming"
    RETRYING = "retrying"
    FAILED = "failed"


@dataclass
class InputSession:
    """Process-wide input session. Mutated only by InputSessionManager."""
    current_input_id: str = VOID_INPUT_ID
    capture_process: Optional[ProcessHandle] = None
    state: InputState = InputState.VOID
    manual_switch_in_flight: bool = False
    busy_retry_count: int = 0
    crash_restart_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'currentInputId': self.current_input_id,
            'state': self.state.value,
            'capturePid': self.capture_process.pid if self.capture_process else None,
            'manualSwitchInFlight': self.manual_switch_in_flight,
            'busyRetryCount': self.busy_retry_count,
            'crashRestartCount': self.crash_restart_count,
        }


def busy_retry_delay(attempt: int) -> float:
    """Backoff delay in seconds before busy retry number ``attempt`` (1-based)."""
    return BUSY_RETRY_BASE_DELAY * (2 ** (attempt - 1))


def is_busy_report(line: str) -> bool:
    lowered = line.lower()
    return any(marker in lowered for marker in BUSY_MARKERS)


def is_error_report(line: str) -> bool:
    lowered = line.lower()
    return any(marker in lowered for marker in ERROR_MARKERS)


Scheduler = Callable[[float, Callable[[], None]], Any]
Sleeper = Callable[[float], Awaitable[None]]


def _call_later(delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
    return asyncio.get_running_loop().call_later(delay, callback)


class InputSessionManager:
    """
    Switches the capture device and keeps it running.

    Args:
        supervisor: Starts and stops capture processes
        duplicator: Fan-out point the capture stdout is pumped into
        gate: Session owner gate (anything with ``is_owner(connection_id)``)
        events: Control-plane event emitter
        catalog: Device catalog, used to look up Bluetooth devices
        bluetooth: Bluetooth capability with ``async connect(mac)``
        settle_delay: Seconds to wait between orphan cleanup and spawn
        scheduler: ``(delay, callback) -> handle`` used for retry timers
        sleep: Coroutine function used for settle and connect delays
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        duplicator: StreamDuplicator,
        gate: Any,
        events: EventEmitter,
        catalog: Optional[Any] = None,
        bluetooth: Optional[Any] = None,
        settle_delay: float = SETTLE_DELAY,
        scheduler: Optional[Scheduler] = None,
        sleep: Optional[Sleeper] = None,
    ):
        self._supervisor = supervisor
        self._duplicator = duplicator
        self._gate = gate
        self._events = events
        self._catalog = catalog
        self._bluetooth = bluetooth
        self.settle_delay = settle_delay
        self._scheduler = scheduler or _call_later
        self._sleep = sleep or asyncio.sleep

        self._session = InputSession()
        self._generation = 0
        self._pending_timer: Optional[Any] = None
        self._lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def session(self) -> InputSession:
        return self._session

    @property
    def current_input_id(self) -> str:
        return self._session.current_input_id

    @property
    def state(self) -> InputState:
        return self._session.state

    def snapshot(self) -> Dict[str, Any]:
        return self._session.to_dict()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def switch_input(self, new_id: str, requested_by: Optional[str]) -> bool:
        """
        Switch the current input.

        Non-owners are ignored. Any pending retry or restart is cancelled.

        Returns:
            True if the switch was accepted
        """
        if not self._gate.is_owner(requested_by):
            logger.debug(f"Ignoring input switch from non-owner {requested_by}")
            return False

        logger.info(f"Switching input to: {new_id}")
        session = self._session
        self._generation += 1
        generation = self._generation
        self._cancel_pending_timer()

        session.manual_switch_in_flight = True
        session.busy_retry_count = 0
        session.crash_restart_count = 0

        async with self._lock:
            await self._teardown_capture()
            session.current_input_id = new_id

        self._events.emit(INPUT_CHANGED, new_id)

        if new_id == VOID_INPUT_ID:
            self._duplicator.attach_source(None)
            session.state = InputState.VOID
            session.manual_switch_in_flight = False
            self._events.status(f"Input switched to {new_id}")
            return True

        await self._launch(new_id, generation)
        return True

    async def shutdown(self) -> None:
        """Stop the capture process and forget any pending retries."""
        self._generation += 1
        self._cancel_pending_timer()
        async with self._lock:
            await self._teardown_capture()
        for task in list(self._tasks):
            task.cancel()
        self._session.manual_switch_in_flight = False
        logger.info("Input session stopped")

    # ------------------------------------------------------------------
    # Start sequence
    # ------------------------------------------------------------------

    def _is_current(self, device_id: str, generation: int) -> bool:
        return generation == self._generation and self._session.current_input_id == device_id

    async def _launch(self, device_id: str, generation: int) -> None:
        """Orphan cleanup, settle delay, spawn and pipe for ``device_id``."""
        session = self._session
        if not self._is_current(device_id, generation):
            return
        session.state = InputState.STARTING

        if classify_input_id(device_id) == InputKind.BLUETOOTH_CAPTURE:
            if not await self._ensure_bluetooth_connected(device_id, generation):
                return

        await self._supervisor.kill_orphans(device_id)
        await self._sleep(self.settle_delay)

        if not self._is_current(device_id, generation):
            logger.debug(f"Start of {device_id} superseded during settle delay")
            return

        async with self._lock:
            if not self._is_current(device_id, generation):
                return

            await self._teardown_capture()

            try:
                handle = await self._supervisor.start_capture(device_id)
            except SpawnError as e:
                session.state = InputState.FAILED
                session.manual_switch_in_flight = False
                self._events.error(f"Failed to switch input: {e}")
                return

            session.capture_process = handle
            handle.on_stderr(self._on_capture_stderr)
            handle.on_exit(self._on_capture_exit)
            self._duplicator.attach_source(
                handle.stdout,
                label=device_id,
                on_first_chunk=lambda: self._on_capture_confirmed(handle),
            )

    async def _ensure_bluetooth_connected(self, device_id: str, generation: int) -> bool:
        device = self._catalog.bluetooth_device(device_id) if self._catalog else None
        if device is None or device.connected or self._bluetooth is None:
            return True

        self._events.status(f"Connecting to Bluetooth device {device.name}...")
        try:
            await self._bluetooth.connect(device.mac)
        except Exception as e:
            logger.error(f"Error connecting to Bluetooth device {device.mac}: {e}")
            if self._is_current(device_id, generation):
                self._session.state = InputState.FAILED
                self._session.manual_switch_in_flight = False
                self._events.error(f"Failed to connect to Bluetooth: {e}")
            return False

        await self._sleep(BLUETOOTH_CONNECT_DELAY)
        return self._is_current(device_id, generation)

    async def _teardown_capture(self) -> None:
        handle = self._session.capture_process
        self._session.capture_process = None
        self._duplicator.detach_source()
        if handle is not None:
            await self._supervisor.terminate(handle, graceful=True)

    def _release_capture(self, handle: ProcessHandle) -> None:
        """Drop a capture process from the session outside the lock."""
        if self._session.capture_process is handle:
            self._session.capture_process = None
            self._duplicator.detach_source()
        handle.expected_exit = True
        if handle.running:
            self._spawn_task(self._supervisor.terminate(handle, graceful=True))

    # ------------------------------------------------------------------
    # Process events
    # ------------------------------------------------------------------

    def _on_capture_confirmed(self, handle: ProcessHandle) -> None:
        session = self._session
        if session.capture_process is not handle:
            return
        was_manual = session.manual_switch_in_flight
        session.state = InputState.STREAMING
        session.manual_switch_in_flight = False
        if was_manual:
            self._events.status(f"Input switched to {handle.device_id}")
        else:
            self._events.status(f"Input device reconnected: {handle.device_id}")
        logger.info(f"Capture streaming from {handle.device_id} (pid={handle.pid})")

    def _on_capture_stderr(self, handle: ProcessHandle, line: str) -> None:
        session = self._session
        if session.capture_process is not handle:
            return

        if (
            is_busy_report(line)
            and session.manual_switch_in_flight
            and session.state == InputState.STARTING
        ):
            self._handle_busy(handle, line)
        elif is_error_report(line):
            self._events.error(f"Input error: {line[:100]}")

    def _handle_busy(self, handle: ProcessHandle, line: str) -> None:
        session = self._session
        device_id = handle.device_id
        self._release_capture(handle)
        session.busy_retry_count += 1

        if session.busy_retry_count > MAX_BUSY_RETRIES:
            error = DeviceBusyError(device_id, MAX_BUSY_RETRIES, line)
            logger.error(str(error))
            session.state = InputState.FAILED
            session.manual_switch_in_flight = False
            self._events.error(f"{error}. Please reselect the input.")
            return

        delay = busy_retry_delay(session.busy_retry_count)
        session.state = InputState.RETRYING
        logger.warning(
            f"Input device {device_id} busy, retrying in {delay:.1f}s "
            f"(attempt {session.busy_retry_count}/{MAX_BUSY_RETRIES})"
        )
        self._events.status(
            f"Input device busy, retrying in {int(delay * 1000)}ms "
            f"(attempt {session.busy_retry_count}/{MAX_BUSY_RETRIES})"
        )
        self._schedule_start(delay, device_id)

    def _on_capture_exit(self, handle: ProcessHandle) -> None:
        session = self._session
        if session.capture_process is not handle or handle.expected_exit:
            return

        self._release_capture(handle)
        device_id = handle.device_id

        if session.manual_switch_in_flight:
            session.manual_switch_in_flight = False
            session.state = InputState.FAILED
            self._events.error(
                f"Failed to start input {device_id} "
                f"(code: {handle.returncode}, signal: {handle.signal})"
            )
            return

        if session.current_input_id != device_id:
            return

        if not handle.crashed:
            session.state = InputState.FAILED
            self._events.status(f"Input stream ended: {device_id}. Please reselect the input.")
            return

        error = UnexpectedExitError(device_id, handle.returncode, handle.signal)
        logger.error(str(error))
        session.state = InputState.RETRYING
        session.crash_restart_count += 1

        if session.crash_restart_count > MAX_CRASH_RESTARTS:
            logger.error(f"Max restart attempts ({MAX_CRASH_RESTARTS}) reached for {device_id}")
            session.state = InputState.FAILED
            self._events.error(
                f"Input device failed after {MAX_CRASH_RESTARTS} reconnection attempts. "
                f"Please reselect the input."
            )
            return

        self._events.error("Input device disconnected - attempting to reconnect...")
        self._events.status(
            f"Reconnecting input {device_id} "
            f"(attempt {session.crash_restart_count}/{MAX_CRASH_RESTARTS})"
        )
        self._schedule_start(CRASH_RESTART_DELAY, device_id)

    # ------------------------------------------------------------------
    # Timers and tasks
    # ------------------------------------------------------------------

    def _schedule_start(self, delay: float, device_id: str) -> None:
        generation = self._generation
        self._cancel_pending_timer()

        def fire() -> None:
            self._pending_timer = None
            if not self._is_current(device_id, generation):
                logger.debug(f"Discarding stale start for {device_id}")
                return
            logger.info(f"Attempting to restart input device: {device_id}")
            self._spawn_task(self._launch(device_id, generation))

        self._pending_timer = self._scheduler(delay, fire)

    def _cancel_pending_timer(self) -> None:
        if self._pending_timer is not None:
            self._pending_timer.cancel()
            self._pending_timer = None

    def _spawn_task(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Input session task failed: {error}", exc_info=error)
            self._events.error("Server encountered an unexpected error")


__all__ = [
    'InputState',
    'InputSession',
    'InputSessionManager',
    'busy_retry_delay',
    'is_busy_report',
    'SETTLE_DELAY',
    'MAX_BUSY_RETRIES',
    'MAX_CRASH_RESTARTS',
    'CRASH_RESTART_DELAY',
    'BUSY_RETRY_BASE_DELAY',
    'BLUETOOTH_CONNECT_DELAY',
]

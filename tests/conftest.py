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

"""Pytest configuration and shared fakes for BabelPod tests.

The audio core never talks to real ALSA or network devices in tests: the
supervisor, streaming provider, scheduler and sleeper are all replaced by
the recording fakes below. Async code is driven with ``asyncio.run``.
"""
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import pytest

# Add project root to Python path for imports
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from babel_core.audio.process_supervisor import ProgramKind  # noqa: E402


BUSY_LINE = "arecord: main:850: audio open error: Device or resource busy"


async def drain_loop(rounds: int = 20) -> None:
    """Let pending tasks and callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ============================================================================
# Process fakes
# ============================================================================

class FakeWriter:
    """Stand-in for a child's stdin StreamWriter."""

    def __init__(self, fail_with: Optional[BaseException] = None):
        self.chunks: List[bytes] = []
        self.closed = False
        self.fail_with = fail_with

    def write(self, chunk: bytes) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.chunks.append(chunk)

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True


class FakeHandle:
    """Mimics ProcessHandle without a real child process."""

    def __init__(self, kind: ProgramKind, device_id: str, pid: int, argv=None):
        self.kind = kind
        self.device_id = device_id
        self.pid = pid
        self.argv = list(argv or [])
        self.stdout = asyncio.StreamReader() if kind in (ProgramKind.CAPTURE, ProgramKind.DISCOVERY) else None
        self.stdin = FakeWriter() if kind in (ProgramKind.PLAYBACK, ProgramKind.STREAMING) else None

        self.expected_exit = False
        self.returncode: Optional[int] = None
        self.signal: Optional[int] = None
        self._stderr_listeners = []
        self._exit_listeners = []

    @property
    def running(self) -> bool:
        return self.returncode is None and self.signal is None

    @property
    def crashed(self) -> bool:
        return self.signal is not None or (self.returncode not in (None, 0))

    def on_stderr(self, listener) -> None:
        self._stderr_listeners.append(listener)

    def on_exit(self, listener) -> None:
        self._exit_listeners.append(listener)

    def emit_stderr(self, line: str) -> None:
        for listener in list(self._stderr_listeners):
            listener(self, line)

    def finish(self, code: Optional[int] = None, signal: Optional[int] = None) -> None:
        """Simulate process exit and notify listeners."""
        if not self.running:
            return
        self.returncode = code
        self.signal = signal
        for listener in list(self._exit_listeners):
            listener(self)


class FakeSupervisor:
    """Records every spawn/terminate instead of running programs."""

    def __init__(self, log: Optional[list] = None):
        self.spawned: List[FakeHandle] = []
        self.terminated: List[FakeHandle] = []
        self.orphan_scans: List[str] = []
        self.fail_devices = set()
        self.log = log if log is not None else []
        self._next_pid = 1000

    def _make(self, kind: ProgramKind, device_id: str, argv=None) -> FakeHandle:
        if device_id in self.fail_devices:
            from babel_core.errors import SpawnError
            raise SpawnError(kind.value, device_id, "No such file or directory")
        self._next_pid += 1
        handle = FakeHandle(kind, device_id, self._next_pid, argv)
        self.spawned.append(handle)
        self.log.append(("spawn", kind.value, device_id))
        return handle

    def live(self, kind: ProgramKind) -> List[FakeHandle]:
        return [h for h in self.spawned if h.kind == kind and h.running]

    async def kill_orphans(self, device_id: str) -> int:
        self.orphan_scans.append(device_id)
        return 0

    async def start_capture(self, device_id: str) -> FakeHandle:
        return self._make(ProgramKind.CAPTURE, device_id)

    async def start_local_sink(self, device_id: str) -> FakeHandle:
        return self._make(ProgramKind.PLAYBACK, device_id)

    async def start_monitor(self, label: str, argv) -> FakeHandle:
        return self._make(ProgramKind.DISCOVERY, label, argv)

    async def spawn(self, kind, device_id, argv, stdin=False, stdout=False) -> FakeHandle:
        return self._make(kind, device_id, argv)

    async def terminate(self, handle: FakeHandle, graceful: bool = True) -> None:
        handle.expected_exit = True
        self.terminated.append(handle)
        self.log.append(("terminate", handle.kind.value, handle.device_id))
        handle.finish(signal=2)

    async def shutdown(self) -> None:
        for handle in list(self.spawned):
            if handle.running:
                await self.terminate(handle)


# ============================================================================
# Streaming fakes
# ============================================================================

class FakeStreamingHandle:
    def __init__(self, host: str, port: int, volume: int, stereo: bool):
        self.host = host
        self.port = port
        self.volume = volume
        self.stereo = stereo
        self.chunks: List[bytes] = []

    @property
    def key(self) -> str:
        return f"{self.host}:{self.port}"

    async def write(self, chunk: bytes) -> None:
        self.chunks.append(chunk)


class FakeStreamingProvider:
    """Streaming provider that records calls and can be told to fail."""

    def __init__(self, log: Optional[list] = None):
        self.sinks = {}
        self.added: List[FakeStreamingHandle] = []
        self.stopped: List[str] = []
        self.volume_calls: List[tuple] = []
        self.fail_hosts = set()
        self.log = log if log is not None else []

    async def add(self, host: str, port: int, volume: int, stereo: bool) -> FakeStreamingHandle:
        if host in self.fail_hosts:
            raise ConnectionError(f"Connection refused by {host}:{port}")
        handle = FakeStreamingHandle(host, port, volume, stereo)
        self.sinks[handle.key] = handle
        self.added.append(handle)
        self.log.append(("add", handle.key))
        return handle

    async def stop(self, host: str, port: int) -> None:
        key = f"{host}:{port}"
        self.sinks.pop(key, None)
        self.stopped.append(key)
        self.log.append(("stop", key))

    async def set_volume(self, key: str, value: int) -> None:
        if key not in self.sinks:
            raise KeyError(key)
        self.sinks[key].volume = value
        self.volume_calls.append((key, value))

    async def shutdown(self) -> None:
        self.sinks.clear()


# ============================================================================
# Time fakes
# ============================================================================

class FakeTimer:
    def __init__(self, delay: float, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.callback()


class FakeScheduler:
    """``(delay, callback) -> handle`` that never fires on its own."""

    def __init__(self):
        self.timers: List[FakeTimer] = []

    def __call__(self, delay: float, callback) -> FakeTimer:
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def delays(self) -> List[float]:
        return [t.delay for t in self.timers]

    @property
    def last(self) -> FakeTimer:
        return self.timers[-1]


class FakeSleeper:
    """Records requested sleeps; optionally yields to the loop once."""

    def __init__(self, yield_control: bool = False):
        self.calls: List[float] = []
        self.yield_control = yield_control

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        if self.yield_control:
            await asyncio.sleep(0)


class EventRecorder:
    """Collects control events emitted by an EventEmitter."""

    def __init__(self, emitter):
        self.events = []
        emitter.subscribe(self.events.append)

    def of_type(self, event_type: str) -> list:
        return [e for e in self.events if e.type == event_type]

    def messages(self, event_type: str) -> List[str]:
        return [e.data['message'] for e in self.of_type(event_type)]


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def pcm_listing() -> List[str]:
    """A /proc/asound/pcm listing with playback, capture and both."""
    return [
        "00-00: bcm2835 ALSA : bcm2835 ALSA : playback 7\n",
        "01-00: USB Audio : USB Audio : playback 1 : capture 1\n",
        "02-00: Line In : Line In Capture : capture 1\n",
    ]


# ============================================================================
# Test markers
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom settings."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (may use mocks)"
    )


def pytest_collection_modifyitems(config, items):
    """Add the 'unit' marker to tests without any marker."""
    for item in items:
        if not any(item.iter_markers()):
            item.add_marker(pytest.mark.unit)

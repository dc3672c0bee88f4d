"""Tests for the input session state machine: switching, busy retry and crash restart."""

import asyncio
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from babel_core.audio.duplicator import StreamDuplicator
from babel_core.audio.input_session import (
    BLUETOOTH_CONNECT_DELAY,
    CRASH_RESTART_DELAY,
    SETTLE_DELAY,
    InputSessionManager,
    InputState,
    busy_retry_delay,
    is_busy_report,
)
from babel_core.audio.process_supervisor import ProgramKind
from babel_core.devices.catalog import DeviceCatalog
from babel_core.devices.models import BluetoothDevice
from babel_core.events import ERROR_NOTICE, INPUT_CHANGED, STATUS_NOTICE, EventEmitter
from babel_core.session import SessionOwnerGate

from conftest import (
    BUSY_LINE,
    EventRecorder,
    FakeScheduler,
    FakeSleeper,
    FakeSupervisor,
    drain_loop,
)

USB = "plughw:1,0"
LINE_IN = "plughw:2,0"


def _env(yield_control=False, catalog=None, bluetooth=None):
    supervisor = FakeSupervisor()
    scheduler = FakeScheduler()
    sleeper = FakeSleeper(yield_control=yield_control)
    gate = SessionOwnerGate()
    gate.connect("owner")
    events = EventEmitter()
    recorder = EventRecorder(events)
    duplicator = StreamDuplicator("test")
    manager = InputSessionManager(
        supervisor,
        duplicator,
        gate,
        events,
        catalog=catalog,
        bluetooth=bluetooth,
        scheduler=scheduler,
        sleep=sleeper,
    )
    return SimpleNamespace(
        supervisor=supervisor,
        scheduler=scheduler,
        sleeper=sleeper,
        gate=gate,
        events=recorder,
        duplicator=duplicator,
        manager=manager,
    )


async def _confirm(env):
    """Feed the first PCM chunk so the current capture counts as confirmed."""
    env.manager.session.capture_process.stdout.feed_data(b"\x01\x02" * 64)
    await drain_loop()


def test_busy_retry_delays_double_from_200ms():
    assert [busy_retry_delay(n) for n in range(1, 6)] == pytest.approx([0.2, 0.4, 0.8, 1.6, 3.2])


def test_busy_markers_are_recognised():
    assert is_busy_report(BUSY_LINE)
    assert is_busy_report("ALSA lib pcm_hw.c: open error")
    assert not is_busy_report("Recording WAVE 'stdin' : Signed 16 bit")


def test_switch_runs_orphan_cleanup_and_settle_delay_before_spawn():
    async def scenario():
        env = _env()

        assert await env.manager.switch_input(USB, "owner") is True

        assert env.supervisor.orphan_scans == [USB]
        assert env.sleeper.calls == [SETTLE_DELAY]
        handle = env.manager.session.capture_process
        assert handle.device_id == USB
        assert env.manager.state == InputState.STARTING
        assert env.manager.session.manual_switch_in_flight is True
        assert env.duplicator.source_label == USB
        assert env.events.of_type(INPUT_CHANGED)[0].data == USB

        await _confirm(env)

        assert env.manager.state == InputState.STREAMING
        assert env.manager.session.manual_switch_in_flight is False
        assert f"Input switched to {USB}" in env.events.messages(STATUS_NOTICE)

    asyncio.run(scenario())


def test_non_owner_switch_changes_nothing():
    async def scenario():
        env = _env()

        assert await env.manager.switch_input(USB, "intruder") is False

        assert env.supervisor.spawned == []
        assert env.supervisor.orphan_scans == []
        assert env.manager.current_input_id == "void"
        assert env.manager.state == InputState.VOID
        assert env.events.events == []

    asyncio.run(scenario())


def test_busy_retries_back_off_then_fail():
    async def scenario():
        env = _env()
        await env.manager.switch_input(USB, "owner")

        for attempt in range(1, 6):
            env.manager.session.capture_process.emit_stderr(BUSY_LINE)
            assert env.manager.state == InputState.RETRYING
            assert env.manager.session.busy_retry_count == attempt

            env.scheduler.last.fire()
            await drain_loop()

            assert env.manager.state == InputState.STARTING
            assert len(env.supervisor.live(ProgramKind.CAPTURE)) == 1

        env.manager.session.capture_process.emit_stderr(BUSY_LINE)
        await drain_loop()

        assert env.scheduler.delays == pytest.approx([0.2, 0.4, 0.8, 1.6, 3.2])
        assert env.manager.state == InputState.FAILED
        assert env.manager.session.manual_switch_in_flight is False
        assert env.supervisor.live(ProgramKind.CAPTURE) == []
        assert env.events.messages(ERROR_NOTICE)[-1].endswith("Please reselect the input.")
        assert len([h for h in env.supervisor.spawned if h.kind == ProgramKind.CAPTURE]) == 6

    asyncio.run(scenario())


def test_busy_after_confirmation_is_not_retried():
    async def scenario():
        env = _env()
        await env.manager.switch_input(USB, "owner")
        await _confirm(env)

        env.manager.session.capture_process.emit_stderr(BUSY_LINE)

        assert env.scheduler.timers == []
        assert env.manager.state == InputState.STREAMING
        assert env.events.messages(ERROR_NOTICE) == [f"Input error: {BUSY_LINE}"]

    asyncio.run(scenario())


def test_crash_restarts_are_capped_at_three():
    async def scenario():
        env = _env()
        await env.manager.switch_input(USB, "owner")
        await _confirm(env)

        for attempt in range(1, 4):
            env.manager.session.capture_process.finish(code=1)
            assert env.manager.state == InputState.RETRYING
            assert env.manager.session.crash_restart_count == attempt
            assert env.scheduler.last.delay == CRASH_RESTART_DELAY

            env.scheduler.last.fire()
            await drain_loop()
            assert env.manager.session.capture_process.running

        env.manager.session.capture_process.finish(signal=9)

        assert env.manager.state == InputState.FAILED
        assert len(env.scheduler.timers) == 3
        assert env.events.messages(ERROR_NOTICE)[-1] == (
            "Input device failed after 3 reconnection attempts. Please reselect the input."
        )

    asyncio.run(scenario())


def test_restarted_capture_reports_reconnection():
    async def scenario():
        env = _env()
        await env.manager.switch_input(USB, "owner")
        await _confirm(env)

        env.manager.session.capture_process.finish(code=1)
        assert "Input device disconnected - attempting to reconnect..." in env.events.messages(ERROR_NOTICE)
        env.scheduler.last.fire()
        await drain_loop()
        await _confirm(env)

        assert env.manager.state == InputState.STREAMING
        assert f"Input device reconnected: {USB}" in env.events.messages(STATUS_NOTICE)

    asyncio.run(scenario())


def test_manual_switch_cancels_pending_retry():
    async def scenario():
        env = _env()
        await env.manager.switch_input(USB, "owner")
        env.manager.session.capture_process.emit_stderr(BUSY_LINE)
        pending = env.scheduler.last

        await env.manager.switch_input(LINE_IN, "owner")

        assert pending.cancelled is True
        assert env.manager.session.busy_retry_count == 0
        assert env.manager.session.crash_restart_count == 0

        # A timer that was already due must still do nothing
        pending.callback()
        await drain_loop()

        captures = [h.device_id for h in env.supervisor.spawned if h.kind == ProgramKind.CAPTURE]
        assert captures == [USB, LINE_IN]
        assert [h.device_id for h in env.supervisor.live(ProgramKind.CAPTURE)] == [LINE_IN]

    asyncio.run(scenario())


def test_switch_to_void_cancels_pending_restart():
    async def scenario():
        env = _env()
        await env.manager.switch_input(USB, "owner")
        await _confirm(env)
        env.manager.session.capture_process.finish(code=1)
        pending = env.scheduler.last

        await env.manager.switch_input("void", "owner")
        pending.callback()
        await drain_loop()

        assert pending.cancelled is True
        assert env.manager.state == InputState.VOID
        assert env.duplicator.has_source is False
        assert env.supervisor.live(ProgramKind.CAPTURE) == []
        assert len(env.supervisor.spawned) == 1

    asyncio.run(scenario())


def test_sequential_switches_keep_one_capture():
    async def scenario():
        env = _env()
        await env.manager.switch_input(USB, "owner")
        first = env.manager.session.capture_process

        await env.manager.switch_input(LINE_IN, "owner")

        assert first in env.supervisor.terminated
        assert first.expected_exit is True
        assert [h.device_id for h in env.supervisor.live(ProgramKind.CAPTURE)] == [LINE_IN]
        assert env.manager.state == InputState.STARTING

    asyncio.run(scenario())


def test_overlapping_switches_spawn_only_the_latest():
    async def scenario():
        env = _env(yield_control=True)

        await asyncio.gather(
            env.manager.switch_input(USB, "owner"),
            env.manager.switch_input(LINE_IN, "owner"),
        )
        await drain_loop()

        assert [h.device_id for h in env.supervisor.spawned] == [LINE_IN]
        assert len(env.supervisor.live(ProgramKind.CAPTURE)) == 1
        assert env.manager.current_input_id == LINE_IN

    asyncio.run(scenario())


def test_exit_before_first_chunk_fails_the_switch():
    async def scenario():
        env = _env()
        await env.manager.switch_input(USB, "owner")

        env.manager.session.capture_process.finish(code=1)

        assert env.manager.state == InputState.FAILED
        assert env.scheduler.timers == []
        assert env.events.messages(ERROR_NOTICE)[-1].startswith(f"Failed to start input {USB}")

    asyncio.run(scenario())


def test_clean_exit_is_not_restarted():
    async def scenario():
        env = _env()
        await env.manager.switch_input(USB, "owner")
        await _confirm(env)

        env.manager.session.capture_process.finish(code=0)

        assert env.manager.state == InputState.FAILED
        assert env.scheduler.timers == []
        assert any(m.startswith("Input stream ended") for m in env.events.messages(STATUS_NOTICE))

    asyncio.run(scenario())


def test_spawn_failure_is_reported():
    async def scenario():
        env = _env()
        env.supervisor.fail_devices.add(USB)

        await env.manager.switch_input(USB, "owner")

        assert env.manager.state == InputState.FAILED
        assert env.manager.session.capture_process is None
        assert env.events.messages(ERROR_NOTICE)[-1].startswith("Failed to switch input")

    asyncio.run(scenario())


def test_error_lines_are_truncated_for_the_ui():
    async def scenario():
        env = _env()
        await env.manager.switch_input(USB, "owner")
        await _confirm(env)

        env.manager.session.capture_process.emit_stderr("overrun error " + "x" * 300)

        message = env.events.messages(ERROR_NOTICE)[-1]
        assert message.startswith("Input error: overrun error")
        assert len(message) == len("Input error: ") + 100

    asyncio.run(scenario())


class _FakeBluetooth:
    def __init__(self, fail=False):
        self.connected = []
        self.fail = fail

    async def connect(self, mac):
        if self.fail:
            raise ConnectionError("Failed to connect: org.bluez.Error.Failed")
        self.connected.append(mac)


def test_bluetooth_input_is_connected_before_capture():
    async def scenario():
        catalog = DeviceCatalog()
        phone = BluetoothDevice("AA:BB:CC:DD:EE:FF", "Phone", False)
        catalog.on_bluetooth_devices_changed([phone])
        bluetooth = _FakeBluetooth()
        env = _env(catalog=catalog, bluetooth=bluetooth)

        await env.manager.switch_input(phone.input_id, "owner")

        assert bluetooth.connected == ["AA:BB:CC:DD:EE:FF"]
        assert env.sleeper.calls == [BLUETOOTH_CONNECT_DELAY, SETTLE_DELAY]
        assert "Connecting to Bluetooth device Phone..." in env.events.messages(STATUS_NOTICE)
        assert env.manager.session.capture_process.device_id == phone.input_id

    asyncio.run(scenario())


def test_connected_bluetooth_input_skips_connect():
    async def scenario():
        catalog = DeviceCatalog()
        phone = BluetoothDevice("AA:BB:CC:DD:EE:FF", "Phone", True)
        catalog.on_bluetooth_devices_changed([phone])
        bluetooth = _FakeBluetooth()
        env = _env(catalog=catalog, bluetooth=bluetooth)

        await env.manager.switch_input(phone.input_id, "owner")

        assert bluetooth.connected == []
        assert env.sleeper.calls == [SETTLE_DELAY]

    asyncio.run(scenario())


def test_bluetooth_connect_failure_fails_the_switch():
    async def scenario():
        catalog = DeviceCatalog()
        phone = BluetoothDevice("AA:BB:CC:DD:EE:FF", "Phone", False)
        catalog.on_bluetooth_devices_changed([phone])
        env = _env(catalog=catalog, bluetooth=_FakeBluetooth(fail=True))

        await env.manager.switch_input(phone.input_id, "owner")

        assert env.manager.state == InputState.FAILED
        assert env.supervisor.spawned == []
        assert env.events.messages(ERROR_NOTICE)[-1].startswith("Failed to connect to Bluetooth")

    asyncio.run(scenario())


def test_shutdown_stops_capture():
    async def scenario():
        env = _env()
        await env.manager.switch_input(USB, "owner")
        handle = env.manager.session.capture_process

        await env.manager.shutdown()

        assert handle in env.supervisor.terminated
        assert env.supervisor.live(ProgramKind.CAPTURE) == []

    asyncio.run(scenario())

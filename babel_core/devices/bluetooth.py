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
Bluetooth device tracking via ``bluetoothctl``.

Paired devices are polled periodically and pushed to the catalog, which
turns each one into a capture input routed through BlueALSA.
"""

import asyncio
import logging
import re
from typing import List, Optional, Tuple

from .catalog import DeviceCatalog
from .models import BluetoothDevice

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 10.0
COMMAND_TIMEOUT = 10.0

_DEVICE_LINE = re.compile(r"^Device\s+([0-9A-Fa-f]{2}(?::[0-9A-Fa-f]{2}){5})\s*(.*)$")


def parse_device_list(output: str) -> List[Tuple[str, str]]:
    """Parse ``bluetoothctl devices`` output into (mac, name) pairs."""
    devices = []
    for line in output.splitlines():
        match = _DEVICE_LINE.match(line.strip())
        if match:
            mac = match.group(1).upper()
            devices.append((mac, match.group(2).strip() or mac))
    return devices


def parse_connected(info_output: str) -> bool:
    for line in info_output.splitlines():
        key, _, value = line.strip().partition(':')
        if key == "Connected":
            return value.strip().lower() == "yes"
    return False


class BluetoothctlMonitor:
    """
    Polls paired Bluetooth devices and connects them on demand.

    Args:
        catalog: Catalog that receives the device list
        command: bluetoothctl binary
        poll_interval: Seconds between polls
    """

    def __init__(
        self,
        catalog: DeviceCatalog,
        command: str = "bluetoothctl",
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self._catalog = catalog
        self.command = command
        self.poll_interval = poll_interval
        self._task: Optional[asyncio.Task] = None

    async def _run(self, *args: str) -> Tuple[int, str]:
        process = await asyncio.create_subprocess_exec(
            self.command, *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), COMMAND_TIMEOUT)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise
        return process.returncode, stdout.decode('utf-8', errors='replace')

    async def list_devices(self) -> List[BluetoothDevice]:
        _, output = await self._run("devices", "Paired")
        devices = []
        for mac, name in parse_device_list(output):
            _, info = await self._run("info", mac)
            devices.append(BluetoothDevice(mac=mac, name=name, connected=parse_connected(info)))
        return devices

    async def poll_once(self) -> bool:
        """Refresh the catalog. Returns False if bluetoothctl could not be run."""
        try:
            devices = await self.list_devices()
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Bluetooth poll failed: {e}")
            return False
        self._catalog.on_bluetooth_devices_changed(devices)
        return True

    async def connect(self, mac: str) -> None:
        """
        Connect a paired device.

        Raises:
            ConnectionError: if bluetoothctl reports failure
        """
        logger.info(f"Connecting Bluetooth device {mac}")
        try:
            code, output = await self._run("connect", mac)
        except (OSError, asyncio.TimeoutError) as e:
            raise ConnectionError(f"bluetoothctl connect {mac} failed: {e}") from e
        if code != 0 or "Connection successful" not in output and "already connected" not in output.lower():
            raise ConnectionError(f"Failed to connect Bluetooth device {mac}: {output.strip()[:100]}")

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._poll_loop(), name="bluetooth-poll")
        logger.info(f"Bluetooth polling started (interval={self.poll_interval}s)")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _poll_loop(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self.poll_interval)


__all__ = [
    'BluetoothctlMonitor',
    'parse_connected',
    'parse_device_list',
]

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
Streaming receiver discovery.

Receivers advertise ``_airplay._tcp`` over mDNS. Rather than speaking mDNS
ourselves, we run ``avahi-browse`` in parseable mode and turn its lines into
up/changed/down events for the device catalog::

    =;eth0;IPv4;Living\\032Room;_airplay._tcp;local;lr.local;192.168.1.20;7000;"gpn=Pair"
    -;eth0;IPv4;Living\\032Room;_airplay._tcp;local

A ``gpn`` TXT record, when present, is the stereo group key.

The daemon itself is published as ``_babelpod._tcp`` the same way, through
``avahi-publish-service``.
"""

import asyncio
import logging
import re
import shlex
import socket
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..errors import SpawnError
from .catalog import DeviceCatalog, StreamingEvent

logger = logging.getLogger(__name__)

AIRPLAY_SERVICE = "_airplay._tcp"
BABELPOD_SERVICE = "_babelpod._tcp"
BABELPOD_INFO = "A BabelPod audio server"
DISCOVERY_RESTART_DELAY = 10.0

_ESCAPE_PATTERN = re.compile(r"\\(\d{3}|.)")


def unescape_service_name(name: str) -> str:
    """Undo avahi's ``\\DDD`` and ``\\c`` escaping in service names."""
    def _replace(match: re.Match) -> str:
        token = match.group(1)
        if token.isdigit():
            return chr(int(token))
        return token
    return _ESCAPE_PATTERN.sub(_replace, name)


def parse_txt_records(raw: str) -> Dict[str, str]:
    records: Dict[str, str] = {}
    try:
        tokens = shlex.split(raw)
    except ValueError:
        tokens = raw.split()
    for token in tokens:
        key, sep, value = token.partition('=')
        if key:
            records[key] = value if sep else ""
    return records


@dataclass
class AvahiRecord:
    """One parsed ``avahi-browse -p`` line."""
    action: str  # '+', '=', '-'
    interface: str
    protocol: str
    name: str
    service_type: str
    domain: str
    hostname: Optional[str] = None
    address: Optional[str] = None
    port: Optional[int] = None
    txt: Dict[str, str] = field(default_factory=dict)

    @property
    def identity(self) -> Tuple[str, str, str]:
        return self.interface, self.protocol, self.name


def parse_avahi_line(line: str) -> Optional[AvahiRecord]:
    fields = line.rstrip('\n').split(';')
    if len(fields) < 6 or fields[0] not in ('+', '=', '-'):
        return None

    record = AvahiRecord(
        action=fields[0],
        interface=fields[1],
        protocol=fields[2],
        name=unescape_service_name(fields[3]),
        service_type=fields[4],
        domain=fields[5],
    )
    if record.action == '=':
        if len(fields) < 9:
            return None
        record.hostname = fields[6]
        record.address = fields[7]
        try:
            record.port = int(fields[8])
        except ValueError:
            return None
        record.txt = parse_txt_records(';'.join(fields[9:])) if len(fields) > 9 else {}
    return record


class AvahiMonitor:
    """
    Keeps one avahi command line running under the supervisor.

    Each stdout line goes to ``handle_line``. When the program exits it is
    started again after ``restart_delay``; if it cannot be spawned at all the
    monitor gives up and logs why.
    """

    label = "avahi"

    def __init__(self, supervisor: Any, command: str, restart_delay: float = DISCOVERY_RESTART_DELAY):
        self._supervisor = supervisor
        self.command = command
        self.restart_delay = restart_delay

        self._task: Optional[asyncio.Task] = None
        self._process: Optional[Any] = None

    def build_command(self) -> List[str]:
        raise NotImplementedError

    def handle_line(self, line: str) -> None:
        logger.debug(f"{self.command}: {line.rstrip()}")

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.label)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._process is not None:
            await self._supervisor.terminate(self._process, graceful=True)
            self._process = None

    async def _run(self) -> None:
        while True:
            try:
                self._process = await self._supervisor.start_monitor(self.label, self.build_command())
            except SpawnError as e:
                logger.error(f"{self.command} unavailable: {e}")
                return

            stdout = self._process.stdout
            while True:
                raw = await stdout.readline()
                if not raw:
                    break
                try:
                    self.handle_line(raw.decode('utf-8', errors='replace'))
                except Exception as e:
                    logger.error(f"Error processing {self.command} line {raw!r}: {e}")

            await self._process.wait()
            logger.warning(
                f"{self.command} exited (code: {self._process.returncode}); "
                f"restarting in {self.restart_delay:.0f}s"
            )
            self._process = None
            await asyncio.sleep(self.restart_delay)


class AvahiDiscovery(AvahiMonitor):
    """
    Runs ``avahi-browse`` and feeds the catalog.

    Only IPv4 resolutions are used, so one receiver maps to one host:port.
    """

    def __init__(
        self,
        catalog: DeviceCatalog,
        supervisor: Any,
        command: str = "avahi-browse",
        service_type: str = AIRPLAY_SERVICE,
        restart_delay: float = DISCOVERY_RESTART_DELAY,
    ):
        super().__init__(supervisor, command, restart_delay)
        self._catalog = catalog
        self.service_type = service_type
        self.label = service_type
        self._known: Dict[Tuple[str, str, str], StreamingEvent] = {}

    def build_command(self) -> List[str]:
        return [self.command, "-r", "-p", "-k", self.service_type]

    def handle_line(self, line: str) -> None:
        record = parse_avahi_line(line)
        if record is None or record.protocol != "IPv4":
            return

        if record.action == '=':
            event = StreamingEvent(
                name=record.name,
                host=record.address,
                port=record.port,
                stereo_group_key=record.txt.get('gpn') or None,
            )
            previous = self._known.get(record.identity)
            self._known[record.identity] = event
            if previous is None:
                self._catalog.on_streaming_device_up(event)
            elif previous != event:
                if previous.key != event.key:
                    self._catalog.on_streaming_device_down(previous)
                self._catalog.on_streaming_device_changed(event)
        elif record.action == '-':
            previous = self._known.pop(record.identity, None)
            if previous is not None:
                self._catalog.on_streaming_device_down(previous)

    async def start(self) -> None:
        await super().start()
        logger.info(f"Streaming discovery started for {self.service_type}")


def default_service_name() -> str:
    return socket.gethostname().replace(".local", "")


class AvahiAdvertiser(AvahiMonitor):
    """
    Publishes this daemon as ``_babelpod._tcp`` with ``avahi-publish-service``.

    The registration lives as long as the program runs, so stopping the
    monitor withdraws it.
    """

    def __init__(
        self,
        supervisor: Any,
        port: int,
        name: Optional[str] = None,
        command: str = "avahi-publish-service",
        service_type: str = BABELPOD_SERVICE,
        restart_delay: float = DISCOVERY_RESTART_DELAY,
    ):
        super().__init__(supervisor, command, restart_delay)
        self.port = int(port)
        self.name = name or default_service_name()
        self.service_type = service_type
        self.label = f"advertise:{service_type}"

    def build_command(self) -> List[str]:
        return [self.command, self.name, self.service_type, str(self.port), f"info={BABELPOD_INFO}"]

    def handle_line(self, line: str) -> None:
        logger.info(f"{self.command}: {line.rstrip()}")

    async def start(self) -> None:
        await super().start()
        logger.info(f"Advertising {self.name} as {self.service_type} on port {self.port}")


__all__ = [
    'AIRPLAY_SERVICE',
    'BABELPOD_SERVICE',
    'AvahiAdvertiser',
    'AvahiDiscovery',
    'AvahiMonitor',
    'AvahiRecord',
    'default_service_name',
    'parse_avahi_line',
    'parse_txt_records',
    'unescape_service_name',
]

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
Process Supervisor for external PCM programs

Spawns and kills the capture (arecord) and local playback (aplay) programs,
exposes their stdout/stdin as asyncio streams and reports stderr lines and
exits through listener callbacks instead of raising.

Key Features:
- Fixed PCM format for every program (2ch, S16_LE, 44100 Hz)
- Graceful interrupt with forced-kill escalation
- Exit and stderr events delivered on the event loop
- Orphan cleanup for capture processes left behind by a previous session
"""

import asyncio
import logging
import os
import signal
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, Set

import psutil

from ..errors import SpawnError

logger = logging.getLogger(__name__)

PCM_CHANNELS = 2
PCM_SAMPLE_FORMAT = "S16_LE"
PCM_SAMPLE_RATE = 44100
PCM_FORMAT_ARGS = ["-c", str(PCM_CHANNELS), "-f", PCM_SAMPLE_FORMAT, "-r", str(PCM_SAMPLE_RATE)]

# Seconds to wait after the interrupt signal before killing
GRACEFUL_TERMINATE_TIMEOUT = 0.1

# Seconds to wait for stderr to drain once the process has exited
STDERR_DRAIN_TIMEOUT = 1.0


class ProgramKind(Enum):
    """What an external process is used for."""
    CAPTURE = "capture"
    PLAYBACK = "playback"
    STREAMING = "streaming"
    DISCOVERY = "discovery"


StderrListener = Callable[["ProcessHandle", str], None]
ExitListener = Callable[["ProcessHandle"], None]


class ProcessHandle:
    """
    A supervised external process.

    ``expected_exit`` is set whenever the supervisor itself terminates the
    process, so exit listeners can tell a requested stop from a crash.
    After exit, ``returncode`` holds the exit code for a normal exit and
    ``signal`` the signal number for a signalled one (the other is None).
    """

    def __init__(self, kind: ProgramKind, device_id: str, process: Any):
        self.kind = kind
        self.device_id = device_id
        self.process = process

        self.expected_exit = False
        self.returncode: Optional[int] = None
        self.signal: Optional[int] = None

        self._stderr_listeners: List[StderrListener] = []
        self._exit_listeners: List[ExitListener] = []
        self._stderr_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._exited = asyncio.Event()

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, 'pid', None)

    @property
    def stdout(self) -> Optional[asyncio.StreamReader]:
        return self.process.stdout

    @property
    def stdin(self) -> Optional[asyncio.StreamWriter]:
        return self.process.stdin

    @property
    def running(self) -> bool:
        return not self._exited.is_set()

    @property
    def crashed(self) -> bool:
        """True if the process exited by signal or with a non-zero code."""
        return self.signal is not None or (self.returncode not in (None, 0))

    def on_stderr(self, listener: StderrListener) -> None:
        self._stderr_listeners.append(listener)

    def on_exit(self, listener: ExitListener) -> None:
        self._exit_listeners.append(listener)

    async def wait(self) -> None:
        await self._exited.wait()

    def start_watching(self) -> None:
        loop = asyncio.get_running_loop()
        label = f"{self.kind.value}-{self.pid}"
        if getattr(self.process, 'stderr', None) is not None:
            self._stderr_task = loop.create_task(self._stderr_pump(), name=f"{label}-stderr")
        self._watch_task = loop.create_task(self._watch(), name=f"{label}-watch")

    async def _stderr_pump(self) -> None:
        stream = self.process.stderr
        while True:
            try:
                raw = await stream.readline()
            except ConnectionError:
                break
            if not raw:
                break
            line = raw.decode('utf-8', errors='replace').rstrip()
            if not line:
                continue
            logger.warning(f"{self.kind.value} stderr for {self.device_id}: {line}")
            for listener in list(self._stderr_listeners):
                try:
                    listener(self, line)
                except Exception as e:
                    logger.error(f"Error in stderr listener for {self.device_id}: {e}")

    async def _watch(self) -> None:
        rc = await self.process.wait()

        if self._stderr_task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._stderr_task), STDERR_DRAIN_TIMEOUT)
            except asyncio.TimeoutError:
                self._stderr_task.cancel()

        if rc is not None and rc < 0:
            self.signal = -rc
        else:
            self.returncode = rc
        self._exited.set()

        logger.info(
            f"{self.kind.value} process for {self.device_id} exited - "
            f"code: {self.returncode}, signal: {self.signal}, expected: {self.expected_exit}"
        )

        for listener in list(self._exit_listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error(f"Error in exit listener for {self.device_id}: {e}")

    async def terminate(self, graceful: bool = True, timeout: float = GRACEFUL_TERMINATE_TIMEOUT) -> None:
        """
        Stop the process.

        Args:
            graceful: Send SIGINT first and kill only if it outlives ``timeout``
            timeout: Seconds to wait after the interrupt
        """
        self.expected_exit = True
        if not self.running:
            return

        if graceful:
            try:
                self.process.send_signal(signal.SIGINT)
            except ProcessLookupError:
                return
            try:
                await asyncio.wait_for(asyncio.shield(self._exited.wait()), timeout)
                return
            except asyncio.TimeoutError:
                logger.warning(f"{self.kind.value} process for {self.device_id} ignored interrupt, killing")

        try:
            self.process.kill()
        except ProcessLookupError:
            pass

    def __repr__(self) -> str:
        return f"<ProcessHandle {self.kind.value} device={self.device_id} pid={self.pid}>"


class ProcessSupervisor:
    """
    Starts, tracks and stops every external process the daemon owns.

    All failures after a successful spawn are reported through the handle's
    listeners; only the spawn itself can raise (SpawnError).
    """

    def __init__(
        self,
        capture_command: str = "arecord",
        playback_command: str = "aplay",
        graceful_timeout: float = GRACEFUL_TERMINATE_TIMEOUT,
    ):
        self.capture_command = capture_command
        self.playback_command = playback_command
        self.graceful_timeout = graceful_timeout
        self._children: Set[ProcessHandle] = set()

    @property
    def children(self) -> List[ProcessHandle]:
        return [h for h in self._children if h.running]

    async def start_capture(self, device_id: str) -> ProcessHandle:
        """Launch the capture program bound to ``device_id``, stdout piped."""
        argv = [self.capture_command, "-D", device_id, *PCM_FORMAT_ARGS]
        return await self.spawn(ProgramKind.CAPTURE, device_id, argv, stdout=True)

    async def start_local_sink(self, device_id: str) -> ProcessHandle:
        """Launch the playback program bound to ``device_id``, stdin piped."""
        argv = [self.playback_command, "-D", device_id, *PCM_FORMAT_ARGS]
        return await self.spawn(ProgramKind.PLAYBACK, device_id, argv, stdin=True)

    async def start_monitor(self, label: str, argv: Sequence[str]) -> ProcessHandle:
        """Launch a long-running discovery program, stdout piped."""
        return await self.spawn(ProgramKind.DISCOVERY, label, argv, stdout=True)

    async def spawn(
        self,
        kind: ProgramKind,
        device_id: str,
        argv: Sequence[str],
        stdin: bool = False,
        stdout: bool = False,
    ) -> ProcessHandle:
        """
        Spawn an arbitrary supervised program.

        Raises:
            SpawnError: if the program could not be created
        """
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE if stdout else asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            logger.error(f"Failed to start {argv[0]} for {device_id}: {e}")
            raise SpawnError(argv[0], device_id, str(e)) from e

        handle = ProcessHandle(kind, device_id, process)
        self._children.add(handle)
        handle.on_exit(self._children.discard)
        handle.start_watching()
        logger.info(f"Started {argv[0]} for {device_id}: pid={process.pid}")
        return handle

    async def terminate(self, handle: ProcessHandle, graceful: bool = True) -> None:
        await handle.terminate(graceful=graceful, timeout=self.graceful_timeout)

    def find_orphans(self, device_id: str) -> List[int]:
        """
        Find leftover capture processes bound to ``device_id``.

        Processes this supervisor is still tracking are never reported.
        """
        own = {h.pid for h in self._children}
        own.add(os.getpid())
        binary = os.path.basename(self.capture_command)
        pids: List[int] = []

        for proc in psutil.process_iter(['pid', 'name', 'cmdline']):
            try:
                info = proc.info
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            pid = info.get('pid')
            if pid in own:
                continue
            cmdline = info.get('cmdline') or []
            names = {info.get('name') or ''}
            if cmdline:
                names.add(os.path.basename(cmdline[0]))
            if binary not in names:
                continue
            if binds_device(cmdline, device_id):
                pids.append(pid)

        return pids

    def _kill_pids(self, pids: Sequence[int]) -> int:
        killed = 0
        for pid in pids:
            try:
                psutil.Process(pid).kill()
                killed += 1
                logger.warning(f"Killed orphaned capture process pid={pid}")
            except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
                logger.debug(f"Could not kill orphan pid={pid}: {e}")
        return killed

    async def kill_orphans(self, device_id: str) -> int:
        """
        Best-effort kill of leftover capture processes for ``device_id``.

        Returns:
            Number of processes killed (0 when none were found)
        """
        loop = asyncio.get_running_loop()
        try:
            pids = await loop.run_in_executor(None, self.find_orphans, device_id)
            if not pids:
                return 0
            return await loop.run_in_executor(None, self._kill_pids, pids)
        except psutil.Error as e:
            logger.warning(f"Orphan scan failed for {device_id}: {e}")
            return 0

    async def shutdown(self) -> None:
        """Terminate every live child."""
        children = self.children
        if not children:
            return
        logger.info(f"Stopping {len(children)} supervised process(es)")
        await asyncio.gather(
            *(self.terminate(h, graceful=True) for h in children),
            return_exceptions=True,
        )


def binds_device(cmdline: Sequence[str], device_id: str) -> bool:
    """True if an ALSA command line selects ``device_id``."""
    args = list(cmdline)
    for index, arg in enumerate(args):
        if arg in ("-D", "--device") and index + 1 < len(args) and args[index + 1] == device_id:
            return True
        if arg == f"-D{device_id}" or arg == f"--device={device_id}":
            return True
    return False


__all__ = [
    'PCM_CHANNELS',
    'PCM_SAMPLE_FORMAT',
    'PCM_SAMPLE_RATE',
    'PCM_FORMAT_ARGS',
    'GRACEFUL_TERMINATE_TIMEOUT',
    'ProgramKind',
    'ProcessHandle',
    'ProcessSupervisor',
    'binds_device',
]

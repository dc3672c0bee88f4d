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
Error taxonomy for the audio core.

Only SpawnError is ever raised across a component boundary. The other
classes describe failures that are caught inside the owning component and
turned into status/error notices.
"""

from typing import Optional


class BabelPodError(Exception):
    """Base class for all audio core errors."""


class SpawnError(BabelPodError):
    """An external capture/playback program could not be started at all."""

    def __init__(self, program: str, device_id: str, reason: str):
        self.program = program
        self.device_id = device_id
        self.reason = reason
        super().__init__(f"Failed to start {program} for {device_id}: {reason}")


class DeviceBusyError(BabelPodError):
    """The process started but could not open its device."""

    def __init__(self, device_id: str, attempts: int, detail: str = ""):
        self.device_id = device_id
        self.attempts = attempts
        self.detail = detail
        super().__init__(
            f"Input device {device_id} is busy after {attempts} attempt(s)"
            + (f": {detail}" if detail else "")
        )


class UnexpectedExitError(BabelPodError):
    """A running process died without being told to."""

    def __init__(self, device_id: str, code: Optional[int], signal: Optional[int]):
        self.device_id = device_id
        self.code = code
        self.signal = signal
        super().__init__(
            f"Process for {device_id} exited unexpectedly (code={code}, signal={signal})"
        )


class SinkAttachError(BabelPodError):
    """A local pipe or streaming add/stop failed."""

    def __init__(self, ui_id: str, reason: str):
        self.ui_id = ui_id
        self.reason = reason
        super().__init__(f"Output {ui_id}: {reason}")


class PermissionDenied(BabelPodError):
    """A connection that does not own the session attempted a mutation."""


class CatalogMiss(BabelPodError):
    """A referenced uiId is no longer in the device catalog."""


class InvalidCommand(BabelPodError, ValueError):
    """A control command has an unknown type or an unusable payload."""


__all__ = [
    'BabelPodError',
    'SpawnError',
    'DeviceBusyError',
    'UnexpectedExitError',
    'SinkAttachError',
    'PermissionDenied',
    'CatalogMiss',
    'InvalidCommand',
]

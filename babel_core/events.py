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

"""Control-plane events produced by the audio core."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

# Event type constants (wire names used by the control plane)
INPUT_LIST_CHANGED = "inputListChanged"
OUTPUT_LIST_CHANGED = "outputListChanged"
INPUT_CHANGED = "inputChanged"
OUTPUTS_CHANGED = "outputsChanged"
VOLUME_CHANGED = "volumeChanged"
STATUS_NOTICE = "statusNotice"
ERROR_NOTICE = "errorNotice"
OWNER_CHANGED = "ownerChanged"
LOST_CONTROL = "lostControl"

ALL_EVENT_TYPES = (
    INPUT_LIST_CHANGED,
    OUTPUT_LIST_CHANGED,
    INPUT_CHANGED,
    OUTPUTS_CHANGED,
    VOLUME_CHANGED,
    STATUS_NOTICE,
    ERROR_NOTICE,
    OWNER_CHANGED,
    LOST_CONTROL,
)


@dataclass
class ControlEvent:
    """One event on its way to the control plane."""
    type: str
    data: Any = None
    # None broadcasts to every connection
    target: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
        }


EventListener = Callable[[ControlEvent], None]


class EventEmitter:
    """Fan-out of control events to registered listeners."""

    def __init__(self):
        self._listeners: List[EventListener] = []

    def subscribe(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, event_type: str, data: Any = None, target: Optional[str] = None) -> ControlEvent:
        event = ControlEvent(type=event_type, data=data, target=target)
        if event_type == ERROR_NOTICE:
            logger.warning(f"Error notice: {data}")
        else:
            logger.debug(f"Event {event_type}: {data}")

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Error in event listener: {e}")
        return event

    def status(self, message: str) -> ControlEvent:
        return self.emit(STATUS_NOTICE, {'message': message})

    def error(self, message: str) -> ControlEvent:
        return self.emit(ERROR_NOTICE, {'message': message})


__all__ = [
    'INPUT_LIST_CHANGED',
    'OUTPUT_LIST_CHANGED',
    'INPUT_CHANGED',
    'OUTPUTS_CHANGED',
    'VOLUME_CHANGED',
    'STATUS_NOTICE',
    'ERROR_NOTICE',
    'OWNER_CHANGED',
    'LOST_CONTROL',
    'ALL_EVENT_TYPES',
    'ControlEvent',
    'EventEmitter',
]

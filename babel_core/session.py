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
Session Owner Gate

Single-writer mutual exclusion for the control plane. Exactly one
connection (or none) owns the session; every mutating command checks
``is_owner`` and is silently ignored for anyone else.
"""

import logging
from enum import Enum
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class TakeoverPolicy(Enum):
    """What happens when a connection arrives while someone owns the session."""
    LAST_CONNECTED = "last_connected"  # newcomer takes control immediately
    FIRST_KEEPS = "first_keeps"  # owner keeps control until disconnect/takeover


OwnerChangedListener = Callable[[Optional[str]], None]
LostControlListener = Callable[[str], None]


class SessionOwnerGate:
    """Tracks which connection owns the session."""

    def __init__(self, policy: TakeoverPolicy = TakeoverPolicy.LAST_CONNECTED):
        self.policy = policy
        self._owner: Optional[str] = None
        self._owner_listeners: List[OwnerChangedListener] = []
        self._lost_listeners: List[LostControlListener] = []

    @property
    def owner(self) -> Optional[str]:
        return self._owner

    def is_owner(self, connection_id: Optional[str]) -> bool:
        return connection_id is not None and connection_id == self._owner

    def on_owner_changed(self, listener: OwnerChangedListener) -> None:
        self._owner_listeners.append(listener)

    def on_lost_control(self, listener: LostControlListener) -> None:
        self._lost_listeners.append(listener)

    def connect(self, connection_id: str) -> Optional[str]:
        """
        Register a new connection.

        Returns:
            The owner after the connection was registered
        """
        if self._owner is None:
            self._assign(connection_id)
        elif self._owner != connection_id and self.policy == TakeoverPolicy.LAST_CONNECTED:
            self._transfer(connection_id)
        return self._owner

    def takeover(self, connection_id: str) -> bool:
        """
        Explicitly claim the session.

        Returns:
            True if ownership changed
        """
        if self._owner == connection_id:
            return False
        logger.info(f"User takeover: {connection_id}")
        self._transfer(connection_id)
        return True

    def disconnect(self, connection_id: str) -> bool:
        """
        Forget a connection.

        Returns:
            True if the connection was the owner and ownership was cleared
        """
        if self._owner != connection_id:
            return False
        logger.info(f"Session owner {connection_id} disconnected; session is unowned")
        self._assign(None)
        return True

    def _transfer(self, connection_id: str) -> None:
        previous = self._owner
        if previous is not None:
            for listener in list(self._lost_listeners):
                try:
                    listener(previous)
                except Exception as e:
                    logger.error(f"Error in lost-control listener: {e}")
        self._assign(connection_id)

    def _assign(self, connection_id: Optional[str]) -> None:
        self._owner = connection_id
        logger.info(f"Session owner is now {connection_id}")
        for listener in list(self._owner_listeners):
            try:
                listener(connection_id)
            except Exception as e:
                logger.error(f"Error in owner-changed listener: {e}")


__all__ = ['SessionOwnerGate', 'TakeoverPolicy']

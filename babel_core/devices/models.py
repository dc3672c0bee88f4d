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

"""Device descriptors shared by the catalog, the registry and the control plane."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

VOID_INPUT_ID = "void"
VOID_OUTPUT_ID = "void"

BLUEALSA_ID_TEMPLATE = "bluealsa:SRV=org.bluealsa,DEV={mac},PROFILE=a2dp"


class InputKind(Enum):
    """Kind of capture device behind an input id."""
    NONE = "none"
    LOCAL_CAPTURE = "local_capture"
    BLUETOOTH_CAPTURE = "bluetooth_capture"


@dataclass(frozen=True)
class InputDescriptor:
    id: str
    display_name: str
    kind: InputKind
    connected: bool = True
    mac: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            'id': self.id,
            'name': self.display_name,
            'kind': self.kind.value,
        }
        if self.kind == InputKind.BLUETOOTH_CAPTURE:
            data['mac'] = self.mac
            data['connected'] = self.connected
        return data


VOID_INPUT = InputDescriptor(id=VOID_INPUT_ID, display_name="None", kind=InputKind.NONE)


def classify_input_id(input_id: str) -> InputKind:
    """Infer the input kind from its id alone."""
    if input_id == VOID_INPUT_ID:
        return InputKind.NONE
    if input_id.startswith("bluealsa:"):
        return InputKind.BLUETOOTH_CAPTURE
    return InputKind.LOCAL_CAPTURE


def bluetooth_input_id(mac: str) -> str:
    return BLUEALSA_ID_TEMPLATE.format(mac=mac)


@dataclass(frozen=True)
class PcmDevice:
    """One parsed line of the local PCM enumeration."""
    id: str
    name: str
    output: bool
    input: bool


@dataclass(frozen=True)
class OutputDescriptor:
    """
    One physically addressable sink, before stereo grouping.

    Either ``local_sink_id`` is set (local PCM playback) or both ``host`` and
    ``port`` are (streaming receiver), never both.
    """
    name: str
    host: Optional[str] = None
    port: Optional[int] = None
    local_sink_id: Optional[str] = None
    stereo_group_key: Optional[str] = None

    def __post_init__(self) -> None:
        is_local = self.local_sink_id is not None
        is_streaming = self.host is not None and self.port is not None
        if is_local == is_streaming:
            raise ValueError(
                "OutputDescriptor needs exactly one of local_sink_id or (host, port)"
            )

    @property
    def is_local(self) -> bool:
        return self.local_sink_id is not None

    @property
    def endpoint(self) -> Tuple[str, int]:
        if self.host is None or self.port is None:
            raise ValueError(f"{self.name} is not a streaming output")
        return self.host, self.port

    @classmethod
    def local(cls, device: PcmDevice) -> "OutputDescriptor":
        return cls(name=device.name, local_sink_id=device.id)

    @classmethod
    def streaming(
        cls,
        name: str,
        host: str,
        port: int,
        stereo_group_key: Optional[str] = None,
    ) -> "OutputDescriptor":
        return cls(name=name, host=host, port=int(port), stereo_group_key=stereo_group_key)


@dataclass(frozen=True)
class LocalMember:
    local_sink_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {'localId': self.local_sink_id}


@dataclass(frozen=True)
class StreamingMember:
    host: str
    port: int

    @property
    def key(self) -> str:
        return f"{self.host}:{self.port}"

    def to_dict(self) -> Dict[str, Any]:
        return {'host': self.host, 'port': self.port}


OutputMember = Union[LocalMember, StreamingMember]


@dataclass(frozen=True)
class UnifiedOutput:
    """A selectable output as the UI sees it (possibly a stereo pair)."""
    ui_id: str
    display_name: str
    is_stereo: bool
    members: Tuple[OutputMember, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'uiId': self.ui_id,
            'name': self.display_name,
            'isStereo': self.is_stereo,
            'devices': [member.to_dict() for member in self.members],
        }


@dataclass(frozen=True)
class BluetoothDevice:
    """A paired Bluetooth device as reported by the Bluetooth capability."""
    mac: str
    name: str
    connected: bool = False

    @property
    def input_id(self) -> str:
        return bluetooth_input_id(self.mac)

    def to_input(self) -> InputDescriptor:
        return InputDescriptor(
            id=self.input_id,
            display_name=f"Bluetooth: {self.name}",
            kind=InputKind.BLUETOOTH_CAPTURE,
            connected=self.connected,
            mac=self.mac,
        )


__all__ = [
    'VOID_INPUT_ID',
    'VOID_OUTPUT_ID',
    'VOID_INPUT',
    'InputKind',
    'InputDescriptor',
    'PcmDevice',
    'OutputDescriptor',
    'LocalMember',
    'StreamingMember',
    'OutputMember',
    'UnifiedOutput',
    'BluetoothDevice',
    'classify_input_id',
    'bluetooth_input_id',
]

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

"""Device enumeration: local PCM devices, streaming receivers and Bluetooth."""

from .catalog import DeviceCatalog, StreamingEvent, build_unified_outputs
from .models import (
    VOID_INPUT_ID,
    VOID_OUTPUT_ID,
    BluetoothDevice,
    InputDescriptor,
    InputKind,
    OutputDescriptor,
    UnifiedOutput,
)

__all__ = [
    'DeviceCatalog',
    'StreamingEvent',
    'build_unified_outputs',
    'VOID_INPUT_ID',
    'VOID_OUTPUT_ID',
    'BluetoothDevice',
    'InputDescriptor',
    'InputKind',
    'OutputDescriptor',
    'UnifiedOutput',
]

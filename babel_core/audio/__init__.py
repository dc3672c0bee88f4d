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

"""
Audio pipeline for BabelPod

Supervised capture/playback processes, the input session state machine,
the PCM fan-out duplicator and the output registry that reconciles the
selected outputs against running sinks.
"""

from .duplicator import DISCARD_SINK_ID, StreamDuplicator
from .input_session import InputSession, InputSessionManager, InputState
from .output_registry import ActiveOutput, OutputRegistry, SinkHandle
from .process_supervisor import ProcessHandle, ProcessSupervisor, ProgramKind
from .streaming_sinks import CommandStreamingSinkProvider, StreamingSinkProvider

__all__ = [
    'DISCARD_SINK_ID',
    'StreamDuplicator',
    'InputSession',
    'InputSessionManager',
    'InputState',
    'ActiveOutput',
    'OutputRegistry',
    'SinkHandle',
    'ProcessHandle',
    'ProcessSupervisor',
    'ProgramKind',
    'CommandStreamingSinkProvider',
    'StreamingSinkProvider',
]

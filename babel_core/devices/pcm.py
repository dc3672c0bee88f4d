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
Local PCM device enumeration.

Parses the ALSA ``/proc/asound/pcm`` listing. Each line looks like::

    00-00: ALC269VC Analog : ALC269VC Analog : playback 1 : capture 1

and becomes a ``plughw:<card>,<device>`` id with playback/capture flags.
"""

import logging
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from .models import PcmDevice

logger = logging.getLogger(__name__)

DEFAULT_PCM_PATH = "/proc/asound/pcm"


def parse_pcm_line(line: str) -> Optional[PcmDevice]:
    """
    Parse one enumeration line.

    Args:
        line: Raw line from the PCM listing

    Returns:
        PcmDevice, or None if the line is blank or malformed
    """
    if not line.strip():
        return None

    parts = line.split(':')
    if len(parts) < 3:
        logger.warning(f"Skipping malformed PCM line: {line!r}")
        return None

    try:
        indexes = [int(x, 10) for x in parts[0].strip().split('-')]
    except ValueError:
        logger.warning(f"Skipping PCM line with bad card index: {line!r}")
        return None

    name = parts[2].strip()
    return PcmDevice(
        id="plughw:" + ",".join(str(i) for i in indexes),
        name=name,
        output=any("playback" in token for token in parts),
        input=any("capture" in token for token in parts),
    )


def parse_pcm_listing(lines: Iterable[str]) -> List[PcmDevice]:
    devices = []
    for line in lines:
        device = parse_pcm_line(line)
        if device is not None:
            devices.append(device)
    return devices


def read_pcm_devices(path: str = DEFAULT_PCM_PATH) -> Tuple[List[PcmDevice], List[PcmDevice]]:
    """
    Read and partition the local PCM devices.

    Returns:
        (playback devices, capture devices)

    Raises:
        OSError: if the listing cannot be read
    """
    text = Path(path).read_text(encoding='utf-8', errors='replace')
    devices = parse_pcm_listing(text.splitlines())
    outputs = [d for d in devices if d.output]
    inputs = [d for d in devices if d.input]
    return outputs, inputs


__all__ = ['DEFAULT_PCM_PATH', 'parse_pcm_line', 'parse_pcm_listing', 'read_pcm_devices']

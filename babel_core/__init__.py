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

"""Audio redistribution core: capture one input, fan it out to many outputs."""

from .errors import (  # noqa: F401
    BabelPodError,
    CatalogMiss,
    DeviceBusyError,
    PermissionDenied,
    SinkAttachError,
    SpawnError,
    UnexpectedExitError,
)

__version__ = "1.0.0"

__all__ = [
    "BabelPodError",
    "CatalogMiss",
    "DeviceBusyError",
    "PermissionDenied",
    "SinkAttachError",
    "SpawnError",
    "UnexpectedExitError",
    "__version__",
]

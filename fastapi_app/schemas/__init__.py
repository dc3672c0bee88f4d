"""
Pydantic Schemas for API Request/Response Validation
"""

from .control import (
    ControlMessage,
    ServerMessage,
    InputEntry,
    OutputEntry,
    OutputMemberEntry,
    StateResponse,
)
from .system import HealthCheckResponse

__all__ = [
    # Control plane schemas
    "ControlMessage",
    "ServerMessage",
    "InputEntry",
    "OutputEntry",
    "OutputMemberEntry",
    "StateResponse",
    # System schemas
    "HealthCheckResponse",
]

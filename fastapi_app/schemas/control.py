"""
Pydantic schemas for the WebSocket control plane
"""

from typing import Any, Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel, Field


class ControlMessage(BaseModel):
    """Schema for one message in either direction on /ws"""
    type: str = Field(..., description="Message type (command or event name)", min_length=1)
    data: Any = Field(None, description="Message payload")


class ServerMessage(ControlMessage):
    """Schema for a message sent by the server"""
    timestamp: datetime = Field(..., description="Time the message was produced")


class InputEntry(BaseModel):
    """One entry of inputListChanged"""
    id: str
    name: str
    kind: str
    mac: Optional[str] = None
    connected: Optional[bool] = None


class OutputMemberEntry(BaseModel):
    """One member device of a unified output"""
    localId: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None


class OutputEntry(BaseModel):
    """One entry of outputListChanged"""
    uiId: str
    name: str
    isStereo: bool = False
    devices: List[OutputMemberEntry] = Field(default_factory=list)


class StateResponse(BaseModel):
    """Schema for the full daemon state snapshot"""
    inputs: List[InputEntry] = Field(default_factory=list)
    outputs: List[OutputEntry] = Field(default_factory=list)
    currentInput: str = Field(..., description="Current input id")
    selectedOutputs: List[str] = Field(default_factory=list)
    volume: int = Field(..., ge=0, le=100)
    owner: Optional[str] = Field(None, description="Connection id owning the session")
    session: Dict[str, Any] = Field(default_factory=dict, description="Input session state")
    duplicator: Dict[str, Any] = Field(default_factory=dict, description="Fan-out statistics")
    running: bool = False

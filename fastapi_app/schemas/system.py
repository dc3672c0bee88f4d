"""
Pydantic schemas for System API endpoints
"""

from typing import Dict
from datetime import datetime
from pydantic import BaseModel, Field


class HealthCheckResponse(BaseModel):
    """Schema for health check response"""
    status: str = Field(..., description="Health status (healthy, degraded)")
    version: str = Field(..., description="Application version")
    timestamp: datetime = Field(..., description="Health check timestamp")
    checks: Dict[str, bool] = Field(default_factory=dict, description="Individual health checks")

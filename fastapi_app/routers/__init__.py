"""
FastAPI Routers Package
"""

from . import state, websocket

__all__ = ["state", "websocket"]

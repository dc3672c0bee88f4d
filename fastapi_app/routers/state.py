"""
State API Router - read-only view of the daemon
"""

import logging

from fastapi import APIRouter, Depends, Request

from babel_core.daemon import BabelPodDaemon
from fastapi_app.schemas.control import StateResponse

logger = logging.getLogger(__name__)

router = APIRouter()


def get_daemon(request: Request) -> BabelPodDaemon:
    """Dependency returning the daemon created by the application lifespan"""
    return request.app.state.daemon


@router.get("/state", response_model=StateResponse)
async def get_state(daemon: BabelPodDaemon = Depends(get_daemon)):
    """
    Full daemon state.

    Returns the input and output lists, current input, selected outputs,
    volume, session owner, input session state and fan-out statistics.
    """
    return daemon.snapshot()

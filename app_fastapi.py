#!/usr/bin/env python3
"""
BabelPod - FastAPI Application
Copyright (c) 2025 Timothy Kramer (KR8MER)

Control plane for the BabelPod audio redistribution daemon: picks one
capture input and fans it out to local and networked speakers.

This file is part of BabelPod.
BabelPod is dual-licensed software:
- GNU Affero General Public License v3 (AGPL-3.0) for open-source use
- Commercial License for proprietary use
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

from dotenv import load_dotenv

# Load environment variables before settings are read
load_dotenv(override=True)

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from babel_core import __version__
from babel_core.daemon import BabelPodDaemon
from fastapi_app.config import settings
from fastapi_app.routers import state, websocket
from fastapi_app.schemas.system import HealthCheckResponse

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Lifespan context manager for FastAPI application.
    Starts the audio daemon and stops every process it owns on shutdown.
    """
    # Startup
    logger.info("Starting BabelPod...")
    logger.info(f"Debug mode: {settings.debug}")

    daemon = BabelPodDaemon.from_settings(settings)
    app.state.daemon = daemon
    websocket.manager.start(daemon.events)
    await daemon.start()

    yield

    # Shutdown
    logger.info("Shutting down BabelPod...")
    await daemon.stop()
    await websocket.manager.stop()
    logger.info("All audio processes stopped")


# Create FastAPI application
app = FastAPI(
    title="BabelPod",
    description="""
    BabelPod audio redistribution daemon

    Select one audio input (ALSA capture device or Bluetooth source) and
    play it on any set of local sound cards and AirPlay receivers.

    Control happens over the `/ws` WebSocket; `/api/state` is a read-only
    snapshot.

    **License:** AGPL-3.0 / Commercial
    """,
    version=__version__,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
    debug=settings.debug,
)

# Add middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(state.router, prefix="/api", tags=["State"])
app.include_router(websocket.router, tags=["WebSocket"])  # WebSocket at /ws


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "BabelPod",
        "version": __version__,
        "docs": "/api/docs",
        "websocket": "/ws",
        "status": "operational"
    }


@app.get("/health", response_model=HealthCheckResponse)
async def health_check(request: Request):
    """Health check endpoint for monitoring"""
    daemon = getattr(request.app.state, "daemon", None)
    checks = {
        "daemon": bool(daemon and daemon.running),
    }
    return HealthCheckResponse(
        status="healthy" if all(checks.values()) else "degraded",
        version=__version__,
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if settings.debug else "An error occurred"
        }
    )


def main():
    """Run the daemon under uvicorn"""
    import uvicorn

    uvicorn.run(
        "app_fastapi:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        access_log=settings.debug,
    )


if __name__ == "__main__":
    main()

"""
HTTP application for the API server.

Provides the REST endpoints served once the listener is bound:
- Service banner
- Health check including a storage ping
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from apiserver import __version__
from apiserver.database import Database


logger = logging.getLogger(__name__)

SERVICE_NAME = "apiserver"


# Pydantic models for API

class ServiceInfo(BaseModel):
    """Root endpoint response."""
    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")
    status: str = Field(..., description="Process status")


class HealthStatus(BaseModel):
    """Health check response."""
    status: str = Field(..., description="'healthy' or 'unavailable'")
    database: str = Field(..., description="'connected' or 'disconnected'")


# Lifespan context manager

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log application startup/shutdown."""
    logger.info("Starting API application...")
    yield
    logger.info("API application shutdown complete")


def attach_database(app: FastAPI, db: Optional[Database]):
    """
    Make a connected database available to request handlers.

    Args:
        app: Application to attach to
        db: Connected database, or None to detach
    """
    app.state.database = db


def create_app(db: Optional[Database] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        db: Optional database to attach immediately

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="API Server",
        description="HTTP API server",
        version=__version__,
        lifespan=lifespan
    )
    attach_database(app, db)

    @app.get("/", response_model=ServiceInfo)
    async def root():
        """Root endpoint."""
        return ServiceInfo(service=SERVICE_NAME, version=__version__, status="running")

    @app.get("/health", response_model=HealthStatus)
    async def health(request: Request):
        """Health check endpoint."""
        database: Optional[Database] = request.app.state.database

        connected = False
        if database is not None and not database.closed:
            connected = await asyncio.to_thread(database.ping)

        if connected:
            return HealthStatus(status="healthy", database="connected")

        body = HealthStatus(status="unavailable", database="disconnected")
        return JSONResponse(status_code=503, content=body.model_dump())

    return app

# src/sealed_chat/main.py
"""Main entry point for the SealedChat server."""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from sealed_chat.api.v1 import messages_router, socket_router, users_router
from sealed_chat.core.settings import settings
from sealed_chat.db.session import SessionLocal
from sealed_chat.services.gateway import ChatGateway
from sealed_chat.services.maintenance import MaintenanceWorker
from sealed_chat.services.undelivered import get_undelivered_buffer

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="SealedChat API",
    description="End-to-end encrypted real-time messaging",
    version=settings.app_version,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Add GZip middleware for compression
app.add_middleware(GZipMiddleware)

# Include API routers
app.include_router(messages_router, prefix="/api/v1")
app.include_router(users_router, prefix="/api/v1")
app.include_router(socket_router, prefix="/api/v1")


@app.on_event("startup")
async def on_startup() -> None:
    buffer = get_undelivered_buffer()
    app.state.gateway = ChatGateway(
        SessionLocal,
        buffer,
        serialize_db=settings.effective_database_url.startswith("sqlite"),
    )
    logger.info("Chat gateway started with %s undelivered buffer", settings.undelivered_backend)

    if settings.cleanup_enabled:
        worker = MaintenanceWorker()
        await worker.start()
        app.state.maintenance_worker = worker
    else:
        app.state.maintenance_worker = None


@app.on_event("shutdown")
async def on_shutdown() -> None:
    worker: MaintenanceWorker | None = getattr(app.state, "maintenance_worker", None)
    if worker:
        await worker.stop()
    gateway: ChatGateway | None = getattr(app.state, "gateway", None)
    if gateway:
        await gateway.buffer.close()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": "SealedChat API",
        "version": settings.app_version,
        "description": "End-to-end encrypted real-time messaging",
        "docs": "/docs",
        "redoc": "/redoc",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("sealed_chat.main:app", host="0.0.0.0", port=8000, reload=settings.debug)

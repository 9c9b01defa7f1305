"""FastAPI application for the status server.

Exposes the status document of one pipeline run so a scheduler or a human
can poll progress without reading files on the host.
"""

from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routes import status


def create_app(status_path: Optional[Path] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        status_path: Status document to serve

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="ADP Status API",
        description="Read-only view of an autonomous dev pipeline run",
        version="0.1.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    app.state.status_path = Path(status_path) if status_path else None

    app.include_router(status.router, prefix="/api", tags=["status"])

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "ADP Status API",
            "version": "0.1.0",
            "docs": "/docs",
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


def run_server(
    status_path: Path,
    host: str = "127.0.0.1",
    port: int = 8000,
) -> None:
    """Run the status server (blocking).

    Args:
        status_path: Status document to serve
        host: Host to bind to
        port: Port to listen on
    """
    import uvicorn

    uvicorn.run(create_app(status_path), host=host, port=port)

"""
Status server — optional HTTP surface for the uninstall job.

Sets up FastAPI with:
  - Health check (/health)
  - Uninstall progress (/status, /status/events)
  - Prometheus metrics (/metrics)

Served by uvicorn on a background thread so the controller keeps the main thread.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from uninstall_operator import __version__, metrics
from uninstall_operator.routers.status import router as status_router

logger = logging.getLogger("status")


def create_app(controller) -> FastAPI:
    app = FastAPI(
        title="Uninstall Operator Status",
        description="Progress of the storage system teardown",
        version=__version__,
        docs_url=None,
        redoc_url=None,
    )
    app.state.controller = controller
    app.include_router(status_router)

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "version": __version__,
        }

    @app.get("/metrics", response_class=PlainTextResponse)
    async def prometheus_metrics():
        """Expose Prometheus metrics."""
        metrics.set_grace_period(controller.orchestrator.grace.seconds)
        return PlainTextResponse(
            content=generate_latest().decode("utf-8"),
            media_type=CONTENT_TYPE_LATEST,
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    return app


class StatusServer:
    def __init__(self, controller, host: str, port: int):
        self.server = uvicorn.Server(uvicorn.Config(
            create_app(controller),
            host=host,
            port=port,
            log_level="warning",
        ))
        self._thread: Optional[threading.Thread] = None

    def start(self):
        self._thread = threading.Thread(target=self.server.run, name="status-server", daemon=True)
        self._thread.start()
        logger.info(f"Status server listening on {self.server.config.host}:{self.server.config.port}")

    def stop(self):
        self.server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout=5)

"""
pulse.api.main — FastAPI application entry point
=================================================

Standalone (reads the database, no live tracker)::

    uvicorn pulse.api.main:app --port 8000

In-process with the bot: set ``api_port`` in ``config.yaml``; the bot
calls :func:`create_app` with its tracker so queries see in-memory
sessions and the admin triggers work.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

from pulse import __version__  # noqa: E402
from pulse.api.routes.admin import router as admin_router  # noqa: E402
from pulse.api.routes.stats import router as stats_router  # noqa: E402
from pulse.services.tracker import ActivityTracker  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    mode = "live tracker" if app.state.tracker is not None else "standalone"
    logger.info("Pulse API started (%s)", mode)
    yield
    logger.info("Pulse API shutting down")


def create_app(tracker: ActivityTracker | None = None) -> FastAPI:
    """Build the API, optionally bound to a live :class:`ActivityTracker`."""
    app = FastAPI(
        title="Pulse Activity API",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.tracker = tracker
    app.state.stats = tracker.stats if tracker is not None else None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(stats_router, prefix="/api")
    app.include_router(admin_router, prefix="/api")

    @app.get("/api/health")
    def health():
        return {
            "status": "ok",
            "tracker": tracker is not None,
            "active_sessions": len(tracker.manager.list_active()) if tracker else None,
            "pending_completions": tracker.manager.pending_count if tracker else None,
        }

    return app


app = create_app()

"""
SLOCast - FastAPI Application.

Run: uvicorn slocast.main:app --host 0.0.0.0 --port 8001

  - POST /api/v1/jobs/<stage>          ← external scheduler or manual trigger
  - POST /api/v1/recommendations/*     ← list / act
  - POST /api/v1/explainability/*      ← feedback / weighted signals
  - POST /api/v1/forecast/*            ← ensemble / reliability trend
  - GET  /health
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from slocast.api.routers.explainability import router as explainability_router
from slocast.api.routers.forecast import router as forecast_router
from slocast.api.routers.jobs import router as jobs_router
from slocast.api.routers.recommendations import router as recommendations_router
from slocast.config import settings
from slocast.db.engine import close_db, init_db
from slocast.logging_config import configure_logging
from slocast.middleware.cors import PermissiveCORSMiddleware
from slocast.middleware.error_handler import ErrorHandlerMiddleware
from slocast.middleware.request_context import RequestContextMiddleware

configure_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("slocast_starting", version=settings.app_version, environment=settings.environment)
    await init_db()
    yield
    await close_db()
    logger.info("slocast_shutdown")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        description="Adaptive compliance forecasting and self-tuning remediation engine.",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
    )

    # ── Middleware (last added = outermost) ──
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(RequestContextMiddleware)
    # CORS outermost so OPTIONS never reaches routing and errors carry the headers
    app.add_middleware(PermissiveCORSMiddleware)

    # ── Routes ────────────────────────────────────────────────────────
    app.include_router(jobs_router)
    app.include_router(recommendations_router)
    app.include_router(explainability_router)
    app.include_router(forecast_router)

    @app.get("/health", tags=["health"])
    async def health():
        return {
            "status": "ok",
            "version": settings.app_version,
            "service": "slocast",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "slocast.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )

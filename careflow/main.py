"""
Main FastAPI application for the CareFlow handoff pipeline.
"""

import logging
from contextlib import asynccontextmanager

import redis.asyncio as redis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from careflow.api.middleware import RateLimiter, RateLimitMiddleware
from careflow.api.routes import events_router, notes_router, patients_router, reports_router
from careflow.core.config import Settings, get_settings
from careflow.core.errors import ScopeViolation
from careflow.db.session import close_db, create_engine, create_session_factory, init_db
from careflow.services.handoff import HandoffService, build_handoff_service

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.observability.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_app(app_settings: Settings = None, service: HandoffService = None) -> FastAPI:
    """
    Build the application.

    When `service` is given it is used as-is and its lifecycle belongs to
    the caller; otherwise the database, providers and workers are set up in
    the lifespan.
    """
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events."""
        if service is not None:
            yield
            return

        logger.info("Starting CareFlow handoff service...")
        engine = create_engine(app_settings.database, echo=app_settings.debug)
        await init_db(engine)
        logger.info("Database initialized")

        handoff = await build_handoff_service(app_settings, create_session_factory(engine))
        await handoff.start()
        app.state.handoff_service = handoff

        yield

        logger.info("Shutting down CareFlow handoff service...")
        await handoff.stop()
        await close_db(engine)

    app = FastAPI(
        title="CareFlow Handoff API",
        description="""
        Voice-note clinical handoff pipeline

        Features:
        - Audio note upload with background transcription and extraction
        - Structured shift reports and tasks
        - Idempotent retries of failed notes
        - Patient-scoped chart questions over report embeddings
        - Server-sent events for pipeline progress
        """,
        version="1.0.0",
        lifespan=lifespan
    )
    if service is not None:
        app.state.handoff_service = service

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if app_settings.env == "development" else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Rate limiting middleware
    if app_settings.rate_limit.enabled:
        app.add_middleware(
            RateLimitMiddleware,
            limiter=RateLimiter(redis.from_url(app_settings.redis.url)),
            requests_per_minute=app_settings.rate_limit.requests_per_minute,
        )

    # Include routers
    app.include_router(notes_router, prefix="/api/v1")
    app.include_router(patients_router, prefix="/api/v1")
    app.include_router(reports_router, prefix="/api/v1")
    app.include_router(events_router, prefix="/api/v1")

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        handoff = getattr(app.state, "handoff_service", None)
        return {
            "status": "healthy" if handoff is not None else "starting",
            "version": "1.0.0",
            "environment": app_settings.env,
            "workers": handoff.pool.running if handoff is not None else False
        }

    @app.exception_handler(ScopeViolation)
    async def scope_violation_handler(request: Request, exc: ScopeViolation):
        logger.error(f"Scope violation on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500,
            content={"error": "scope_violation", "message": "The request could not be completed"}
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle uncaught exceptions."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "detail": str(exc) if app_settings.env == "development" else None
            }
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "careflow.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.env == "development"
    )

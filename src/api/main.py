"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from src.agent.runtime import shutdown_model_gateway
from src.api.routes import health, knowledge
from src.auth.middleware import AuthMiddleware
from src.core.config import get_settings
from src.core.exceptions import (
    GenerationFailure,
    KnowledgeServiceError,
    RetrievalFailure,
    UploadStreamError,
    ValidationFailure,
)
from src.core.logging import configure_logging
from src.db.database import close_db, init_db
from src.jobs.cleanup import start_session_sweeper, stop_session_sweeper
from src.rag.embedder import shutdown_embedder
from src.rag.ingestion import shutdown_vector_writer
from src.rag.uploads import get_upload_arena
from src.rag.vector_store import get_vector_store

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    configure_logging(settings.log_level, settings.log_format)
    logger.info(f"Starting {settings.app_name} v{settings.app_version} ({settings.environment})")

    # In production, use Alembic migrations instead
    if settings.environment == "development":
        try:
            await init_db()
            logger.info("Database initialized")
        except Exception as e:
            logger.warning(f"Database initialization skipped: {e}")

    try:
        if await get_vector_store().ensure_collection():
            logger.info("Vector collection created")
    except Exception as e:
        logger.warning(f"Vector collection check skipped: {e}")

    sweeper = start_session_sweeper(get_upload_arena(), settings.session_sweep_interval_seconds)

    health.set_startup_complete()
    logger.info("Startup complete - ready to accept requests")

    yield

    logger.info("Shutting down...")
    await stop_session_sweeper(sweeper)
    await shutdown_vector_writer(timeout=30)
    await shutdown_model_gateway()
    await shutdown_embedder()
    await close_db()
    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Knowledge ingestion and retrieval-augmented generation API",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan,
)

# Auth middleware (reads forwarded identity, sets request.state.user)
app.add_middleware(AuthMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================
# Error handlers
# ============================================


@app.exception_handler(ValidationFailure)
async def validation_failure_handler(request: Request, exc: ValidationFailure):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "message": exc.message, "errors": exc.errors},
    )


@app.exception_handler(UploadStreamError)
async def upload_stream_error_handler(request: Request, exc: UploadStreamError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "message": exc.message,
            "session_id": exc.details.get("session_id"),
            "errors": [],
        },
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err["loc"] if p != "body"), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "message": "Validation failed", "errors": errors},
    )


@app.exception_handler(KnowledgeServiceError)
async def service_error_handler(request: Request, exc: KnowledgeServiceError):
    logger.error(
        f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}",
        extra={"error_type": type(exc).__name__, "details": exc.details},
    )
    if isinstance(exc, GenerationFailure):
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"success": False, "message": "Failed to generate a response"},
        )
    if isinstance(exc, RetrievalFailure):
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"success": False, "message": "Failed to search knowledge"},
        )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "message": "Internal server error"},
    )


# Health check routes (no auth required - public paths)
app.include_router(health.router, tags=["Health"])

# API routes (auth required)
app.include_router(knowledge.router, prefix=settings.api_prefix, tags=["Knowledge"])

# Prometheus metrics endpoint
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs" if settings.debug else None,
        "health": "/health/ready",
    }

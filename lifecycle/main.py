"""
FastAPI application entry point.
Configures routes, middleware, and lifecycle events.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from lifecycle.config import settings
from lifecycle.database import close_db
from lifecycle.exceptions import (
    AnalyticsQueryError,
    InvalidStageError,
    StageLockTimeoutError,
    UserNotFoundError,
)
from lifecycle.logging_config import configure_logging
from lifecycle.redis import RedisClient
import logging

# Import routers - MUST BE AT TOP LEVEL
from lifecycle.api.admin.lifecycle import router as lifecycle_router
from lifecycle.api.admin.lifecycle import events_router
from lifecycle.api.admin.analytics import router as analytics_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifecycle manager."""
    # Startup
    configure_logging()
    logger.info("Starting up user lifecycle service...")

    # Redis is optional: dashboard cache and cross-process locks only
    if RedisClient.is_configured():
        try:
            RedisClient.get_client()
        except Exception as e:
            logger.warning(f"Failed to initialize Redis: {e}")

    yield

    # Shutdown
    await RedisClient.close()
    await close_db()
    logger.info("Shutting down...")


app = FastAPI(
    title="User Lifecycle",
    description="Lifecycle stages, scoring, segmentation and analytics",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)


@app.exception_handler(UserNotFoundError)
async def user_not_found_handler(request: Request, exc: UserNotFoundError):
    return JSONResponse(
        status_code=404,
        content={"status": "error", "message": str(exc)},
    )


@app.exception_handler(InvalidStageError)
async def invalid_stage_handler(request: Request, exc: InvalidStageError):
    return JSONResponse(
        status_code=400,
        content={"status": "error", "message": str(exc)},
    )


@app.exception_handler(AnalyticsQueryError)
async def analytics_error_handler(request: Request, exc: AnalyticsQueryError):
    logger.error(f"Analytics failure: {exc}")
    return JSONResponse(
        status_code=503,
        content={"status": "error", "message": f"Analytics unavailable ({exc.section})"},
    )


@app.exception_handler(StageLockTimeoutError)
async def stage_lock_handler(request: Request, exc: StageLockTimeoutError):
    logger.warning(f"Stage lock timeout: {exc}")
    return JSONResponse(
        status_code=503,
        content={"status": "error", "message": str(exc)},
    )


# Global Exception Handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"status": "error", "message": "Internal Server Error"},
    )


# CORS middleware
origins = []
if settings.is_development:
    origins.append("*")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "app": settings.app_name,
        "env": settings.app_env,
    }


# Register admin routes
app.include_router(
    lifecycle_router,
    prefix="/admin/lifecycle",
    tags=["lifecycle"],
)
app.include_router(
    analytics_router,
    prefix="/admin/lifecycle",
    tags=["analytics"],
)

# Event ingestion
app.include_router(
    events_router,
    tags=["events"],
)

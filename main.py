"""Main FastAPI application entry point."""

import logging
import sys
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings
from database import create_tables
from api import health, system


# Configure Python's standard logging to output to console
logging.basicConfig(
    format="%(message)s",
    stream=sys.stdout,
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
)

# Configure structured logging with console renderer for better visibility
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.dev.ConsoleRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting service health and update orchestrator")

    # Create database tables (audit trail); /health reports the database state
    try:
        await create_tables()
    except Exception as e:
        logger.error("Database unavailable at startup, audit trail disabled until it recovers", error=str(e))

    # Initialize cache service
    from services.cache_service import cache_service
    await cache_service.initialize()

    # Note: no scheduler - health checks run on demand
    yield

    logger.info("Shutting down service health and update orchestrator")
    await cache_service.close()


# Create FastAPI application
app = FastAPI(
    title="Service Health and Update Orchestrator",
    description="Aggregated health of backing services and in-place container updates",
    version=settings.app_version,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan
)

allowed_origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]

if settings.debug:
    allowed_origins = ["*"]  # Allow all in debug mode

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(health.router, tags=["health"])
app.include_router(system.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Service Health and Update Orchestrator API",
        "version": settings.app_version,
        "docs": "/docs" if settings.debug else None,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )

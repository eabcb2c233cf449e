"""
QA Review Service - Main Application
====================================

Similarity search and issue tracking for graded support-agent reviews.

Modules:
- Reviews: review registration, hybrid similarity search, embedding backfill
- Agent Issues: weekly detection of unresolved performance issues

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities and value objects
- Infrastructure: Database, LLM providers, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

# Configuration and Core
from src.config import settings
from src.core import ApplicationException, ConfigurationException

# Infrastructure
from src.infrastructure.database import close_database, create_tables, get_session_context, init_database
from src.infrastructure.llm import UnavailableLLMClient, create_llm_client

# Review Module
from src.review.infrastructure import IssueAnalysisScheduler
from src.review.infrastructure.jobs import scheduled_issue_analysis
from src.review.interfaces import issues_router, reviews_router

# Logging and metrics
from src.shared.infrastructure.logging import get_logger, setup_logging
from src.shared.infrastructure.grafana import init_grafana_exporter

# Middleware
from src.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    MetricsMiddleware,
    application_exception_handler,
    global_exception_handler,
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Initialize LLM client (embeddings + summaries)
    4. Initialize Grafana OTLP exporter
    5. Start weekly issue analysis scheduler

    SHUTDOWN:
    1. Stop scheduler
    2. Close LLM client
    3. Close database connections
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting QA Review Service", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    logger.info("Initializing database")
    init_database()

    # Create tables (for development - use migrations in production)
    try:
        await create_tables()
    except Exception as e:
        logger.warning(f"Database not available - running in degraded mode: {e}")

    logger.info("Initializing LLM client", extra={"provider": settings.llm_provider})
    try:
        llm_client = create_llm_client(settings)
    except ConfigurationException as e:
        logger.warning(f"LLM client not configured - keyword-only search: {e.message}")
        llm_client = UnavailableLLMClient(e.message)
    app.state.llm_client = llm_client

    if settings.grafana_host and settings.grafana_api_key and settings.grafana_instance_id:
        init_grafana_exporter(
            host=settings.grafana_host,
            api_key=settings.grafana_api_key,
            instance_id=settings.grafana_instance_id
        )
    else:
        logger.info("Grafana OTLP exporter not configured - metrics will not be exported")

    scheduler = None
    if settings.issue_analysis_enabled and not isinstance(llm_client, UnavailableLLMClient):
        scheduler = IssueAnalysisScheduler(
            day_of_week=settings.issue_analysis_day_of_week,
            hour=settings.issue_analysis_hour
        )

        async def issue_analysis_job():
            """Weekly agent issue analysis."""
            await scheduled_issue_analysis(llm_client)

        await scheduler.start(issue_analysis_job)
    app.state.scheduler = scheduler

    logger.info("QA Review Service started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down QA Review Service")

    if scheduler:
        await scheduler.stop()

    await llm_client.close()

    await close_database()

    logger.info("QA Review Service shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="QA Review Service API",
    description="""
    ## Similarity Search & Issue Tracking for QA Reviews

    ### Reviews

    - `POST /reviews` - Register a graded (or draft) review
    - `PATCH /reviews/{id}` - Edit a review (content edits mark its embedding stale)
    - `POST /reviews/similar` - Find similar past reviews (keywords + embeddings)
    - `POST /reviews/embeddings/backfill` - Compute missing/stale embeddings
    - `GET /reviews/embeddings/status` - Embedding coverage

    ### Agent Issues

    - `POST /agents/issues/analyze` - Recompute unresolved issues
    - `GET /agents/{id}/issues` - Current unresolved issues of an agent

    A low-scoring review counts as resolved when a later high-scoring review
    of the same agent shares a category with it or is semantically similar.
    The analysis runs weekly in the background.
    """,
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# === CORS Middleware ===
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# === Custom Middleware (from shared) ===
# Added last runs first: correlation id must exist before logging
app.add_middleware(LoggingMiddleware)
app.add_middleware(MetricsMiddleware)
app.add_middleware(CorrelationIDMiddleware)
app.add_exception_handler(ApplicationException, application_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# === Include Module Routers ===
app.include_router(reviews_router)
app.include_router(issues_router)


# === Health Check Endpoint ===

@app.get("/health", tags=["Health"], responses={
    200: {
        "description": "Service is healthy",
        "content": {
            "application/json": {
                "example": {
                    "status": "healthy",
                    "version": "1.0.0",
                    "environment": "development",
                    "checks": {
                        "database": "connected",
                        "llm_client": "available",
                        "issue_scheduler": "running"
                    }
                }
            }
        }
    }
})
async def health_check(request: Request):
    """
    Health check endpoint for load balancers and orchestrators.

    Database problems degrade the status instead of failing the check.
    """
    llm_client = getattr(request.app.state, "llm_client", None)
    checks = {
        "database": "connected",
        "llm_client": "available" if llm_client and not isinstance(llm_client, UnavailableLLMClient) else "not_configured",
        "issue_scheduler": "stopped",
    }

    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler and scheduler.is_running:
        checks["issue_scheduler"] = "running"

    try:
        async with get_session_context() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = f"error: {e}"

    healthy = checks["database"] == "connected"
    return {
        "status": "healthy" if healthy else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": checks
    }


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": "QA Review Service",
        "version": settings.app_version,
        "architecture": "Clean Architecture / Modular Monolith",
        "docs": "/docs",
        "health": "/health",
        "modules": {
            "reviews": {
                "prefix": "/reviews",
                "endpoints": [
                    "POST /reviews - Register review",
                    "PATCH /reviews/{id} - Edit review",
                    "POST /reviews/similar - Hybrid similarity search",
                    "POST /reviews/embeddings/backfill - Backfill embeddings",
                    "GET /reviews/embeddings/status - Embedding coverage"
                ]
            },
            "agent_issues": {
                "prefix": "/agents",
                "endpoints": [
                    "POST /agents/issues/analyze - Recompute unresolved issues",
                    "GET /agents/{id}/issues - List unresolved issues"
                ]
            }
        }
    }


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )

"""
Casewatch - Main Application
==============================

SLA deadline tracking and escalation for security cases.

Background sweeps:
- SLA monitoring (every 5 minutes): marks newly overdue cases, warns
  about cases approaching their deadline
- Overdue escalation (every 15 minutes): escalates overdue cases and
  notifies senior analysts

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities and value objects
- Infrastructure: Database, notifiers, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

# Configuration and Core
from casewatch.config import SweepKind, settings
from casewatch.core import RepositoryException

# Infrastructure
from casewatch.infrastructure.database import (
    init_database, close_database, create_tables, get_session_maker
)

# SLA Module
from casewatch.sla.application import CaseSLAService, EscalationService, HealthResponse
from casewatch.sla.infrastructure import (
    SLAConfigManager, SQLAlchemyCaseStore, SLAScheduler, build_notifier
)
from casewatch.sla.interfaces import sla_router

# Shared
from casewatch.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    register_exception_handlers
)
from casewatch.shared.infrastructure.grafana import GrafanaOTLPExporter
from casewatch.shared.infrastructure.logging import setup_logging, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Load SLA configuration and watch it for changes
    4. Wire case store, notifier and services
    5. Start the sweep scheduler

    SHUTDOWN:
    1. Stop the scheduler and wait for the in-flight sweep
    2. Stop the config watcher
    3. Close notifier and database connections
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting Casewatch", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    logger.info("Initializing database")
    init_database()

    # Create tables (for development - use migrations in production)
    try:
        await create_tables()
    except Exception as e:  # noqa: BLE001 - degraded mode, sweeps abort until the DB is back
        logger.warning("Database not available - running in degraded mode", extra={"error": str(e)})

    logger.info("Loading SLA configuration", extra={"path": str(settings.sla_config_path)})
    config_manager = SLAConfigManager()
    config_manager.load(settings.sla_config_path)
    config_manager.start_watching()

    case_store = SQLAlchemyCaseStore(get_session_maker())
    notifier = build_notifier(settings)

    metrics_exporter = GrafanaOTLPExporter()
    if not metrics_exporter.is_enabled():
        metrics_exporter = None

    case_sla_service = CaseSLAService(case_store, config_manager)
    escalation_service = EscalationService(
        case_store,
        notifier,
        config_manager,
        concurrency=settings.sweep_concurrency,
        notification_timeout=settings.notification_timeout_seconds,
        metrics_exporter=metrics_exporter
    )

    scheduler = SLAScheduler(
        escalation_service,
        intervals={
            SweepKind.SLA_MONITORING: settings.sla_monitoring_interval_seconds,
            SweepKind.OVERDUE_ESCALATION: settings.escalation_interval_seconds,
        },
        timezone=settings.scheduler_timezone
    )
    await scheduler.start()

    # Store services in app state for dependency injection
    app.state.config_manager = config_manager
    app.state.case_sla_service = case_sla_service
    app.state.escalation_service = escalation_service
    app.state.scheduler = scheduler

    logger.info("Casewatch started successfully", extra={"notifier": settings.notifier_backend})

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down Casewatch")

    await scheduler.stop()
    config_manager.stop_watching()
    await notifier.close()
    await close_database()

    logger.info("Casewatch shutdown complete")


async def health_check(request: Request) -> HealthResponse:
    """
    Health check endpoint for load balancers and orchestrators.

    Reports scheduler state and case counts; a failing case store
    degrades the status instead of failing the request.
    """
    scheduler = getattr(request.app.state, "scheduler", None)
    case_sla_service = getattr(request.app.state, "case_sla_service", None)

    checks = {
        "database": "unknown",
        "sla_config": "loaded" if getattr(request.app.state, "config_manager", None) else "not_loaded",
        "sla_scheduler": "running" if scheduler and scheduler.is_running else "stopped",
        "active_sweeps": (",".join(scheduler.status()["active_sweeps"]) or "none") if scheduler else "none",
    }
    errors = []
    cases = None

    if case_sla_service is not None:
        try:
            snapshot = await case_sla_service.health_snapshot()
        except RepositoryException as e:
            checks["database"] = "unavailable"
            errors.append(e.message)
        else:
            checks["database"] = "connected"
            cases = {key: snapshot[key] for key in ("total", "active", "overdue")}

    healthy = checks["database"] == "connected" and checks["sla_scheduler"] == "running"
    return HealthResponse(
        status="healthy" if healthy else "degraded",
        version=settings.app_version,
        environment=settings.environment,
        checks=checks,
        cases=cases,
        errors=errors
    )


async def root():
    """Root endpoint with API information."""
    return {
        "service": "Casewatch",
        "version": settings.app_version,
        "architecture": "Clean Architecture / Modular Monolith",
        "docs": "/docs",
        "health": "/health",
        "modules": {
            "sla": {
                "prefix": "/sla",
                "endpoints": [
                    "POST /sla/cases - Register a case",
                    "GET /sla/cases/{id} - Get case SLA status",
                    "PATCH /sla/cases/{id}/status - Change case status",
                    "GET /sla/scheduler - Get sweep scheduler status",
                    "POST /sla/scheduler/jobs/{name}/run - Run a sweep now"
                ]
            }
        }
    }


def create_app(with_lifespan: bool = True) -> FastAPI:
    """Build the FastAPI application."""
    app = FastAPI(
        title="Casewatch API",
        description="""
    ## SLA Tracking and Escalation for Security Cases

    **Deadlines (minutes from creation):** P1 60, P2 240, P3 1440.
    Overrides live in the SLA policy file and are hot-reloaded.

    **Escalation:** overdue cases are escalated at most once per debounce
    interval (default 15 minutes); each escalation notifies senior analysts.
    """,
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan if with_lifespan else None
    )

    # === CORS Middleware ===
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Last added runs first, so the correlation ID is set before logging
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(CorrelationIDMiddleware)
    register_exception_handlers(app)

    app.include_router(sla_router)
    app.add_api_route("/health", health_check, methods=["GET"], tags=["Health"], response_model=HealthResponse)
    app.add_api_route("/", root, methods=["GET"], tags=["Root"])
    return app


app = create_app()


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "casewatch.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )

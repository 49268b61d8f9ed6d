"""
Help-Desk SLA Engine - Main Application
========================================

Resolves SLA rules for tickets, tracks response and resolution clocks, and
escalates tickets that approach or pass their targets.

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services, sweeper, dispatcher and DTOs
- Domain: Entities, value objects and calculators
- Infrastructure: Database, notifier adapters, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

# Configuration and Core
from helpdesk_sla.config import settings
from helpdesk_sla.core import ApplicationException

# Infrastructure
from helpdesk_sla.infrastructure.database import (
    close_database,
    create_tables,
    get_session_context,
    init_database,
)

# SLA Module
from helpdesk_sla.sla.application import EscalationDispatcher, EscalationSweeper
from helpdesk_sla.sla.domain import StatusEvaluator
from helpdesk_sla.sla.infrastructure import (
    EscalationPolicyManager,
    LoggingNotifier,
    SQLAlchemyUnitOfWork,
    SweepScheduler,
    WebhookNotifier,
)
from helpdesk_sla.sla.interfaces import sla_router

# Shared
from helpdesk_sla.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler,
)
from helpdesk_sla.shared.infrastructure.logging import get_logger, log_latency, setup_logging

logger = get_logger(__name__)

# Global service instances
policy_manager = None
sweep_scheduler = None
notifier = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Load the escalation policy and watch it
    4. Build notifier, sweeper and dispatcher
    5. Start the sweep scheduler

    SHUTDOWN:
    1. Stop the sweep scheduler (waits for the in-flight batch)
    2. Stop the policy watcher and close the notifier
    3. Close database connections
    """
    global policy_manager, sweep_scheduler, notifier

    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting SLA engine", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    logger.info("Initializing database")
    init_database()

    # Create tables (for development - use Alembic in production)
    logger.info("Creating database tables")
    try:
        await create_tables()
    except Exception as e:
        logger.warning(f"Database not available - running in degraded mode: {e}")

    logger.info("Loading escalation policy")
    policy_manager = EscalationPolicyManager()
    policy_manager.load(settings.escalation_policy_path)
    policy_manager.start_watching()

    if settings.notifier_webhook_url:
        notifier = WebhookNotifier(
            settings.notifier_webhook_url,
            policy_manager,
            timeout_seconds=settings.notifier_timeout_seconds
        )
    else:
        logger.info("Notifier webhook not configured - escalations will only be logged")
        notifier = LoggingNotifier(policy_manager)

    sweeper = EscalationSweeper(
        SQLAlchemyUnitOfWork,
        evaluator=StatusEvaluator(settings.sla_at_risk_ratio),
        batch_size=settings.sla_sweep_batch_size,
        concurrency=settings.sla_sweep_concurrency,
        partition_index=settings.sla_partition_index,
        partition_count=settings.sla_partition_count,
    )
    dispatcher = EscalationDispatcher(
        SQLAlchemyUnitOfWork,
        notifier,
        policy_manager,
        timeout_seconds=settings.notifier_timeout_seconds,
        max_attempts=settings.notifier_max_attempts,
        backoff_base_seconds=settings.notifier_backoff_base_seconds,
        backoff_max_seconds=settings.notifier_backoff_max_seconds,
        batch_size=settings.notifier_batch_size,
        lease_seconds=settings.notifier_lease_seconds,
    )

    app.state.settings = settings
    app.state.uow_factory = SQLAlchemyUnitOfWork
    app.state.sweeper = sweeper
    app.state.dispatcher = dispatcher

    async def escalation_job():
        try:
            await sweeper.run_once()
            if sweeper.stop_requested:
                return
            with log_latency(logger, "escalation_dispatch"):
                await dispatcher.dispatch_due()
        except Exception as e:
            logger.error(f"Escalation job failed: {e}", exc_info=True)

    if settings.sla_sweep_interval_seconds > 0:
        sweep_scheduler = SweepScheduler(sweeper, interval_seconds=settings.sla_sweep_interval_seconds)
        await sweep_scheduler.start(escalation_job)
    else:
        logger.info("Sweep scheduler disabled - use POST /sla/sweeps")

    logger.info("SLA engine started successfully")

    yield

    # === SHUTDOWN ===
    logger.info("Shutting down SLA engine")

    if sweep_scheduler:
        await sweep_scheduler.stop()
        sweep_scheduler = None

    policy_manager.stop_watching()
    await notifier.close()
    await close_database()

    logger.info("SLA engine shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Help-Desk SLA Engine",
    description="""
    ## SLA Policy Resolution & Escalation Engine

    **Rule administration** - `/sla/rules`: one rule per priority, optionally
    narrowed to a category; the rule without category is the global default.

    **Ticket clock** - `/sla/tickets`: the ticket lifecycle owner pushes
    creation, pause, first response and resolution timestamps.

    **Escalation** - a background sweep evaluates every open ticket, moves
    its response and resolution status through
    `on_track → at_risk → escalated → breached` (never backwards) and emits
    one escalation event per transition into `escalated` or `breached`.
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
app.add_middleware(LoggingMiddleware)
app.add_middleware(CorrelationIDMiddleware)
app.add_exception_handler(ApplicationException, application_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# === Include Module Routers ===
app.include_router(sla_router)


# === Health Check Endpoint ===

@app.get("/health", tags=["Health"], responses={
    200: {
        "description": "Service status",
        "content": {
            "application/json": {
                "example": {
                    "status": "healthy",
                    "version": "1.0.0",
                    "environment": "development",
                    "checks": {
                        "database": "connected",
                        "escalation_policy": "loaded",
                        "sweep_scheduler": "running"
                    }
                }
            }
        }
    }
})
async def health_check(request: Request):
    """
    Health check endpoint for load balancers and orchestrators.

    Reports database connectivity, escalation policy and scheduler state.
    """
    checks = {
        "database": "connected",
        "escalation_policy": "loaded" if policy_manager else "not_loaded",
        "sweep_scheduler": "running" if sweep_scheduler and sweep_scheduler.is_running else "stopped",
    }

    try:
        async with get_session_context() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = f"error: {type(e).__name__}"

    return {
        "status": "healthy" if checks["database"] == "connected" else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": checks
    }


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "helpdesk_sla.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )

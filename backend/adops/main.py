"""
Amazon Ads Sync Scheduler — FastAPI Backend
Keeps local campaign, ad group and keyword data in step with Amazon Ads
through the official MCP server, and runs keyword auto-execution.
All data persisted to PostgreSQL.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from adops.config import get_settings
from adops.database import init_db, check_db_connection
from adops.auth import require_auth
from adops.routers import credentials, scheduler, validation, keyword_execution
from adops.services.scheduler_service import SyncScheduler

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Amazon Ads Sync Scheduler...")
    app.state.scheduler = None
    try:
        await init_db()
        logger.info("Database initialized; all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible
        yield
        return

    if settings.scheduler_enabled:
        app.state.scheduler = SyncScheduler(settings=settings)
        app.state.scheduler.start()
    else:
        logger.info("Sync scheduler disabled (SCHEDULER_ENABLED=false)")
    yield
    logger.info("Shutting down...")
    if app.state.scheduler is not None:
        await app.state.scheduler.shutdown()


app = FastAPI(
    title="Amazon Ads Sync Scheduler",
    description="Tiered Amazon Ads sync and keyword auto-execution via the Amazon Ads MCP Server",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Register Routers (all require auth) ──────────────────────────────
_auth = [Depends(require_auth)]
app.include_router(credentials.router, prefix="/api/credentials", tags=["Credentials"], dependencies=_auth)
app.include_router(scheduler.router, prefix="/api/scheduler", tags=["Sync Scheduler"], dependencies=_auth)
app.include_router(validation.router, prefix="/api/validation", tags=["Data Validation"], dependencies=_auth)
app.include_router(
    keyword_execution.router, prefix="/api/keyword-execution", tags=["Keyword Auto-Execution"], dependencies=_auth,
)


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    scheduler_state = app.state.scheduler.get_status() if getattr(app.state, "scheduler", None) else None
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "Amazon Ads Sync Scheduler",
        "database": "connected" if db_ok else "disconnected",
        "scheduler": "running" if scheduler_state and scheduler_state.is_running else "stopped",
    }

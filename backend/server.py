"""Mautic Dashboard Sync - Main Server"""
from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware
import logging
from datetime import datetime, timezone

import config
from crypto_utils import get_codec
from database import Database
from tenant_store import TenantStore
from sync_engine import SyncEngine
from scheduler import SyncScheduler
from dashboard_service import DashboardService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Mautic Dashboard Sync")

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    scheduler = getattr(app.state, "scheduler", None)
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "scheduler_running": bool(scheduler and scheduler.is_running),
    }


@app.on_event("startup")
async def startup():
    # Fails fast in production when ENCRYPTION_KEY is missing
    codec = get_codec()

    db = Database(config.DATABASE_URL)
    await db.create_all()

    store = TenantStore(db.session_factory, codec=codec)
    sync_engine = SyncEngine(store)
    scheduler = SyncScheduler(sync_engine)

    app.state.db = db
    app.state.tenant_store = store
    app.state.sync_engine = sync_engine
    app.state.scheduler = scheduler
    app.state.dashboard = DashboardService(db.session_factory)

    if config.DISABLE_SCHEDULER:
        logger.info(f"Scheduler disabled (environment={config.ENVIRONMENT})")
    else:
        scheduler.start_all()


@app.on_event("shutdown")
async def shutdown():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler:
        await scheduler.stop_all()
    db = getattr(app.state, "db", None)
    if db:
        await db.dispose()

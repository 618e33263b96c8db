"""
ShipTrack Reconciler - FastAPI entry point
"""
import logging

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from app.config import settings
from app.database import Base, engine
from app.http.exception_handlers import register_exception_handlers
from app.workers.scheduler import ReconciliationScheduler
from routes.api import register_routes

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="ShipTrack Reconciler API",
    description="Keeps order and return tracking status in line with what each carrier reports",
    version="1.0.0",
    docs_url="/docs" if settings.IS_DEVELOPMENT else None,
    redoc_url=None,
)

logger.info(f"🚚 ShipTrack Reconciler starting ({settings})")
if settings.IS_PRODUCTION and settings.ENCRYPTION_KEY == "your-32-character-encryption-key!!":
    logger.warning("⚠️ ENCRYPTION_KEY is the default in production. Stored carrier credentials are not protected.")
if not settings.DELHIVERY_API_KEY:
    logger.info("DELHIVERY_API_KEY not set; Delhivery falls back to tracking page scrape unless a key is stored")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_origin_regex=settings.CORS_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["*"],
)
register_exception_handlers(app)
register_routes(app, settings)


@app.on_event("startup")
async def start_scheduler() -> None:
    """Create the reconciliation scheduler; start its timer when SYNC_ENABLED."""
    app.state.scheduler = ReconciliationScheduler()
    if settings.SYNC_ENABLED:
        app.state.scheduler.start()
    else:
        logger.info("Reconciliation scheduler disabled (SYNC_ENABLED=false); manual runs only")


@app.on_event("shutdown")
async def stop_scheduler() -> None:
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        scheduler.stop()


@app.get("/health")
async def health():
    """Liveness plus database ping and scheduler state."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        db_status = "ok"
    except Exception as e:
        logger.warning("Health check DB ping failed: %s", e)
        db_status = "error"
    scheduler = getattr(app.state, "scheduler", None)
    return {
        "status": "ok" if db_status == "ok" else "degraded",
        "db": db_status,
        "environment": settings.ENV,
        "scheduler": "running" if scheduler is not None and scheduler.running else "stopped",
        "syncInProgress": bool(scheduler and scheduler.in_progress),
    }


@app.get(settings.API_PREFIX)
async def api_root():
    return {
        "service": "ShipTrack Reconciler API",
        "version": "1.0.0",
        "endpoints": [f"{settings.API_PREFIX}/{name}" for name in ("track", "sync", "webhooks", "carriers")],
    }


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.IS_DEVELOPMENT,
        log_level=settings.LOG_LEVEL.lower(),
    )

"""
Central API route registration. All HTTP controllers are mounted here with /api prefix.
"""
import logging
from fastapi import FastAPI

from app.http.controllers import (
    tracking,
    sync,
    webhooks,
    carriers,
)

logger = logging.getLogger(__name__)


def register_routes(app: FastAPI, settings) -> None:
    """Register all API routers. Call from main.py after creating the FastAPI app."""
    prefix = getattr(settings, "API_PREFIX", "/api")
    app.include_router(tracking.router, prefix=f"{prefix}/track", tags=["tracking"])
    app.include_router(sync.router, prefix=f"{prefix}/sync", tags=["sync"])
    app.include_router(webhooks.router, prefix=f"{prefix}/webhooks", tags=["webhooks"])
    app.include_router(carriers.router, prefix=f"{prefix}/carriers", tags=["carriers"])
    logger.debug("Registered tracking, sync, webhooks and carriers routers under %s", prefix)

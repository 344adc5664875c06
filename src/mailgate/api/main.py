# mailgate: Status API
#
# Read-only HTTP surface over the quota engine. The engine itself has no
# HTTP dependency; this app only exposes status for dashboards.

import logging

from fastapi import FastAPI

from .. import __version__
from ..store.redis_client import close_redis_client
from .quota_routes import router as quota_router

logger = logging.getLogger(__name__)

app = FastAPI(
    title="mailgate",
    description="Email quota & digest coordination engine",
    version=__version__,
)

app.include_router(quota_router)


@app.get("/health")
async def health():
    return {"status": "ok", "version": __version__}


@app.on_event("shutdown")
async def shutdown_event():
    await close_redis_client()
    logger.info("mailgate API stopped")

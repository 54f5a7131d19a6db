import logging
import time

from fastapi import APIRouter

from app.relay.models import HealthStatus
from app.relay.route import content_cache, cookie_jar
from app.relay.route import router as relay_router
from app.vars import PROXY_PATH, SERVICE_NAME, SERVICE_VERSION

router = APIRouter()

logger = logging.getLogger("uvicorn.error")

STARTED_AT = time.monotonic()

logger.info(f"Relay endpoint mounted at {PROXY_PATH}")


@router.get("/")
async def index():
    return {
        "name": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "endpoints": {
            "browse": f"{PROXY_PATH}?url=<url>&session=<optional_session_id>",
            "health": "/health",
            "metrics": "/metrics",
        },
    }


@router.get("/health", response_model=HealthStatus)
async def health():
    stats = content_cache.stats()
    return HealthStatus(
        status="ok",
        version=SERVICE_VERSION,
        uptime=round(time.monotonic() - STARTED_AT, 3),
        active_sessions=len(cookie_jar),
        cache_entries=stats["entries"],
        cache_size_bytes=stats["size_bytes"],
    )


router.include_router(relay_router)

"""Health check endpoints."""
import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from db.session import get_async_session
from services.change_feed import get_change_feed


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    realtime: str


def _realtime_status() -> str:
    feed = get_change_feed()
    if feed is None:
        return "unavailable"
    return "distributed" if feed.is_distributed else "local"


@router.get("/health", response_model=HealthResponse)
async def health_check(
    db: AsyncSession = Depends(get_async_session),
) -> HealthResponse:
    """Check application, database and realtime feed health."""
    db_status = "healthy"
    try:
        await db.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Database health check failed")
        db_status = "unhealthy"

    realtime = _realtime_status()
    healthy = db_status == "healthy" and realtime != "unavailable"
    return HealthResponse(
        status="healthy" if healthy else "degraded",
        database=db_status,
        realtime=realtime,
    )

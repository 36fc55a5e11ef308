"""FastAPI dependencies for injection."""
from fastapi import HTTPException, status

from core.auth import get_current_user, get_current_user_for_stream
from core.config import get_settings
from db.session import get_async_session, get_session_factory
from services.change_feed import ChangeFeed, get_change_feed


def get_feed() -> ChangeFeed:
    """Return the running change feed, or 503 if the app has not started one."""
    feed = get_change_feed()
    if feed is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Realtime feed unavailable",
        )
    return feed


__all__ = [
    "get_async_session",
    "get_current_user",
    "get_current_user_for_stream",
    "get_feed",
    "get_session_factory",
    "get_settings",
]

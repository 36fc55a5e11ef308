"""Helper functions for API routers."""
from api.helpers.sse import KEEP_ALIVE, SUBSCRIBED_EVENT, change_event_stream, format_sse

__all__ = [
    "KEEP_ALIVE",
    "SUBSCRIBED_EVENT",
    "change_event_stream",
    "format_sse",
]

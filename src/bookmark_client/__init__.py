"""Client for the Bookmarks API with a live, de-duplicated bookmark view."""
from bookmark_client.api_client import BookmarksApiClient
from bookmark_client.dashboard import DashboardSession
from bookmark_client.errors import (
    ApiError,
    BookmarkValidationError,
    StoreError,
    UnauthorizedError,
)
from bookmark_client.view import BookmarkView, EntryState

__all__ = [
    "ApiError",
    "BookmarkValidationError",
    "BookmarkView",
    "BookmarksApiClient",
    "DashboardSession",
    "EntryState",
    "StoreError",
    "UnauthorizedError",
]

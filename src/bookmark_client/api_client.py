"""HTTP client for the Bookmarks API (mutation gateway, snapshot and change feed)."""
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from uuid import UUID

import httpx

from bookmark_client.errors import StoreError, UnauthorizedError, to_api_error
from bookmark_client.realtime import SUBSCRIBED_EVENT, iter_change_events, iter_sse_messages
from schemas.bookmark import (
    BookmarkListResponse,
    BookmarkResponse,
    normalize_title,
    normalize_url,
)
from schemas.change_event import ChangeEvent
from schemas.user import UserResponse

logger = logging.getLogger(__name__)

BOOKMARKS_PATH = "/api/bookmarks"
CHANGES_PATH = "/api/bookmarks/changes"
CURRENT_USER_PATH = "/api/users/me"
DEFAULT_TIMEOUT = 30.0


class BookmarksApiClient:
    """
    Authenticated access to the Bookmarks API.

    Every failure is raised as an ApiError subclass: UnauthorizedError for 401,
    BookmarkValidationError for 400/422, StoreError for server and transport
    failures. Nothing is retried.
    """

    def __init__(self, http: httpx.AsyncClient, token: str | None = None) -> None:
        self._http = http
        self._token = token
        self._owns_http = False

    @classmethod
    def connect(
        cls,
        base_url: str,
        token: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> "BookmarksApiClient":
        """Create a client with its own connection pool (closed by aclose())."""
        client = cls(httpx.AsyncClient(base_url=base_url, timeout=timeout), token)
        client._owns_http = True
        return client

    async def aclose(self) -> None:
        """Close the connection pool if this client created it."""
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "BookmarksApiClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @property
    def is_signed_in(self) -> bool:
        """True while the client holds credentials."""
        return self._token is not None

    def sign_out(self) -> None:
        """Forget the bearer token; later calls are unauthenticated."""
        self._token = None

    def _headers(self) -> dict[str, str]:
        if self._token is None:
            return {}
        return {"Authorization": f"Bearer {self._token}"}

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http.request(method, path, headers=self._headers(), **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise to_api_error(e) from e
        except httpx.TransportError as e:
            raise StoreError(f"Could not reach the bookmarks API: {e}") from e
        return response

    async def get_current_user(self) -> UserResponse | None:
        """Get the signed-in user's profile, or None when there is no valid session."""
        try:
            response = await self._request("GET", CURRENT_USER_PATH)
        except UnauthorizedError:
            return None
        return UserResponse.model_validate(response.json())

    async def list_bookmarks(self) -> list[BookmarkResponse]:
        """Get the current user's bookmarks, newest first."""
        response = await self._request("GET", BOOKMARKS_PATH)
        return BookmarkListResponse.model_validate(response.json()).items

    async def create_bookmark(self, url: str, title: str) -> BookmarkResponse:
        """Create a bookmark; the url gets an https:// scheme when it has none."""
        response = await self._request(
            "POST",
            BOOKMARKS_PATH,
            json={"url": normalize_url(url), "title": normalize_title(title)},
        )
        return BookmarkResponse.model_validate(response.json())

    async def delete_bookmark(self, bookmark_id: UUID) -> None:
        """Delete a bookmark (succeeds even when nothing matched)."""
        await self._request("DELETE", BOOKMARKS_PATH, params={"id": str(bookmark_id)})

    @asynccontextmanager
    async def stream_changes(self) -> AsyncIterator[AsyncIterator[ChangeEvent]]:
        """
        Open the realtime change stream.

        The context is entered only after the server confirms the subscription,
        so every change committed afterwards will be delivered. Leaving the
        context closes the stream.
        """
        timeout = httpx.Timeout(DEFAULT_TIMEOUT, read=None)
        try:
            async with self._http.stream(
                "GET", CHANGES_PATH, headers=self._headers(), timeout=timeout,
            ) as response:
                if response.is_error:
                    await response.aread()
                    response.raise_for_status()
                messages = iter_sse_messages(response.aiter_lines())
                first = await anext(messages, None)
                if first is None or first.event != SUBSCRIBED_EVENT:
                    raise StoreError("Realtime feed did not confirm the subscription")
                logger.debug("Subscribed to bookmark changes")
                yield iter_change_events(messages)
        except httpx.HTTPStatusError as e:
            raise to_api_error(e) from e
        except httpx.TransportError as e:
            raise StoreError(f"Realtime feed connection failed: {e}") from e

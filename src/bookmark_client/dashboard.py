"""
Signed-in dashboard session: the bookmark view kept live by the change feed.

A session loads the snapshot, then subscribes to realtime changes. Changes
travel from the listener task to the view through an asyncio queue drained by a
single consumer task; local create/delete results are merged directly on the
same event loop, so the view has exactly one writer at a time.
"""
import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from typing import Any
from uuid import UUID

import httpx

from bookmark_client.api_client import BookmarksApiClient
from bookmark_client.errors import ApiError, UnauthorizedError
from bookmark_client.view import BookmarkView
from schemas.bookmark import BookmarkResponse
from schemas.change_event import ChangeEvent
from schemas.user import UserResponse

logger = logging.getLogger(__name__)

ChangeSource = Callable[[], AbstractAsyncContextManager[AsyncIterable[ChangeEvent]]]


@dataclass
class _Resync:
    """Fresh snapshot fetched after the feed reconnected."""

    records: list[BookmarkResponse]


class DashboardSession:
    """
    One user's live bookmark collection.

    Create with `open()`, which authenticates, loads the snapshot, starts the
    realtime listener and always tears the subscription down on exit.

    The snapshot is loaded before the first subscription is opened, so a change
    committed between the two is not shown until the next reconnect resyncs the
    view. Reconnects subscribe first and then reload, and miss nothing.

    Args:
        api: Authenticated API client.
        user: The signed-in user.
        change_source: Opens a change subscription for this user. Defaults to
            the API's server-sent events stream.
        reconnect_delay: Seconds to wait before reconnecting a dropped feed.
        resync_on_reconnect: Reload the snapshot after every reconnect so
            changes made while disconnected are not lost.
    """

    def __init__(
        self,
        api: BookmarksApiClient,
        user: UserResponse,
        *,
        change_source: ChangeSource | None = None,
        reconnect_delay: float = 1.0,
        resync_on_reconnect: bool = True,
    ) -> None:
        self.api = api
        self.user = user
        self.view = BookmarkView()
        self.form_error: str | None = None
        self.changes_received = 0
        self.reconnects = 0
        self.resyncs = 0
        self._change_source = change_source or api.stream_changes
        self._reconnect_delay = reconnect_delay
        self._resync_on_reconnect = resync_on_reconnect
        self._channel: asyncio.Queue[ChangeEvent | _Resync] = asyncio.Queue()
        self._subscribed = asyncio.Event()
        self._listener: asyncio.Task | None = None
        self._drainer: asyncio.Task | None = None
        self._closed = False

    @classmethod
    @asynccontextmanager
    async def open(
        cls, api: BookmarksApiClient, **kwargs: Any,
    ) -> AsyncIterator["DashboardSession"]:
        """
        Start a session for the API client's signed-in user.

        Raises:
            UnauthorizedError: The client has no valid session.
        """
        user = await api.get_current_user()
        if user is None:
            raise UnauthorizedError("Not authenticated", status_code=401)
        session = cls(api, user, **kwargs)
        try:
            await session.start()
            yield session
        finally:
            await session.close()

    @property
    def bookmarks(self) -> list[BookmarkResponse]:
        """Visible bookmarks, newest first."""
        return self.view.items

    @property
    def is_subscribed(self) -> bool:
        """True while the realtime feed is connected."""
        return self._subscribed.is_set()

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        """Load the snapshot, then start listening for changes."""
        if self._listener is not None:
            return
        self.view.load_snapshot(await self.api.list_bookmarks())
        self._drainer = asyncio.create_task(self._drain())
        self._listener = asyncio.create_task(self._listen())

    async def wait_until_subscribed(self, timeout: float | None = None) -> None:
        """Wait for the realtime feed to be connected."""
        await asyncio.wait_for(self._subscribed.wait(), timeout)

    async def settle(self) -> None:
        """Wait until every change handed to the channel has been applied."""
        await self._channel.join()

    async def _listen(self) -> None:
        attempt = 0
        while not self._closed:
            try:
                async with self._change_source() as changes:
                    self._subscribed.set()
                    if attempt:
                        self.reconnects += 1
                        if self._resync_on_reconnect:
                            # Subscribed first, so nothing committed after this snapshot is missed
                            self._channel.put_nowait(_Resync(await self.api.list_bookmarks()))
                    async for change in changes:
                        self._channel.put_nowait(change)
                logger.info("Realtime feed closed for user %s", self.user.id)
            except UnauthorizedError:
                logger.warning("Realtime feed rejected the session for user %s", self.user.id)
                return
            except (ApiError, httpx.HTTPError) as e:
                logger.warning("Realtime feed dropped for user %s: %s", self.user.id, e)
            except Exception:
                logger.exception("Realtime listener failed for user %s", self.user.id)
                raise
            finally:
                self._subscribed.clear()
            attempt += 1
            await asyncio.sleep(self._reconnect_delay)

    async def _drain(self) -> None:
        while True:
            message = await self._channel.get()
            try:
                if isinstance(message, _Resync):
                    self.view.resync(message.records)
                    self.resyncs += 1
                else:
                    self.changes_received += 1
                    self.view.apply(message)
            finally:
                self._channel.task_done()

    async def add_bookmark(self, url: str, title: str) -> BookmarkResponse | None:
        """
        Create a bookmark and merge the confirmed record.

        On failure the view is unchanged, `form_error` holds the message and
        None is returned.
        """
        self.form_error = None
        token = self.view.begin_create()
        try:
            record = await self.api.create_bookmark(url, title)
        except ApiError as e:
            self.view.fail_create(token)
            self.form_error = str(e)
            return None
        self.view.complete_create(token, record)
        return record

    async def delete_bookmark(self, bookmark_id: UUID) -> bool:
        """
        Delete a bookmark, showing it as busy until the server answers.

        A failed delete leaves the entry in place and returns False.
        """
        self.view.begin_delete(bookmark_id)
        try:
            await self.api.delete_bookmark(bookmark_id)
        except ApiError as e:
            logger.warning("Failed to delete bookmark %s: %s", bookmark_id, e)
            return False
        finally:
            self.view.end_delete(bookmark_id)
        self.view.merge_delete(bookmark_id)
        return True

    async def close(self) -> None:
        """Stop listening and release the change subscription. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        tasks = [task for task in (self._listener, self._drainer) if task is not None]
        for task in tasks:
            task.cancel()
        for result in await asyncio.gather(*tasks, return_exceptions=True):
            if isinstance(result, Exception):
                logger.error("Dashboard task failed: %r", result)
        self._subscribed.clear()

    async def sign_out(self) -> None:
        """Tear the session down and drop the client's credentials."""
        await self.close()
        self.api.sign_out()

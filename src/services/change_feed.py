"""
Realtime change feed for committed bookmark inserts and deletes.

Services record changes on the database session while they work; the session's
after_commit hook hands them to the process-wide ChangeFeed, which delivers
each event to the owner's live subscriptions. Events recorded in a transaction
that rolls back are discarded, so subscribers only ever see committed rows.

When Redis is connected, every published event is also sent on a per-owner
pub/sub channel and events published by other API processes are delivered to
local subscribers. Without Redis the feed is process-local.
"""
import asyncio
import contextlib
import logging
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ValidationError
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from core.redis import RedisClient
from schemas.change_event import ChangeEvent

logger = logging.getLogger(__name__)

PENDING_CHANGES_KEY = "pending_bookmark_changes"


class FeedEnvelope(BaseModel):
    """Cross-process wrapper; `origin` lets a process skip its own echoes."""

    origin: str
    event: ChangeEvent


class FeedSubscription:
    """
    One live subscription to a single owner's changes.

    Events are buffered in an asyncio queue and consumed with `get()` or by
    iterating with `async for`. Iteration ends once the subscription is closed
    and the buffer is drained. A subscriber that falls `max_pending` events
    behind is closed and flagged `overflowed`; its client is expected to
    reconnect and resync rather than continue with a gap.
    """

    def __init__(self, feed: "ChangeFeed", owner_id: UUID, max_pending: int) -> None:
        self.owner_id = owner_id
        self.overflowed = False
        self._feed = feed
        self._max_pending = max_pending
        self._queue: asyncio.Queue[ChangeEvent | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        """True once the subscription has been released."""
        return self._closed

    def offer(self, change: ChangeEvent) -> None:
        """Buffer an event for the consumer (called by the feed)."""
        if self._closed:
            return
        if self._queue.qsize() >= self._max_pending:
            logger.warning(
                "Closing slow change feed subscriber for owner %s (%d events pending)",
                self.owner_id,
                self._queue.qsize(),
            )
            self.overflowed = True
            self.close()
            return
        self._queue.put_nowait(change)

    async def get(self) -> ChangeEvent | None:
        """Wait for the next event; returns None once closed and drained."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        """Release the subscription. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._feed._discard(self)
        # Wake a consumer blocked in get()
        self._queue.put_nowait(None)

    def __aiter__(self) -> "FeedSubscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        change = await self.get()
        if change is None:
            raise StopAsyncIteration
        return change

    async def __aenter__(self) -> "FeedSubscription":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class ChangeFeed:
    """Process-wide registry of change subscriptions, keyed by owner."""

    def __init__(
        self,
        redis_client: RedisClient | None = None,
        channel_prefix: str = "bookmarks:changes",
        queue_size: int = 256,
    ) -> None:
        self.instance_id = uuid4().hex
        self._redis = redis_client
        self._channel_prefix = channel_prefix
        self._queue_size = queue_size
        self._subscribers: dict[UUID, set[FeedSubscription]] = {}
        self._remote_publishes: set[asyncio.Task] = set()
        self._listener: asyncio.Task | None = None

    @property
    def is_distributed(self) -> bool:
        """True when events are shared with other processes through Redis."""
        return self._redis is not None and self._redis.is_connected

    def channel_for(self, owner_id: UUID) -> str:
        """Redis channel carrying one owner's events."""
        return f"{self._channel_prefix}:{owner_id}"

    def subscribe(self, owner_id: UUID) -> FeedSubscription:
        """Open a subscription to one owner's changes."""
        subscription = FeedSubscription(self, owner_id, self._queue_size)
        self._subscribers.setdefault(owner_id, set()).add(subscription)
        logger.debug("Change feed subscription opened for owner %s", owner_id)
        return subscription

    def unsubscribe(self, subscription: FeedSubscription) -> None:
        """Release a subscription handle."""
        subscription.close()

    def _discard(self, subscription: FeedSubscription) -> None:
        subscriptions = self._subscribers.get(subscription.owner_id)
        if subscriptions is None:
            return
        subscriptions.discard(subscription)
        if not subscriptions:
            del self._subscribers[subscription.owner_id]
        logger.debug("Change feed subscription closed for owner %s", subscription.owner_id)

    def subscriber_count(self, owner_id: UUID | None = None) -> int:
        """Number of open subscriptions, for one owner or overall."""
        if owner_id is not None:
            return len(self._subscribers.get(owner_id, ()))
        return sum(len(subs) for subs in self._subscribers.values())

    def dispatch(self, change: ChangeEvent) -> int:
        """Deliver an event to this process's subscribers; returns the count reached."""
        subscriptions = list(self._subscribers.get(change.owner_id, ()))
        for subscription in subscriptions:
            subscription.offer(change)
        return len(subscriptions)

    async def publish(self, change: ChangeEvent) -> None:
        """Deliver locally and, when connected, to other processes."""
        self.dispatch(change)
        await self._publish_remote(change)

    def publish_nowait(self, change: ChangeEvent) -> None:
        """
        Deliver locally now and schedule the Redis publish.

        Used from synchronous session hooks, which cannot await.
        """
        self.dispatch(change)
        if not self.is_distributed:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; change for %s not sent to Redis", change.owner_id)
            return
        task = loop.create_task(self._publish_remote(change))
        self._remote_publishes.add(task)
        task.add_done_callback(self._remote_publishes.discard)

    async def _publish_remote(self, change: ChangeEvent) -> None:
        if not self.is_distributed:
            return
        envelope = FeedEnvelope(origin=self.instance_id, event=change)
        await self._redis.publish(
            self.channel_for(change.owner_id), envelope.model_dump_json(),
        )

    def handle_remote_message(self, data: bytes | str) -> None:
        """Deliver an event received from Redis, skipping this process's own."""
        try:
            envelope = FeedEnvelope.model_validate_json(data)
        except ValidationError as e:
            logger.warning("Ignoring malformed change feed message: %s", e)
            return
        if envelope.origin == self.instance_id:
            return
        self.dispatch(envelope.event)

    async def start(self) -> None:
        """Start relaying events from other processes (no-op without Redis)."""
        if self._listener is not None or not self.is_distributed:
            return
        pubsub = self._redis.pubsub()
        if pubsub is None:
            return
        try:
            await pubsub.psubscribe(f"{self._channel_prefix}:*")
        except RedisError as e:
            logger.warning("Change feed could not subscribe to Redis: %s", e)
            await pubsub.aclose()
            return
        self._listener = asyncio.create_task(self._relay(pubsub))
        logger.info("Change feed relaying events through Redis")

    async def _relay(self, pubsub: PubSub) -> None:
        try:
            async for message in pubsub.listen():
                if message.get("type") in ("message", "pmessage"):
                    self.handle_remote_message(message["data"])
        except RedisError as e:
            logger.warning("Change feed lost its Redis subscription: %s", e)
        finally:
            await pubsub.aclose()

    async def stop(self) -> None:
        """Stop relaying, flush pending publishes and close every subscription."""
        if self._listener is not None:
            self._listener.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listener
            self._listener = None
        if self._remote_publishes:
            await asyncio.gather(*self._remote_publishes, return_exceptions=True)
        for subscriptions in list(self._subscribers.values()):
            for subscription in list(subscriptions):
                subscription.close()
        logger.info("Change feed stopped")


def record_change(session: AsyncSession | Session, change: ChangeEvent) -> None:
    """Queue an event to be published when the session's transaction commits."""
    session.info.setdefault(PENDING_CHANGES_KEY, []).append(change)


def pending_changes(session: AsyncSession | Session) -> list[ChangeEvent]:
    """Events recorded on the session and not yet committed."""
    return list(session.info.get(PENDING_CHANGES_KEY, ()))


@event.listens_for(Session, "after_commit")
def _publish_committed_changes(session: Session) -> None:
    changes = session.info.pop(PENDING_CHANGES_KEY, None)
    if not changes:
        return
    feed = get_change_feed()
    if feed is None:
        logger.debug("No change feed configured; dropping %d change(s)", len(changes))
        return
    for change in changes:
        feed.publish_nowait(change)


@event.listens_for(Session, "after_rollback")
def _discard_rolled_back_changes(session: Session, *_args: Any) -> None:
    session.info.pop(PENDING_CHANGES_KEY, None)


# Global change feed state using a container to avoid global statement
class _ChangeFeedState:
    """Container for global change feed state."""

    feed: ChangeFeed | None = None


_state = _ChangeFeedState()


def get_change_feed() -> ChangeFeed | None:
    """Get the global change feed instance."""
    return _state.feed


def set_change_feed(feed: ChangeFeed | None) -> None:
    """Set the global change feed instance."""
    _state.feed = feed

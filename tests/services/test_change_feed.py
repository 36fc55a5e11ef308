"""Tests for the realtime change feed and its transaction hooks."""
import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from models.user import User
from schemas.bookmark import BookmarkCreate, BookmarkResponse
from schemas.change_event import ChangeEvent, ChangeType
from services.bookmark_service import create_bookmark, delete_bookmark
from services.change_feed import (
    ChangeFeed,
    FeedEnvelope,
    get_change_feed,
    pending_changes,
    record_change,
    set_change_feed,
)


def _inserted(owner_id: UUID) -> ChangeEvent:
    return ChangeEvent.inserted(BookmarkResponse(
        id=uuid4(),
        url="https://example.com",
        title="Example",
        user_id=owner_id,
        created_at=datetime.now(UTC),
    ))


@pytest.fixture
async def feed_user(db_session: AsyncSession) -> User:
    """Create and commit a user whose changes the tests watch."""
    user = User(auth0_id="test-user-change-feed", email="feed@example.com")
    db_session.add(user)
    await db_session.commit()
    return user


class TestSubscriptions:
    """Tests for subscribe/dispatch/close."""

    async def test__dispatch__reaches_only_the_owner(self, change_feed: ChangeFeed) -> None:
        """Events are routed by owner; other users never see them."""
        owner, stranger = uuid4(), uuid4()
        owner_sub = change_feed.subscribe(owner)
        stranger_sub = change_feed.subscribe(stranger)
        change = _inserted(owner)

        assert change_feed.dispatch(change) == 1

        assert await owner_sub.get() == change
        stranger_sub.close()
        assert await stranger_sub.get() is None

    async def test__dispatch__fans_out_to_every_session_of_owner(
        self, change_feed: ChangeFeed,
    ) -> None:
        """Each of the owner's subscriptions gets its own copy."""
        owner = uuid4()
        first = change_feed.subscribe(owner)
        second = change_feed.subscribe(owner)
        change = _inserted(owner)

        assert change_feed.dispatch(change) == 2
        assert await first.get() == change
        assert await second.get() == change

    async def test__close__releases_subscription(self, change_feed: ChangeFeed) -> None:
        """Closing removes the subscription from the registry and ends iteration."""
        owner = uuid4()
        subscription = change_feed.subscribe(owner)
        assert change_feed.subscriber_count(owner) == 1

        change_feed.unsubscribe(subscription)
        subscription.close()  # second close is a no-op

        assert subscription.closed
        assert change_feed.subscriber_count(owner) == 0
        assert change_feed.subscriber_count() == 0
        assert [change async for change in subscription] == []

    async def test__close__wakes_blocked_consumer(self, change_feed: ChangeFeed) -> None:
        """A consumer waiting for the next event sees the end of the stream."""
        subscription = change_feed.subscribe(uuid4())
        waiter = asyncio.create_task(subscription.get())
        await asyncio.sleep(0)

        subscription.close()

        assert await asyncio.wait_for(waiter, timeout=1) is None

    async def test__context_manager__closes_on_error(self, change_feed: ChangeFeed) -> None:
        """Leaving the subscription context releases it, even on error."""
        owner = uuid4()
        with pytest.raises(RuntimeError):
            async with change_feed.subscribe(owner) as subscription:
                assert change_feed.subscriber_count(owner) == 1
                raise RuntimeError("boom")

        assert subscription.closed
        assert change_feed.subscriber_count(owner) == 0

    async def test__events_buffered_before_close_are_still_delivered(
        self, change_feed: ChangeFeed,
    ) -> None:
        """Iteration drains what was already queued, then stops."""
        owner = uuid4()
        subscription = change_feed.subscribe(owner)
        changes = [_inserted(owner), _inserted(owner)]
        for change in changes:
            change_feed.dispatch(change)
        subscription.close()

        assert [change async for change in subscription] == changes

    async def test__slow_subscriber__is_closed_and_flagged(self) -> None:
        """A subscriber that falls too far behind is dropped rather than losing events silently."""
        feed = ChangeFeed(queue_size=2)
        owner = uuid4()
        subscription = feed.subscribe(owner)

        for _ in range(3):
            feed.dispatch(_inserted(owner))

        assert subscription.overflowed
        assert subscription.closed
        assert feed.subscriber_count(owner) == 0

    async def test__stop__closes_every_subscription(self) -> None:
        """Stopping the feed ends every open stream."""
        feed = ChangeFeed()
        subscriptions = [feed.subscribe(uuid4()) for _ in range(3)]

        await feed.stop()

        assert all(subscription.closed for subscription in subscriptions)
        assert feed.subscriber_count() == 0


class TestTransactionHooks:
    """Events are published only after commit."""

    async def test__commit__publishes_recorded_changes(
        self,
        db_session: AsyncSession,
        feed_user: User,
        change_feed: ChangeFeed,
    ) -> None:
        """Nothing is delivered before commit; the INSERT arrives after it."""
        subscription = change_feed.subscribe(feed_user.id)

        bookmark = await create_bookmark(
            db_session, feed_user.id, BookmarkCreate(url="example.com", title="Example"),
        )
        with pytest.raises(TimeoutError):
            await asyncio.wait_for(subscription.get(), timeout=0.05)

        await db_session.commit()

        change = await asyncio.wait_for(subscription.get(), timeout=1)
        assert change.type == ChangeType.INSERT
        assert change.record.id == bookmark.id
        assert change.record.url == "https://example.com"

    async def test__rollback__discards_recorded_changes(
        self,
        db_session: AsyncSession,
        feed_user: User,
        change_feed: ChangeFeed,
    ) -> None:
        """A rolled-back transaction publishes nothing."""
        subscription = change_feed.subscribe(feed_user.id)

        await create_bookmark(
            db_session, feed_user.id, BookmarkCreate(url="example.com", title="Example"),
        )
        await db_session.rollback()

        assert pending_changes(db_session) == []
        await db_session.commit()
        subscription.close()
        assert await subscription.get() is None

    async def test__commit__publishes_delete_only_when_row_removed(
        self,
        db_session: AsyncSession,
        feed_user: User,
        change_feed: ChangeFeed,
    ) -> None:
        """A delete that matched no row is silent; a real delete emits one event."""
        bookmark = await create_bookmark(
            db_session, feed_user.id, BookmarkCreate(url="example.com", title="Example"),
        )
        await db_session.commit()
        subscription = change_feed.subscribe(feed_user.id)

        await delete_bookmark(db_session, feed_user.id, uuid4())
        await db_session.commit()
        await delete_bookmark(db_session, feed_user.id, bookmark.id)
        await db_session.commit()

        change = await asyncio.wait_for(subscription.get(), timeout=1)
        assert change.type == ChangeType.DELETE
        assert change.bookmark_id == bookmark.id
        subscription.close()
        assert await subscription.get() is None

    async def test__commit__without_feed_drops_changes(
        self,
        db_session: AsyncSession,
        feed_user: User,
    ) -> None:
        """With no feed configured the commit still succeeds."""
        set_change_feed(None)
        assert get_change_feed() is None

        record_change(db_session, _inserted(feed_user.id))
        await db_session.commit()

        assert pending_changes(db_session) == []


class TestRedisFanOut:
    """Tests for cross-process delivery through Redis pub/sub."""

    @pytest.fixture
    def redis_client(self) -> MagicMock:
        """A connected RedisClient double."""
        client = MagicMock()
        client.is_connected = True
        client.publish = AsyncMock(return_value=True)
        return client

    async def test__publish__sends_envelope_on_owner_channel(
        self, redis_client: MagicMock,
    ) -> None:
        """Published events go to the owner's channel wrapped with this process's id."""
        feed = ChangeFeed(redis_client, channel_prefix="test:changes")
        owner = uuid4()
        change = _inserted(owner)

        await feed.publish(change)

        redis_client.publish.assert_awaited_once()
        channel, payload = redis_client.publish.await_args.args
        assert channel == f"test:changes:{owner}"
        envelope = FeedEnvelope.model_validate_json(payload)
        assert envelope.origin == feed.instance_id
        assert envelope.event == change

    async def test__publish_nowait__schedules_redis_publish(
        self, redis_client: MagicMock,
    ) -> None:
        """Hooks that cannot await still reach Redis; stop() flushes the pending publish."""
        feed = ChangeFeed(redis_client)
        owner = uuid4()
        subscription = feed.subscribe(owner)
        change = _inserted(owner)

        feed.publish_nowait(change)
        assert await subscription.get() == change
        await feed.stop()

        redis_client.publish.assert_awaited_once()

    async def test__remote_message__delivered_to_local_subscribers(self) -> None:
        """Events published by another process reach this process's subscribers."""
        feed = ChangeFeed()
        owner = uuid4()
        subscription = feed.subscribe(owner)
        change = _inserted(owner)

        feed.handle_remote_message(
            FeedEnvelope(origin="other-process", event=change).model_dump_json(),
        )

        assert await subscription.get() == change

    async def test__remote_message__own_echo_ignored(self) -> None:
        """A process does not deliver its own events twice."""
        feed = ChangeFeed()
        owner = uuid4()
        subscription = feed.subscribe(owner)

        feed.handle_remote_message(
            FeedEnvelope(origin=feed.instance_id, event=_inserted(owner)).model_dump_json(),
        )

        subscription.close()
        assert await subscription.get() is None

    async def test__remote_message__malformed_ignored(self) -> None:
        """Garbage on the channel is logged and skipped."""
        feed = ChangeFeed()
        subscription = feed.subscribe(uuid4())

        feed.handle_remote_message(b"not json")

        subscription.close()
        assert await subscription.get() is None

    async def test__start__without_redis_is_local(self) -> None:
        """Without a connected Redis the feed stays in-process."""
        feed = ChangeFeed()
        await feed.start()
        assert not feed.is_distributed
        await feed.stop()

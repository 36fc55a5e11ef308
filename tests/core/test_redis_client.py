"""
Tests for the Redis client module.

Note: A live Redis server is not required. These tests cover the fallback
behavior that lets the change feed keep working when Redis is disabled or
unreachable.
"""
from unittest.mock import AsyncMock, MagicMock, patch

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from core.redis import RedisClient, get_redis_client, set_redis_client


class TestRedisFallback:
    """Every operation degrades to a no-op without a connection."""

    async def test__connect__disabled_does_nothing(self) -> None:
        """A disabled client never opens a pool."""
        client = RedisClient("redis://localhost:6379", enabled=False)
        await client.connect()

        assert not client.enabled
        assert not client.is_connected
        assert await client.ping() is False
        assert await client.publish("channel", "message") is False
        assert client.pubsub() is None

    async def test__connect__unreachable_falls_back(self) -> None:
        """A failed ping leaves the client disconnected instead of raising."""
        fake_redis = MagicMock()
        fake_redis.ping = AsyncMock(side_effect=RedisConnectionError("refused"))

        with patch("core.redis.Redis", return_value=fake_redis):
            client = RedisClient("redis://localhost:6379")
            await client.connect()

        assert client.enabled
        assert not client.is_connected

    async def test__close__when_never_connected(self) -> None:
        """Closing a client that never connected is safe."""
        client = RedisClient("redis://localhost:6379", enabled=False)
        await client.close()
        assert not client.is_connected


class TestRedisConnected:
    """Behavior with a (mocked) live connection."""

    async def _connected_client(self, fake_redis: MagicMock) -> RedisClient:
        with patch("core.redis.Redis", return_value=fake_redis):
            client = RedisClient("redis://localhost:6379")
            await client.connect()
        return client

    async def test__publish__success(self) -> None:
        """Publishing returns True once the message is handed to Redis."""
        fake_redis = MagicMock()
        fake_redis.ping = AsyncMock(return_value=True)
        fake_redis.publish = AsyncMock(return_value=1)
        client = await self._connected_client(fake_redis)

        assert client.is_connected
        assert await client.publish("bookmarks:changes:abc", "{}") is True
        fake_redis.publish.assert_awaited_once_with("bookmarks:changes:abc", "{}")

    async def test__publish__failure_returns_false(self) -> None:
        """A failed PUBLISH is logged and reported, never raised."""
        fake_redis = MagicMock()
        fake_redis.ping = AsyncMock(return_value=True)
        fake_redis.publish = AsyncMock(side_effect=RedisError("gone"))
        client = await self._connected_client(fake_redis)

        assert await client.publish("channel", "message") is False

    async def test__pubsub__ignores_subscribe_confirmations(self) -> None:
        """Pub/sub objects only yield real messages."""
        fake_redis = MagicMock()
        fake_redis.ping = AsyncMock(return_value=True)
        client = await self._connected_client(fake_redis)

        client.pubsub()

        fake_redis.pubsub.assert_called_once_with(ignore_subscribe_messages=True)

    async def test__close__releases_connection(self) -> None:
        """Closing drops the connection."""
        fake_redis = MagicMock()
        fake_redis.ping = AsyncMock(return_value=True)
        fake_redis.aclose = AsyncMock()
        client = await self._connected_client(fake_redis)

        await client.close()

        fake_redis.aclose.assert_awaited_once()
        assert not client.is_connected


def test__global_client__set_and_get() -> None:
    """The process-wide client can be replaced and cleared."""
    client = RedisClient("redis://localhost:6379", enabled=False)
    set_redis_client(client)
    try:
        assert get_redis_client() is client
    finally:
        set_redis_client(None)
    assert get_redis_client() is None

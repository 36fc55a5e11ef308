"""Redis client with connection pooling and graceful fallback."""
import logging

from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class RedisClient:
    """
    Async Redis client with connection pooling and graceful fallback.

    Used to fan bookmark change events out between API processes. Every method
    degrades to a no-op when Redis is disabled or unreachable, in which case the
    change feed keeps working within a single process.
    """

    def __init__(self, url: str, enabled: bool = True, pool_size: int = 20) -> None:
        self._url = url
        self._enabled = enabled
        self._pool_size = pool_size
        self._pool: ConnectionPool | None = None
        self._client: Redis | None = None

    async def connect(self) -> None:
        """Initialize connection pool and verify connectivity."""
        if not self._enabled:
            logger.info("Redis disabled by configuration")
            return
        try:
            self._pool = ConnectionPool.from_url(self._url, max_connections=self._pool_size)
            self._client = Redis(connection_pool=self._pool)
            # Verify connection
            await self._client.ping()
            logger.info("Redis connected successfully")
        except RedisError as e:
            logger.warning("Redis connection failed: %s", e)
            self._client = None
            self._pool = None

    async def close(self) -> None:
        """Close connection pool."""
        if self._client:
            await self._client.aclose()
            self._client = None
            self._pool = None
            logger.info("Redis connection closed")

    @property
    def enabled(self) -> bool:
        """Whether Redis is enabled by configuration."""
        return self._enabled

    @property
    def is_connected(self) -> bool:
        """Check if client is connected."""
        return self._client is not None

    async def ping(self) -> bool:
        """Check Redis connectivity."""
        if not self._client:
            return False
        try:
            return await self._client.ping()
        except RedisError:
            return False

    async def publish(self, channel: str, message: str) -> bool:
        """Publish a message, returns False if Redis unavailable."""
        if not self._client:
            return False
        try:
            await self._client.publish(channel, message)
            return True
        except RedisError as e:
            logger.warning("Redis PUBLISH failed: %s", e)
            return False

    def pubsub(self) -> PubSub | None:
        """Get a PubSub object for subscribing, returns None if unavailable."""
        if not self._client:
            return None
        return self._client.pubsub(ignore_subscribe_messages=True)


# Global Redis client state using a container to avoid global statement
class _RedisState:
    """Container for global Redis client state."""

    client: RedisClient | None = None


_state = _RedisState()


def get_redis_client() -> RedisClient | None:
    """Get the global Redis client instance."""
    return _state.client


def set_redis_client(client: RedisClient | None) -> None:
    """Set the global Redis client instance."""
    _state.client = client

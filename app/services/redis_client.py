# app/services/redis_client.py
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_CONNECTIONS = 10


class FastRedisClient:
    """Pooled Redis client; helpers log failures and return a neutral value."""

    def __init__(self, url: str | None = None):
        self.url = url
        self.pool = None
        self.client = None
        self._initialized = False

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            redis_url = self.url or settings.REDIS_URL
            logger.info("Attempting Redis connection", url_preview=redis_url[:30] + "...")

            self.pool = ConnectionPool.from_url(
                redis_url,
                max_connections=MAX_CONNECTIONS,
                retry_on_timeout=True,
                socket_connect_timeout=5,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )
            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True
            logger.info("Redis client initialized", max_connections=MAX_CONNECTIONS)

        except Exception as e:
            logger.error("Failed to initialize Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self):
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()
            if not self._initialized:
                raise ConnectionError("Redis client not available")

    async def ping(self) -> bool:
        try:
            await self._ensure_initialized()
            return bool(await self.client.ping())
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def get(self, key: str) -> str | None:
        try:
            await self._ensure_initialized()
            result = await self.client.get(key)
            return result if result else None
        except Exception as e:
            logger.error("Redis GET failed", key=key[:60], error=str(e))
            return None

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        """Set value, optionally expiring; no TTL means the key is permanent."""
        try:
            await self._ensure_initialized()
            if ttl_s:
                result = await self.client.setex(key, ttl_s, value)
            else:
                result = await self.client.set(key, value)
            return bool(result)
        except Exception as e:
            logger.error("Redis SET failed", key=key[:60], error=str(e))
            return False

    async def exists(self, key: str) -> bool:
        try:
            await self._ensure_initialized()
            result = await self.client.exists(key)
            return result > 0
        except Exception as e:
            logger.error("Redis EXISTS failed", key=key[:60], error=str(e))
            return False

    async def push_to_list(self, key: str, value: str, left: bool = True) -> bool:
        """Push a value onto a Redis list used as a queue."""
        try:
            await self._ensure_initialized()
            if left:
                result = await self.client.lpush(key, value)
            else:
                result = await self.client.rpush(key, value)
            return result > 0
        except Exception as e:
            logger.error(
                "Redis LIST push failed", key=key[:60], value_preview=value[:30], error=str(e)
            )
            return False

    async def pop_to_inflight(
        self, source_key: str, inflight_key: str, timeout: int = 0
    ) -> str | None:
        """
        Pop a value from a list and push it to an in-flight list.

        The in-flight copy survives a worker crash until it is acked.

        Raises:
            Exception: Whatever the server call raised, after logging it
        """
        try:
            await self._ensure_initialized()
            if timeout > 0:
                return await self.client.brpoplpush(source_key, inflight_key, timeout=timeout)
            return await self.client.rpoplpush(source_key, inflight_key)
        except Exception as e:
            logger.error(
                "Redis LIST inflight pop failed",
                source_key=source_key[:60],
                inflight_key=inflight_key[:60],
                error=str(e),
            )
            raise

    async def requeue_inflight(self, inflight_key: str, queue_key: str) -> int:
        """Move every in-flight value back onto the queue. Returns how many moved."""
        moved = 0
        try:
            await self._ensure_initialized()
            while await self.client.rpoplpush(inflight_key, queue_key) is not None:
                moved += 1
        except Exception as e:
            logger.error(
                "Redis inflight requeue failed",
                inflight_key=inflight_key[:60],
                moved=moved,
                error=str(e),
            )
        return moved

    async def ack_from_inflight(self, inflight_key: str, value: str) -> bool:
        """Remove a processed item from the in-flight list."""
        try:
            await self._ensure_initialized()
            removed = await self.client.lrem(inflight_key, 0, value)
            return removed > 0
        except Exception as e:
            logger.error(
                "Redis inflight ack failed",
                inflight_key=inflight_key[:60],
                value_preview=value[:30],
                error=str(e),
            )
            return False


# Global instance
fast_redis = FastRedisClient()

"""Redis-backed cache store for the shared configuration map."""

import json
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import redis
from redis.exceptions import LockError, RedisError
from redis.lock import Lock

from uconfig.cache.store import CacheUnavailableError
from uconfig.logger.logger import get_logger
from uconfig.logger.types import Category, param

if TYPE_CHECKING:
    from uconfig.config.settings import RedisConfig


def connect_redis(
    config: "RedisConfig", max_retries: int = 5, initial_delay: float = 0.5
) -> redis.Redis:
    """
    Connect to Redis with retry logic.

    Args:
        config: Redis configuration with host, port, db
        max_retries: Maximum connection attempts
        initial_delay: Initial delay between retries in seconds

    Raises:
        ConnectionError: If unable to connect after max_retries
    """
    logger = get_logger().with_category(Category.CACHE)
    delay = initial_delay
    last_error: Exception | None = None

    for attempt in range(1, max_retries + 1):
        try:
            client = redis.Redis(
                host=config.host,
                port=config.port,
                db=config.db,
                password=config.password,
                decode_responses=True,
                socket_keepalive=True,
                socket_connect_timeout=5,
                retry_on_timeout=True,
            )
            client.ping()
            return client

        except RedisError as e:
            last_error = e
            if attempt < max_retries:
                logger.warn(
                    f"Redis connection attempt {attempt}/{max_retries} failed, retrying...",
                    param("host", config.host),
                    param("port", config.port),
                    param("delay", delay),
                    param("error", str(e)),
                )
                time.sleep(delay)
                delay = min(delay * 2, 10.0)

    logger.error(
        f"Failed to connect to Redis after {max_retries} attempts",
        last_error,
        param("host", config.host),
        param("port", config.port),
    )
    raise ConnectionError(
        f"Failed to connect to Redis at {config.host}:{config.port} "
        f"after {max_retries} attempts"
    )


class RedisLock:
    """CacheLock over redis-py's Lock."""

    def __init__(self, lock: Lock) -> None:
        self._lock = lock

    def acquire(self, blocking_timeout: float) -> bool:
        try:
            return bool(self._lock.acquire(blocking=True, blocking_timeout=blocking_timeout))
        except RedisError as e:
            raise CacheUnavailableError(f"Failed to acquire lock: {e}") from e

    def release(self) -> None:
        try:
            if self._lock.owned():
                self._lock.release()
        except LockError:
            # Expired while held; another owner may have it now.
            pass
        except RedisError as e:
            raise CacheUnavailableError(f"Failed to release lock: {e}") from e


class RedisCacheStore:
    """CacheStore storing JSON-encoded values in Redis."""

    def __init__(self, client: redis.Redis, prefix: str = "uconfig:") -> None:
        """
        Initialize RedisCacheStore.

        Args:
            client: Connected redis client (decode_responses=True)
            prefix: Namespace prepended to every key
        """
        self.redis = client
        self.prefix = prefix
        self.logger = get_logger().with_category(Category.CACHE)

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def get(self, key: str, default: Any = None) -> Any:
        """Return the decoded value or default."""
        try:
            raw = self.redis.get(self._key(key))
        except RedisError as e:
            raise CacheUnavailableError(f"Cache read failed for {key}: {e}") from e
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            self.logger.warn("Discarding undecodable cache value", param("key", key))
            return default

    def remember(self, key: str, ttl: int, producer: Callable[[], Any]) -> Any:
        """Return the cached value, computing and storing it for ttl seconds on a miss."""
        missing = object()
        value = self.get(key, missing)
        if value is not missing:
            return value
        value = producer()
        try:
            self.redis.set(self._key(key), json.dumps(value, default=str), ex=ttl)
        except RedisError as e:
            raise CacheUnavailableError(f"Cache write failed for {key}: {e}") from e
        return value

    def forever(self, key: str, value: Any) -> None:
        """Store a value without expiry."""
        try:
            self.redis.set(self._key(key), json.dumps(value, default=str))
        except RedisError as e:
            raise CacheUnavailableError(f"Cache write failed for {key}: {e}") from e

    def forget(self, key: str) -> None:
        """Drop a key."""
        try:
            self.redis.delete(self._key(key))
        except RedisError as e:
            raise CacheUnavailableError(f"Cache delete failed for {key}: {e}") from e

    def lock(self, name: str, timeout: float) -> RedisLock:
        """Named lock that expires after timeout seconds if never released."""
        return RedisLock(self.redis.lock(self._key(name), timeout=timeout))

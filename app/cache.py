import json
import logging
import uuid

import redis.asyncio as redis
from redis.exceptions import RedisError

from app.config import settings

logger = logging.getLogger(__name__)

ALL_TAGS_KEY = "tags:all"

# session.info key holding ids of articles whose tag rows changed in the
# session's open transaction.
PENDING_TAGS_INFO = "pending_tag_invalidations"


def article_tags_key(article_id: uuid.UUID) -> str:
    return f"articles:tags:{article_id}"


def mark_tags_dirty(session, article_id: uuid.UUID) -> None:
    """Record that *article_id*'s tags changed in *session*'s transaction."""
    session.info.setdefault(PENDING_TAGS_INFO, set()).add(article_id)


def tags_dirty(session, article_id: uuid.UUID | None = None) -> bool:
    """
    True when *session* holds uncommitted tag changes, for *article_id* or,
    when it is None, for any article.  Such reads must bypass the cache.
    """
    pending = session.info.get(PENDING_TAGS_INFO)
    if not pending:
        return False
    return article_id is None or article_id in pending


class CacheManager:
    """
    Cache-aside manager backed by Redis.

    Only viewer-independent data is cached (tag sets); favorite and follow
    annotations are always read from the database.  Every public method is
    safe to call while Redis is unavailable: reads miss, writes are skipped.
    """

    def __init__(self) -> None:
        self._redis: redis.Redis | None = None
        self._hits: int = 0
        self._misses: int = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self, url: str | None = None) -> None:
        """Open the connection pool.  Called once at application startup."""
        url = url or settings.REDIS_URL
        self._redis = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        try:
            await self._redis.ping()
            logger.info("Redis connected: %s", url)
        except RedisError as exc:  # pragma: no cover
            logger.warning("Redis ping failed, cache disabled: %s", exc)
            await self._redis.aclose()
            self._redis = None

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    # ------------------------------------------------------------------
    # Core cache operations
    # ------------------------------------------------------------------

    async def get(self, key: str) -> dict | list | None:
        """Return the cached value for *key*, or None on a miss / error."""
        if not self._redis:
            self._misses += 1
            return None
        try:
            data = await self._redis.get(key)
        except RedisError as exc:
            logger.debug("Cache GET error for key=%r: %s", key, exc)
            self._misses += 1
            return None
        if data is None:
            self._misses += 1
            return None
        self._hits += 1
        return json.loads(data)

    async def set(self, key: str, value: dict | list, ttl: int | None = None) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, json.dumps(value, default=str), ex=ttl)
        except RedisError as exc:
            logger.debug("Cache SET error for key=%r: %s", key, exc)

    async def delete(self, *keys: str) -> None:
        if not self._redis or not keys:
            return
        try:
            await self._redis.delete(*keys)
            logger.debug("Cache invalidated %s", ", ".join(keys))
        except RedisError as exc:
            logger.debug("Cache DELETE error for keys=%r: %s", keys, exc)

    # ------------------------------------------------------------------
    # Domain-level invalidation
    # ------------------------------------------------------------------

    async def invalidate_committed(self, session) -> None:
        """
        Drop cached tag data for every article whose tags *session* changed.
        Called after the session's transaction has committed.
        """
        pending = session.info.pop(PENDING_TAGS_INFO, None)
        if pending:
            keys = [article_tags_key(article_id) for article_id in pending]
            await self.delete(*keys, ALL_TAGS_KEY)

    @staticmethod
    def discard_pending(session) -> None:
        session.info.pop(PENDING_TAGS_INFO, None)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    @property
    def stats(self) -> dict:
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total * 100, 1) if total > 0 else 0.0,
        }


# Module-level singleton shared across all request handlers.
cache = CacheManager()

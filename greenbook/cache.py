import json
import logging

import redis.asyncio as redis
from redis.exceptions import RedisError

from greenbook.config import settings

logger = logging.getLogger(__name__)

ARTICLE_LIST_PATTERN = "articles:list:*"


def article_list_key(page: int, page_size: int, sort_by: str, sort_order: str) -> str:
    return f"articles:list:{page}:{page_size}:{sort_by}:{sort_order}"


def article_detail_key(article_id: int) -> str:
    return f"articles:detail:{article_id}"


class FastStoreError(Exception):
    """Raised when an atomic toggle primitive cannot reach Redis."""


class CacheManager:
    """
    Redis-backed cache and fast toggle store.

    Two families of operations live here:

    - Cache-aside helpers (``get``, ``set``, ``delete_pattern``,
      ``invalidate_article``) never raise.  Without Redis a read is a
      miss and a write is skipped, so article pages fall back to SQL.
    - Toggle primitives (``set_if_absent``, ``delete``, ``incr``,
      ``decr``, ``get_counter``, ``reset_toggle_state``) are the mutual
      exclusion device for likes and favorites.  They never pretend to
      succeed: any failure is raised as ``FastStoreError``.
    """

    def __init__(self) -> None:
        self._redis: redis.Redis | None = None
        self._hits = 0
        self._misses = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self, url: str | None = None) -> None:
        """Create the client; an unreachable server is logged, not fatal."""
        url = url or settings.REDIS_URL
        self._redis = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        if await self.ping():
            logger.info("Redis connected: %s", url)
        else:
            logger.warning("Redis at %s not answering; toggles fail until it recovers", url)

    async def disconnect(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def ping(self) -> bool:
        if self._redis is None:
            return False
        try:
            return bool(await self._redis.ping())
        except RedisError:
            return False

    # ------------------------------------------------------------------
    # Cache-aside operations
    # ------------------------------------------------------------------

    async def get(self, key: str) -> dict | list | None:
        """Decoded JSON stored under *key*; None on a miss or any Redis error."""
        raw = None
        if self._redis is not None:
            try:
                raw = await self._redis.get(key)
            except RedisError as exc:
                logger.debug("Cache GET %r failed: %s", key, exc)
        if raw is None:
            self._misses += 1
            return None
        try:
            value = json.loads(raw)
        except ValueError:
            logger.debug("Cache entry %r is not valid JSON; treating as a miss", key)
            self._misses += 1
            return None
        self._hits += 1
        return value

    async def set(self, key: str, value: dict | list, ttl: int | None = None) -> None:
        """Store *value* as JSON; datetimes go through ``str``.  Failures are logged only."""
        if self._redis is None:
            return
        try:
            await self._redis.set(key, json.dumps(value, default=str), ex=ttl)
        except (RedisError, TypeError) as exc:
            logger.debug("Cache SET %r failed: %s", key, exc)

    async def _drop(self, *keys: str) -> None:
        if self._redis is None or not keys:
            return
        try:
            await self._redis.delete(*keys)
        except RedisError as exc:
            logger.debug("Cache DEL %r failed: %s", keys, exc)

    async def delete_pattern(self, pattern: str) -> None:
        """Drop every key matching *pattern*, found with SCAN rather than KEYS."""
        if self._redis is None:
            return
        try:
            keys = [key async for key in self._redis.scan_iter(match=pattern)]
        except RedisError as exc:
            logger.debug("Cache SCAN %r failed: %s", pattern, exc)
            return
        await self._drop(*keys)
        if keys:
            logger.debug("Cache dropped %d key(s) matching %r", len(keys), pattern)

    async def invalidate_article(self, article_id: int | None = None) -> None:
        """
        Drop cached article lists and, given *article_id*, that article's
        detail entry.

        Called after article writes, comment writes and every persisted
        toggle, since list and detail views both show the counters.
        """
        await self.delete_pattern(ARTICLE_LIST_PATTERN)
        if article_id is not None:
            await self._drop(article_detail_key(article_id))

    # ------------------------------------------------------------------
    # Toggle primitives
    # ------------------------------------------------------------------

    def _client(self) -> redis.Redis:
        if self._redis is None:
            raise FastStoreError("Redis is not connected")
        return self._redis

    async def set_if_absent(self, key: str, ttl: int | None = None) -> bool:
        """``SET key 1 NX``; True only when this call created the key."""
        try:
            created = await self._client().set(key, "1", nx=True, ex=ttl)
        except RedisError as exc:
            raise FastStoreError(f"SET NX failed for {key!r}") from exc
        return bool(created)

    async def delete(self, key: str) -> bool:
        """``DEL key``; True only when a key was actually removed."""
        try:
            removed = await self._client().delete(key)
        except RedisError as exc:
            raise FastStoreError(f"DEL failed for {key!r}") from exc
        return removed > 0

    async def incr(self, key: str) -> int:
        try:
            return await self._client().incr(key)
        except RedisError as exc:
            raise FastStoreError(f"INCR failed for {key!r}") from exc

    async def decr(self, key: str) -> int:
        try:
            return await self._client().decr(key)
        except RedisError as exc:
            raise FastStoreError(f"DECR failed for {key!r}") from exc

    async def get_counter(self, key: str) -> int | None:
        try:
            value = await self._client().get(key)
        except RedisError as exc:
            raise FastStoreError(f"GET failed for {key!r}") from exc
        return int(value) if value is not None else None

    async def reset_toggle_state(
        self,
        flag_pattern: str,
        flag_keys: list[str],
        counter_key: str,
        count: int,
    ) -> None:
        """
        Replace every flag matching *flag_pattern* with *flag_keys* and
        overwrite *counter_key* with *count*.

        Used by reconciliation only.  The writes go out in one MULTI/EXEC
        pipeline once the stale flags have been collected via SCAN.
        """
        client = self._client()
        try:
            stale = [key async for key in client.scan_iter(match=flag_pattern)]
            async with client.pipeline(transaction=True) as pipe:
                if stale:
                    pipe.delete(*stale)
                for key in flag_keys:
                    pipe.set(key, "1")
                pipe.set(counter_key, count)
                await pipe.execute()
        except RedisError as exc:
            raise FastStoreError(f"Rebuild failed for {flag_pattern!r}") from exc

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    @property
    def stats(self) -> dict:
        """Hit/miss counters for the metrics endpoint."""
        lookups = self._hits + self._misses
        return {
            "connected": self._redis is not None,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / lookups * 100, 1) if lookups else 0.0,
        }


cache = CacheManager()

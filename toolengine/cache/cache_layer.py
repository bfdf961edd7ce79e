"""
Response Cache — TTL cache of successful tool execution results.

Keyed by (tenant, tool, sha256 of the canonical JSON input); tenant and tool ids are
percent-encoded so they never contain the key separator or a SCAN glob character. Two tiers: an
in-memory L1 per process and, when REDIS_URL is configured, a Redis L2 shared
across replicas. Entries are evicted by TTL or by a ToolMutated event for the tool.
"""

import hashlib
import json
import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote, unquote

from toolengine.config.settings import settings
from toolengine.tool_builder.events import ToolMutated

logger = logging.getLogger(__name__)

REDIS_PREFIX = "toolengine:cache:"

_GLOB_META = re.compile(r"([*?\[\]\\])")


def key_segment(value: str) -> str:
    return quote(str(value), safe="")


def escape_glob(text: str) -> str:
    """Escape Redis MATCH metacharacters so `text` matches only itself."""
    return _GLOB_META.sub(r"\\\1", text)


def fingerprint(payload: Any) -> str:
    """sha256 of the input serialized with sorted keys and no whitespace."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class CachedResponse:
    value: Any
    expires_at: float  # time.monotonic() deadline

    def alive(self, now: float) -> bool:
        return now < self.expires_at


class RedisTier:
    """Shared L2. Every operation degrades to a miss/no-op when Redis misbehaves."""

    def __init__(self, url: str):
        self.url = url
        self._client = None

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def open(self) -> bool:
        import redis.asyncio as aioredis
        client = aioredis.from_url(self.url, decode_responses=True,
                                   socket_connect_timeout=3, socket_timeout=3)
        try:
            await client.ping()
        except Exception as e:
            logger.warning(f"[CACHE] Redis at {self.url.split('@')[-1]} unreachable ({e}); response cache is memory-only")
            await client.aclose()
            return False
        self._client = client
        logger.info("[CACHE] Redis L2 response cache connected")
        return True

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            try:
                await client.aclose()
            except Exception as e:
                logger.debug(f"[CACHE] Redis close failed: {e}")

    async def read(self, key: str) -> Optional[Tuple[Any, int]]:
        """(value, seconds left) or None."""
        if self._client is None:
            return None
        try:
            async with self._client.pipeline(transaction=False) as pipe:
                raw, ttl = await pipe.get(REDIS_PREFIX + key).ttl(REDIS_PREFIX + key).execute()
        except Exception as e:
            logger.debug(f"[CACHE] Redis read of {key} failed: {e}")
            return None
        return (json.loads(raw), ttl) if raw else None

    async def write(self, key: str, value: Any, ttl: int) -> None:
        if self._client is None:
            return
        try:
            await self._client.setex(REDIS_PREFIX + key, ttl, json.dumps(value, default=str))
        except Exception as e:
            logger.debug(f"[CACHE] Redis write of {key} failed: {e}")

    async def drop_prefix(self, prefix: str) -> int:
        if self._client is None:
            return 0
        removed = 0
        try:
            batch = []
            async for key in self._client.scan_iter(match=escape_glob(REDIS_PREFIX + prefix) + "*", count=200):
                batch.append(key)
                if len(batch) >= 200:
                    removed += await self._client.delete(*batch)
                    batch = []
            if batch:
                removed += await self._client.delete(*batch)
        except Exception as e:
            logger.warning(f"[CACHE] Redis eviction of '{prefix}*' incomplete: {e}")
        return removed


class ResponseCache:
    """
    Two-tier cache of execution results.

    Usage:
        cache = ResponseCache(redis_url="redis://localhost:6379/0")
        await cache.connect()

        await cache.set("acme", "weather-tool", {"location": "Paris"}, result, ttl=300)
        cached = await cache.get("acme", "weather-tool", {"location": "Paris"})
    """

    def __init__(self, redis_url: Optional[str] = None,
                 max_memory_entries: Optional[int] = None,
                 default_ttl: Optional[int] = None):
        self._l2 = RedisTier(redis_url) if redis_url else None
        self._capacity = max_memory_entries or settings.response_cache_max_entries
        self._default_ttl = default_ttl or settings.response_cache_default_ttl
        self._memory: "OrderedDict[str, CachedResponse]" = OrderedDict()
        self._stats = {"hits": 0, "misses": 0, "redis_hits": 0}

    async def connect(self) -> bool:
        """Attach the Redis tier. Returns False when running memory-only."""
        if self._l2 is None:
            return False
        return await self._l2.open()

    async def disconnect(self) -> None:
        if self._l2 is not None:
            await self._l2.close()

    @staticmethod
    def cache_key(tenant_id: str, tool_id: str, payload: Any) -> str:
        return f"tool:{key_segment(tenant_id)}:{key_segment(tool_id)}:{fingerprint(payload)}"

    # ── Lookup / store ───────────────────────────────────────────

    def _remember(self, key: str, value: Any, ttl: float) -> None:
        self._memory[key] = CachedResponse(value, time.monotonic() + ttl)
        self._memory.move_to_end(key)
        self._trim()

    async def get(self, tenant_id: str, tool_id: str, payload: Any) -> Optional[Any]:
        """Cached value for this input, memory first, then Redis."""
        key = self.cache_key(tenant_id, tool_id, payload)

        entry = self._memory.get(key)
        if entry is not None:
            if entry.alive(time.monotonic()):
                self._stats["hits"] += 1
                logger.debug(f"[CACHE] hit {tenant_id}/{tool_id}")
                return entry.value
            del self._memory[key]

        found = await self._l2.read(key) if self._l2 is not None else None
        if found is None:
            self._stats["misses"] += 1
            return None

        value, seconds_left = found
        self._remember(key, value, seconds_left if seconds_left > 0 else self._default_ttl)
        self._stats["hits"] += 1
        self._stats["redis_hits"] += 1
        logger.debug(f"[CACHE] Redis hit {tenant_id}/{tool_id}")
        return value

    async def set(self, tenant_id: str, tool_id: str, payload: Any, value: Any,
                  ttl: Optional[int] = None) -> None:
        ttl = ttl or self._default_ttl
        key = self.cache_key(tenant_id, tool_id, payload)
        self._remember(key, value, ttl)
        if self._l2 is not None:
            await self._l2.write(key, value, ttl)

    def _trim(self) -> None:
        """Drop dead entries, then the least recently stored ones beyond capacity."""
        now = time.monotonic()
        for key in [k for k, e in self._memory.items() if not e.alive(now)]:
            del self._memory[key]
        while len(self._memory) > self._capacity:
            self._memory.popitem(last=False)

    # ── Invalidation ─────────────────────────────────────────────

    async def _drop(self, prefix: str) -> int:
        doomed = [k for k in self._memory if k.startswith(prefix)]
        for key in doomed:
            del self._memory[key]
        remote = await self._l2.drop_prefix(prefix) if self._l2 is not None else 0
        return max(len(doomed), remote)

    async def invalidate_tool(self, tenant_id: str, tool_id: str) -> int:
        """Drop every cached response of one tool."""
        count = await self._drop(f"tool:{key_segment(tenant_id)}:{key_segment(tool_id)}:")
        logger.info(f"[CACHE] Invalidated {count} response(s) for {tenant_id}/{tool_id}")
        return count

    async def invalidate_tenant(self, tenant_id: str) -> int:
        count = await self._drop(f"tool:{key_segment(tenant_id)}:")
        logger.info(f"[CACHE] Invalidated {count} response(s) for tenant '{tenant_id}'")
        return count

    async def invalidate_all(self) -> int:
        return await self._drop("tool:")

    async def on_tool_mutated(self, event: ToolMutated) -> None:
        await self.invalidate_tool(event.tenant_id, event.tool_id)

    # ── Stats ────────────────────────────────────────────────────

    def get_stats(self) -> Dict[str, Any]:
        lookups = self._stats["hits"] + self._stats["misses"]
        return {
            **self._stats,
            "l1_entries": len(self._memory),
            "l2_connected": self._l2 is not None and self._l2.connected,
            "hit_rate": round(self._stats["hits"] / lookups, 4) if lookups else 0.0,
            "tenants": sorted({unquote(k.split(":")[1]) for k in self._memory}),
        }

"""
Response cache tests (L1 only; Redis is not configured in the test environment).
Run: pytest tests/test_response_cache.py -v
"""
import re

import pytest

from toolengine.cache import cache_layer
from toolengine.cache.cache_layer import REDIS_PREFIX, ResponseCache, escape_glob, fingerprint
from toolengine.tool_builder.events import ToolMutated


@pytest.fixture
def cache():
    return ResponseCache(max_memory_entries=3, default_ttl=60)


class TestKeys:

    def test_fingerprint_ignores_key_order(self):
        assert fingerprint({"a": 1, "b": [1, 2]}) == fingerprint({"b": [1, 2], "a": 1})
        assert fingerprint({"a": 1}) != fingerprint({"a": 2})
        assert len(fingerprint(None)) == 64

    def test_cache_key_layout(self):
        key = ResponseCache.cache_key("acme", "weather-tool", {"location": "Paris"})
        tenant, tool, fp = key.split(":")[1:]
        assert key.startswith("tool:")
        assert (tenant, tool) == ("acme", "weather-tool")
        assert fp == fingerprint({"location": "Paris"})


class TestGetSet:

    @pytest.mark.asyncio
    async def test_set_then_get(self, cache):
        assert await cache.get("acme", "t1", {"q": 1}) is None
        await cache.set("acme", "t1", {"q": 1}, {"output": 42})
        assert await cache.get("acme", "t1", {"q": 1}) == {"output": 42}
        assert await cache.get("acme", "t1", {"q": 2}) is None
        assert await cache.get("globex", "t1", {"q": 1}) is None

        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 3
        assert stats["l2_connected"] is False
        assert stats["tenants"] == ["acme"]

    @pytest.mark.asyncio
    async def test_entry_expires_after_ttl(self, cache):
        await cache.set("acme", "t1", {"q": 1}, "value", ttl=10)
        assert await cache.get("acme", "t1", {"q": 1}) == "value"

        entry = cache._memory[ResponseCache.cache_key("acme", "t1", {"q": 1})]
        assert 9 < entry.expires_at - cache_layer.time.monotonic() <= 10
        entry.expires_at -= 11
        assert await cache.get("acme", "t1", {"q": 1}) is None
        assert cache.get_stats()["l1_entries"] == 0

    @pytest.mark.asyncio
    async def test_oldest_evicted_over_capacity(self, cache):
        for i in range(4):
            await cache.set("acme", "t1", {"q": i}, i, ttl=60 + i)
        assert cache.get_stats()["l1_entries"] == 3
        assert await cache.get("acme", "t1", {"q": 0}) is None
        assert await cache.get("acme", "t1", {"q": 3}) == 3

    @pytest.mark.asyncio
    async def test_connect_without_url_is_l1_only(self, cache):
        assert await cache.connect() is False
        await cache.disconnect()


class TestInvalidation:

    @pytest.mark.asyncio
    async def test_invalidate_tool(self, cache):
        await cache.set("acme", "t1", {"q": 1}, "a")
        await cache.set("acme", "t10", {"q": 1}, "b")
        await cache.set("globex", "t1", {"q": 1}, "c")

        assert await cache.invalidate_tool("acme", "t1") == 1
        assert await cache.get("acme", "t1", {"q": 1}) is None
        assert await cache.get("acme", "t10", {"q": 1}) == "b"
        assert await cache.get("globex", "t1", {"q": 1}) == "c"

    @pytest.mark.asyncio
    async def test_invalidate_tenant(self, cache):
        await cache.set("acme", "t1", {"q": 1}, "a")
        await cache.set("acme", "t2", {"q": 1}, "b")
        await cache.set("globex", "t1", {"q": 1}, "c")
        assert await cache.invalidate_tenant("acme") == 2
        assert await cache.get("globex", "t1", {"q": 1}) == "c"

    @pytest.mark.asyncio
    async def test_mutation_event_evicts_tool(self, cache, events):
        events.subscribe(cache.on_tool_mutated)
        await cache.set("acme", "t1", {"q": 1}, "a")
        await events.publish(ToolMutated("acme", "t1", "deleted"))
        assert await cache.get("acme", "t1", {"q": 1}) is None

    @pytest.mark.asyncio
    async def test_invalidate_all(self, cache):
        await cache.set("acme", "t1", {"q": 1}, "a")
        await cache.set("globex", "t1", {"q": 1}, "b")
        assert await cache.invalidate_all() == 2
        assert cache.get_stats()["l1_entries"] == 0


# ══════════════════════════════════════════════════════════════════
# REDIS TIER (in-process stand-in for the redis.asyncio client)
# ══════════════════════════════════════════════════════════════════


def redis_glob(pattern):
    """Compile a Redis MATCH pattern: * ? [...] and backslash escapes."""
    out, i = [], 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\" and i + 1 < len(pattern):
            out.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if ch == "*":
            out.append(".*")
        elif ch == "?":
            out.append(".")
        elif ch == "[":
            end = pattern.index("]", i + 1)
            out.append("[" + pattern[i + 1:end] + "]")
            i = end
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("".join(out) + r"\Z", re.DOTALL)


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def get(self, key):
        self.ops.append(("get", key))
        return self

    def ttl(self, key):
        self.ops.append(("ttl", key))
        return self

    async def execute(self):
        data = self.redis.data
        return [data.get(k) if op == "get" else (60 if k in data else -2) for op, k in self.ops]


class FakeRedis:
    def __init__(self):
        self.data = {}

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def setex(self, key, ttl, value):
        self.data[key] = value

    async def delete(self, *keys):
        return sum(1 for k in keys if self.data.pop(k, None) is not None)

    async def scan_iter(self, match=None, count=None):
        compiled = redis_glob(match)
        for key in list(self.data):
            if compiled.match(key):
                yield key


@pytest.fixture
def shared_cache():
    cache = ResponseCache(redis_url="redis://cache.internal:6379/0", default_ttl=60)
    cache._l2._client = FakeRedis()
    return cache


def remote_tools(cache):
    return sorted(k[len(REDIS_PREFIX):].rsplit(":", 1)[0] for k in cache._l2._client.data)


class TestRedisTier:

    def test_escape_glob(self):
        assert escape_glob("a[1]*?\\b") == "a\\[1\\]\\*\\?\\\\b"
        assert redis_glob(escape_glob("weather[1]") + "*").match("weather[1]:x")
        assert not redis_glob(escape_glob("weather[1]") + "*").match("weather1:x")

    def test_ids_are_encoded_in_key(self):
        key = ResponseCache.cache_key("acme:eu", "weather[1]*", {"q": 1})
        assert key.split(":")[1:3] == ["acme%3Aeu", "weather%5B1%5D%2A"]

    @pytest.mark.asyncio
    async def test_tool_with_glob_characters_evicted_from_redis(self, shared_cache):
        await shared_cache.set("acme", "weather[1]", {"q": 1}, "old")
        await shared_cache.set("acme", "weather1", {"q": 1}, "other")

        await shared_cache.invalidate_tool("acme", "weather[1]")
        assert remote_tools(shared_cache) == ["tool:acme:weather1"]

        shared_cache._memory.clear()
        assert await shared_cache.get("acme", "weather[1]", {"q": 1}) is None
        assert await shared_cache.get("acme", "weather1", {"q": 1}) == "other"
        assert shared_cache.get_stats()["redis_hits"] == 1

    @pytest.mark.asyncio
    async def test_colon_in_tenant_does_not_overmatch(self, shared_cache):
        await shared_cache.set("acme", "t1", {"q": 1}, "a")
        await shared_cache.set("acme:eu", "t1", {"q": 1}, "b")
        await shared_cache.set("acme", "t1:v2", {"q": 1}, "c")

        await shared_cache.invalidate_tool("acme", "t1")
        assert remote_tools(shared_cache) == ["tool:acme%3Aeu:t1", "tool:acme:t1%3Av2"]

        await shared_cache.invalidate_tenant("acme")
        assert remote_tools(shared_cache) == ["tool:acme%3Aeu:t1"]
        assert await shared_cache.get("acme:eu", "t1", {"q": 1}) == "b"
        assert shared_cache.get_stats()["tenants"] == ["acme:eu"]

"""
Shared fixtures for the tool engine test suite.
Outbound HTTP is served by httpx.MockTransport; nothing leaves the process.
"""
import copy
import inspect
import os
import sys

import pytest
import pytest_asyncio

# Ensure project root is on sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

# Set env vars before any imports that read them
os.environ["ENVIRONMENT"] = "dev"
os.environ["USE_DATABASE"] = "false"
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///test.db")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-passphrase")
os.environ.pop("REDIS_URL", None)

import httpx  # noqa: E402


WEATHER_TOOL = {
    "id": "weather-tool",
    "name": "Weather",
    "description": "Current weather for a location",
    "apiEndpoint": "https://api.example/weather",
    "method": "GET",
    "inputSchema": {
        "type": "object",
        "properties": {"location": {"type": "string"}},
        "required": ["location"],
    },
    "outputSchema": {
        "type": "object",
        "properties": {
            "location": {"type": "string"},
            "temperature": {"type": "number"},
        },
        "required": ["location", "temperature"],
    },
    "validation": {"enabled": True},
    "retries": 0,
}


def make_tool(**overrides):
    """Weather tool record with camelCase overrides applied."""
    record = copy.deepcopy(WEATHER_TOOL)
    record.update(overrides)
    return record


class MockAPI:
    """
    Callable handler for httpx.MockTransport.
    Queued items are consumed in order: an httpx.Response, an exception to raise,
    or a (sync or async) callable taking the request. When the queue is empty,
    `default` answers.
    """

    def __init__(self):
        self.requests = []
        self._queue = []
        self.default = lambda request: httpx.Response(
            200, json={"location": "Paris", "temperature": 18.5}
        )

    def queue(self, *items):
        self._queue.extend(items)
        return self

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self._queue.pop(0) if self._queue else self.default
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, httpx.Response):
            return item
        result = item(request)
        if inspect.isawaitable(result):
            result = await result
        return result

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


@pytest.fixture
def mock_api():
    return MockAPI()


@pytest.fixture
def store():
    """Fresh in-memory Tool Definition Store."""
    from toolengine.db.store import InMemoryToolStore
    return InMemoryToolStore()


@pytest_asyncio.fixture
async def executor(mock_api):
    """RequestExecutor wired to the mock API with millisecond backoff."""
    from toolengine.tool_builder.executor import RequestExecutor
    ex = RequestExecutor(transport=httpx.MockTransport(mock_api), backoff_base_ms=1, backoff_max_ms=5)
    yield ex
    await ex.aclose()


@pytest.fixture
def events():
    from toolengine.tool_builder.events import ToolEventBus
    return ToolEventBus()


@pytest.fixture
def registry(store, executor, events):
    """Uninitialized ToolRegistry for tenant 'acme'."""
    from toolengine.tool_builder.tool_registry import ToolRegistry
    return ToolRegistry("acme", store, executor, events)


@pytest.fixture
def service(store, executor):
    """ToolService over the in-memory store and mock API."""
    from toolengine.cache.cache_layer import ResponseCache
    from toolengine.tool_builder.service import ToolService
    return ToolService(store=store, executor=executor, response_cache=ResponseCache())

"""
Request executor tests: request building, auth, body encoding, retries,
timeouts and response validation. All traffic goes to httpx.MockTransport.
Run: pytest tests/test_executor.py -v
"""
import asyncio
import base64
import json
import time
from urllib.parse import parse_qsl

import httpx
import pytest

from tests.conftest import make_tool
from toolengine.tool_builder.executor import (
    RequestExecutor,
    apply_body_transform,
    encode_body,
    flatten_form,
    parse_retry_after,
)
from toolengine.tool_builder.models import BodyFormat, RateLimitPolicy
from toolengine.tool_builder.rate_limit import LimiterPool, SlidingWindowLimiter
from toolengine.tool_builder.tool_registry import ToolInstance
from toolengine.tool_builder.validation import validate_definition
from toolengine.utils.redact import REDACTED


def build(executor, **overrides) -> ToolInstance:
    return ToolInstance("acme", validate_definition(make_tool(**overrides)), executor)


def post_tool(executor, **overrides) -> ToolInstance:
    fields = {"method": "POST", "apiEndpoint": "https://api.example/items",
              "inputSchema": None, "outputSchema": None, "validation": {"enabled": False}}
    fields.update(overrides)
    return build(executor, **fields)


# ══════════════════════════════════════════════════════════════════
# HAPPY PATH
# ══════════════════════════════════════════════════════════════════


class TestExecute:

    @pytest.mark.asyncio
    async def test_weather_get_sends_query_and_validates_output(self, executor, mock_api):
        result = await build(executor).execute({"location": "Paris"})

        assert result.success
        assert result.attempts == 1
        assert result.status_code == 200
        assert result.output == {"location": "Paris", "temperature": 18.5}
        assert result.validation_error is None
        assert result.duration_ms >= 0

        req = mock_api.last
        assert req.method == "GET"
        assert req.url.host == "api.example"
        assert req.url.params["location"] == "Paris"
        assert req.content == b""
        assert "content-type" not in req.headers

    @pytest.mark.asyncio
    async def test_result_serializes_to_wire_form(self, executor):
        result = await build(executor).execute({"location": "Paris"})
        wire = result.model_dump(mode="json", by_alias=True)
        assert wire["toolId"] == "weather-tool"
        assert wire["success"] is True
        assert wire["cacheHit"] is False
        assert "durationMs" in wire

    @pytest.mark.asyncio
    async def test_url_placeholders_filled_and_consumed(self, executor, mock_api):
        instance = build(
            executor,
            apiEndpoint="https://api.example/users/{user_id}/posts",
            inputSchema=None, outputSchema=None, validation={"enabled": False},
        )
        await instance.execute({"user_id": "a b", "limit": 5, "ids": [1, 2]})

        req = mock_api.last
        assert "/users/a%20b/posts" in str(req.url)
        assert "user_id" not in req.url.params
        assert req.url.params["limit"] == "5"
        assert req.url.params.get_list("ids") == ["1", "2"]

    @pytest.mark.asyncio
    async def test_static_headers_sent(self, executor, mock_api):
        await build(executor, headers={"X-Client": "engine"}).execute({"location": "Oslo"})
        assert mock_api.last.headers["x-client"] == "engine"


# ══════════════════════════════════════════════════════════════════
# AUTHENTICATION
# ══════════════════════════════════════════════════════════════════


class TestAuthInjection:

    @pytest.mark.asyncio
    async def test_bearer(self, executor, mock_api):
        await build(executor, authentication={"type": "bearer", "config": {"token": "tok-1"}}).execute(
            {"location": "Paris"})
        assert mock_api.last.headers["authorization"] == "Bearer tok-1"

    @pytest.mark.asyncio
    async def test_basic(self, executor, mock_api):
        await build(executor, authentication={
            "type": "basic", "config": {"username": "ann", "password": "s3cret"},
        }).execute({"location": "Paris"})
        expected = base64.b64encode(b"ann:s3cret").decode()
        assert mock_api.last.headers["authorization"] == f"Basic {expected}"

    @pytest.mark.asyncio
    async def test_api_key_header_default_name(self, executor, mock_api):
        await build(executor, authentication={"type": "api_key", "config": {"value": "k-1"}}).execute(
            {"location": "Paris"})
        assert mock_api.last.headers["x-api-key"] == "k-1"

    @pytest.mark.asyncio
    async def test_api_key_query(self, executor, mock_api):
        await build(executor, authentication={
            "type": "api_key", "config": {"in": "query", "name": "appid", "value": "k-2"},
        }).execute({"location": "Paris"})
        assert mock_api.last.url.params["appid"] == "k-2"
        assert mock_api.last.url.params["location"] == "Paris"

    def test_log_view_masks_credentials(self):
        definition = validate_definition(make_tool(
            headers={"Authorization": "Bearer raw"},
            authentication={"type": "api_key", "config": {"in": "query", "name": "appid", "value": "k-3"}},
        ))
        view = RequestExecutor().build_request(definition, {"location": "Paris"}).log_view()
        assert view["headers"]["Authorization"] == REDACTED
        assert view["params"]["appid"] == REDACTED
        assert view["params"]["location"] == "Paris"
        assert "k-3" not in json.dumps(view)


# ══════════════════════════════════════════════════════════════════
# BODY ENCODING
# ══════════════════════════════════════════════════════════════════


class TestBodies:

    @pytest.mark.asyncio
    async def test_json_body(self, executor, mock_api):
        await post_tool(executor).execute({"name": "widget", "qty": 2})
        req = mock_api.last
        assert req.method == "POST"
        assert req.headers["content-type"] == "application/json"
        assert json.loads(req.content) == {"name": "widget", "qty": 2}

    @pytest.mark.asyncio
    async def test_form_body_flattens_nested_values(self, executor, mock_api):
        await post_tool(executor, bodyFormat="form").execute(
            {"user": {"name": "Ann", "tags": ["a", "b"]}, "skip": None, "active": True})
        req = mock_api.last
        assert req.headers["content-type"] == "application/x-www-form-urlencoded"
        assert parse_qsl(req.content.decode()) == [
            ("user[name]", "Ann"), ("user[tags][0]", "a"), ("user[tags][1]", "b"), ("active", "true"),
        ]

    @pytest.mark.asyncio
    async def test_text_body_picks_text_field(self, executor, mock_api):
        await post_tool(executor, bodyFormat="text").execute({"message": "hello there", "n": 1})
        assert mock_api.last.content == b"hello there"
        assert mock_api.last.headers["content-type"] == "text/plain"

    @pytest.mark.asyncio
    async def test_xml_body_escapes_values(self, executor, mock_api):
        await post_tool(executor, bodyFormat="xml").execute({"city": "A & B", "n": 2})
        body = mock_api.last.content.decode()
        assert "<city>A &amp; B</city>" in body
        assert "<n>2</n>" in body
        assert mock_api.last.headers["content-type"] == "application/xml"

    @pytest.mark.asyncio
    async def test_explicit_content_type_overrides_header(self, executor, mock_api):
        await post_tool(
            executor, contentType="application/vnd.api+json", headers={"content-type": "text/plain"},
        ).execute({"a": 1})
        assert mock_api.last.headers.get_list("content-type") == ["application/vnd.api+json"]

    @pytest.mark.asyncio
    async def test_body_transform_structure(self, executor, mock_api):
        await post_tool(executor, metadata={
            "bodyTransform": {"structure": {"contents": [{"parts": [{"text": "{{text}}"}]}]}},
        }).execute({"text": "hello"})
        assert json.loads(mock_api.last.content) == {"contents": [{"parts": [{"text": "hello"}]}]}

    def test_encode_body_edge_cases(self):
        assert encode_body(BodyFormat.JSON, None) is None
        assert encode_body(BodyFormat.JSON, {}) == "{}"
        assert encode_body(BodyFormat.FORM, {}) is None
        assert encode_body(BodyFormat.TEXT, {"only": "value"}) == "value"
        assert encode_body(BodyFormat.TEXT, {"a": 1, "b": 2}) == '{"a": 1, "b": 2}'

    def test_flatten_form_top_level_list(self):
        assert flatten_form([{"a": 1}, "x"], "items") == [("items[0][a]", "1"), ("items[1]", "x")]

    def test_field_mapping_and_template_transforms(self):
        assert apply_body_transform({"q": "cats", "extra": 1}, {"fieldMapping": {"q": "query"}}) == {"query": "cats"}
        rendered = apply_body_transform({"q": "cats"}, {"template": '{"search": "{{q}}", "page": 1}'})
        assert rendered == {"search": "cats", "page": 1}


# ══════════════════════════════════════════════════════════════════
# RETRIES AND TIMEOUTS
# ══════════════════════════════════════════════════════════════════


class TestRetries:

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, executor, mock_api):
        mock_api.queue(httpx.Response(503), httpx.Response(503))
        result = await build(executor, retries=2).execute({"location": "Paris"})
        assert result.success
        assert result.attempts == 3
        assert len(mock_api.requests) == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted_reports_remote_error(self, executor, mock_api):
        mock_api.queue(httpx.Response(503), httpx.Response(503))
        result = await build(executor, retries=1).execute({"location": "Paris"})
        assert not result.success
        assert result.attempts == 2
        assert result.status_code == 503
        assert result.error.type == "remote"
        assert result.error.status_code == 503

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, executor, mock_api):
        mock_api.queue(httpx.Response(404, json={"error": "no such city"}))
        result = await build(executor, retries=3).execute({"location": "Atlantis"})
        assert result.attempts == 1
        assert len(mock_api.requests) == 1
        assert result.error.type == "remote"
        assert result.error.details["body"] == {"error": "no such city"}
        assert "Not Found" in result.error.message

    @pytest.mark.asyncio
    async def test_rate_limited_response_is_retried(self, executor, mock_api):
        mock_api.queue(httpx.Response(429, headers={"Retry-After": "0"}))
        result = await build(executor, retries=1).execute({"location": "Paris"})
        assert result.success
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_connection_error_is_retried(self, executor, mock_api):
        mock_api.queue(httpx.ConnectError("connection refused"))
        result = await build(executor, retries=1).execute({"location": "Paris"})
        assert result.success
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_connection_error_exhausted(self, executor, mock_api):
        mock_api.queue(httpx.ConnectError("connection refused"))
        result = await build(executor, retries=0).execute({"location": "Paris"})
        assert result.error.type == "network"
        assert result.status_code is None

    @pytest.mark.asyncio
    async def test_timeout(self, executor, mock_api):
        async def slow(request):
            await asyncio.sleep(0.5)
            return httpx.Response(200, json={"location": "Paris", "temperature": 1})

        mock_api.queue(slow)
        started = time.perf_counter()
        result = await build(executor, timeout=50, retries=0).execute({"location": "Paris"})
        assert time.perf_counter() - started < 0.4
        assert result.error.type == "timeout"
        assert result.error.details["timeout_ms"] == 50
        assert result.attempts == 1

    @pytest.mark.asyncio
    async def test_timeout_is_retried(self, executor, mock_api):
        async def slow(request):
            await asyncio.sleep(0.5)
            return httpx.Response(200)

        mock_api.queue(slow)
        result = await build(executor, timeout=50, retries=1).execute({"location": "Paris"})
        assert result.success
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_redirect_loop_is_terminal_error(self, executor, mock_api):
        mock_api.default = lambda request: httpx.Response(302, headers={"Location": str(request.url)})
        result = await build(executor, retries=2).execute({"location": "Paris"})
        assert not result.success
        assert result.error.type == "protocol"
        assert "redirect" in result.error.message.lower()
        assert result.attempts == 1

    @pytest.mark.asyncio
    async def test_undecodable_body_is_terminal_error(self, executor, mock_api):
        mock_api.queue(httpx.Response(200, headers={"Content-Encoding": "gzip"}, content=b"not-gzip"))
        result = await build(executor, retries=2).execute({"location": "Paris"})
        assert result.error.type == "protocol"
        assert result.output is None
        assert result.attempts == 1
        assert len(mock_api.requests) == 1

    @pytest.mark.asyncio
    async def test_caller_cancellation_aborts_outbound_call(self, executor, mock_api):
        started, aborted = asyncio.Event(), asyncio.Event()

        async def hang(request):
            started.set()
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                aborted.set()
                raise
            return httpx.Response(200)

        mock_api.queue(hang)
        task = asyncio.create_task(build(executor, timeout=10000).execute({"location": "Paris"}))
        await asyncio.wait_for(started.wait(), timeout=1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert aborted.is_set()
        assert len(mock_api.requests) == 1

    def test_backoff_is_exponential_and_capped(self):
        ex = RequestExecutor(backoff_base_ms=100, backoff_max_ms=1000)
        delays = [ex.backoff_delay(i) for i in range(6)]
        assert delays == [0.1, 0.2, 0.4, 0.8, 1.0, 1.0]
        assert ex.backoff_delay(0, retry_after=3) == 3.0

    def test_parse_retry_after(self):
        assert parse_retry_after("5") == 5.0
        assert parse_retry_after(None) is None
        assert parse_retry_after("soon") is None
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0


# ══════════════════════════════════════════════════════════════════
# VALIDATION AND RESPONSE PARSING
# ══════════════════════════════════════════════════════════════════


class TestPayloadValidation:

    @pytest.mark.asyncio
    async def test_invalid_input_rejected_before_network(self, executor, mock_api):
        result = await build(executor).execute({"units": "metric"})
        assert result.error.type == "validation"
        assert "location" in result.error.message
        assert result.attempts == 0
        assert mock_api.requests == []

    @pytest.mark.asyncio
    async def test_output_mismatch_is_lenient_by_default(self, executor, mock_api):
        mock_api.queue(httpx.Response(200, json={"location": "Paris"}))
        result = await build(executor).execute({"location": "Paris"})
        assert result.success
        assert result.output == {"location": "Paris"}
        assert result.validation_error.type == "validation"
        assert "temperature" in result.validation_error.message

    @pytest.mark.asyncio
    async def test_output_mismatch_strict(self, executor, mock_api):
        mock_api.queue(httpx.Response(200, json={"location": "Paris"}))
        result = await build(executor, validation={"enabled": True, "strict": True}).execute(
            {"location": "Paris"})
        assert not result.success
        assert result.output is None
        assert result.error.type == "validation"

    @pytest.mark.asyncio
    async def test_validation_disabled_skips_schemas(self, executor, mock_api):
        mock_api.queue(httpx.Response(200, json={"unexpected": True}))
        result = await build(executor, validation={"enabled": False}).execute({})
        assert result.success
        assert result.validation_error is None

    @pytest.mark.asyncio
    async def test_text_and_binary_responses(self, executor, mock_api):
        mock_api.queue(
            httpx.Response(200, text="plain words"),
            httpx.Response(200, content=b"raw", headers={"content-type": "application/octet-stream"}),
        )
        instance = post_tool(executor)
        assert (await instance.execute({"a": 1})).output == "plain words"
        raw = (await instance.execute({"a": 1})).output
        assert raw["status"] == 200
        assert raw["body"] == "raw"


# ══════════════════════════════════════════════════════════════════
# RATE LIMITING
# ══════════════════════════════════════════════════════════════════


class TestRateLimit:

    @pytest.mark.asyncio
    async def test_limiter_delays_over_limit(self):
        limiter = SlidingWindowLimiter(requests=1, window=0.05)
        assert await limiter.acquire() == 0.0
        assert await limiter.acquire() > 0
        assert limiter.in_window == 1

    @pytest.mark.asyncio
    async def test_tool_calls_respect_rate_limit(self, executor, mock_api):
        instance = build(executor, rateLimit={"requests": 2, "window": 0.2})
        started = time.perf_counter()
        for _ in range(3):
            assert (await instance.execute({"location": "Paris"})).success
        assert time.perf_counter() - started >= 0.15
        assert len(mock_api.requests) == 3

    def test_pool_keeps_limiter_until_policy_changes(self):
        pool = LimiterPool()
        policy = RateLimitPolicy(requests=1, window=5)
        first = pool.limiter_for("acme", "weather-tool", policy)
        assert pool.limiter_for("acme", "weather-tool", RateLimitPolicy(requests=1, window=5)) is first
        assert pool.limiter_for("globex", "weather-tool", policy) is not first
        assert pool.limiter_for("acme", "weather-tool", RateLimitPolicy(requests=2, window=5)) is not first
        assert pool.limiter_for("acme", "weather-tool", None) is None
        pool.discard("globex", "weather-tool")
        assert pool.tracked() == 0

"""
Request Executor — one outbound HTTP call per invocation.

Applies URL templating, auth injection, body encoding, the per-attempt timeout,
client-side rate limiting and retry with exponential backoff, then parses and
validates the response. Remote failures are returned in ExecutionResult.error.
"""

import asyncio
import base64
import json
import logging
import re
import time
from dataclasses import dataclass, field
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple
from urllib.parse import quote, urlencode
from xml.sax.saxutils import escape as xml_escape

import httpx

from toolengine.config.settings import settings
from toolengine.tool_builder.errors import (
    RemoteError,
    RemoteProtocolError,
    ToolEngineError,
    ToolTimeoutError,
    TransientNetworkError,
)
from toolengine.tool_builder.models import (
    ApiKeyAuth,
    BasicAuth,
    BearerAuth,
    BodyFormat,
    ErrorInfo,
    ExecutionResult,
    HttpMethod,
    ToolDefinition,
)
from toolengine.tool_builder.validation import validate_instance
from toolengine.utils.redact import redact_headers, redact_params, redact_url

if TYPE_CHECKING:
    from toolengine.tool_builder.tool_registry import ToolInstance

logger = logging.getLogger(__name__)

TEXT_FIELDS = ("text", "content", "message", "body", "data", "input", "query", "prompt")

_XML_ENTITIES = {'"': "&quot;", "'": "&#39;"}

_PLACEHOLDER = re.compile(r"\{(\w+)\}")
_TEMPLATE_VAR = re.compile(r"\{\{(\w+)\}\}")

_STATUS_HINTS = {
    400: "Bad Request: invalid request parameters",
    401: "Unauthorized: invalid or missing credentials",
    403: "Forbidden: credentials lack permission for this resource",
    404: "Not Found: the requested resource does not exist",
    429: "Rate Limited: too many requests",
    500: "Internal Server Error",
    502: "Bad Gateway: the API server is temporarily unavailable",
    503: "Service Unavailable: the API service is temporarily down",
}


@dataclass
class OutboundRequest:
    method: str
    url: str
    params: List[Tuple[str, str]] = field(default_factory=list)
    headers: Dict[str, str] = field(default_factory=dict)
    content: Optional[str] = None
    secret_params: Tuple[str, ...] = ()

    def log_view(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "url": redact_url(self.url, self.secret_params),
            "params": redact_params(dict(self.params), self.secret_params),
            "headers": redact_headers(self.headers),
            "has_body": self.content is not None,
        }


# ══════════════════════════════════════════════════════════════════════════════
# BODY ENCODING
# ══════════════════════════════════════════════════════════════════════════════

def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def flatten_form(data: Any, prefix: str = "") -> List[Tuple[str, str]]:
    """Flatten nested mappings/lists into `a[b]` / `a[0]` form pairs; None values are dropped."""
    pairs: List[Tuple[str, str]] = []
    if isinstance(data, dict):
        for key, value in data.items():
            if value is None:
                continue
            full = f"{prefix}[{key}]" if prefix else str(key)
            if isinstance(value, (dict, list)):
                pairs.extend(flatten_form(value, full))
            else:
                pairs.append((full, _scalar(value)))
    elif isinstance(data, list):
        for i, item in enumerate(data):
            if item is None:
                continue
            full = f"{prefix}[{i}]"
            if isinstance(item, (dict, list)):
                pairs.extend(flatten_form(item, full))
            else:
                pairs.append((full, _scalar(item)))
    elif data is not None:
        pairs.append((prefix or "value", _scalar(data)))
    return pairs


def encode_text(data: Any) -> str:
    if isinstance(data, str):
        return data
    if isinstance(data, dict):
        for name in TEXT_FIELDS:
            if isinstance(data.get(name), str) and data[name]:
                return data[name]
        if len(data) == 1:
            only = next(iter(data.values()))
            if isinstance(only, str):
                return only
    return json.dumps(data)


def encode_xml(data: Any) -> str:
    if isinstance(data, str):
        return data
    lines = ['<?xml version="1.0" encoding="UTF-8"?>', "<root>"]
    items = data.items() if isinstance(data, dict) else [("value", data)]
    for key, value in items:
        if value is None:
            continue
        text = value if isinstance(value, str) else (json.dumps(value) if isinstance(value, (dict, list)) else _scalar(value))
        lines.append(f"  <{key}>{xml_escape(text, _XML_ENTITIES)}</{key}>")
    lines.append("</root>")
    return "\n".join(lines)


def encode_body(body_format: BodyFormat, data: Any) -> Optional[str]:
    if data is None:
        return None
    if isinstance(data, dict) and not data:
        return "{}" if body_format == BodyFormat.JSON else None
    if body_format == BodyFormat.FORM:
        return urlencode(flatten_form(data))
    if body_format == BodyFormat.TEXT:
        return encode_text(data)
    if body_format == BodyFormat.XML:
        return encode_xml(data)
    return json.dumps(data)


def apply_body_transform(data: Any, transform: Dict[str, Any]) -> Any:
    """
    Reshape the outgoing payload per `metadata.bodyTransform`:
      {"fieldMapping": {src: dst}}   renames and selects fields
      {"template": "<json text with {{field}}>"}
      {"structure": {...nested, "{{field}}" placeholders...}}
    """
    if not isinstance(data, dict) or not isinstance(transform, dict):
        return data

    if "template" in transform:
        rendered = _TEMPLATE_VAR.sub(
            lambda m: _scalar(data[m.group(1)]) if data.get(m.group(1)) is not None else m.group(0),
            str(transform["template"]),
        )
        try:
            return json.loads(rendered)
        except ValueError:
            return rendered

    if "fieldMapping" in transform:
        return {dst: data[src] for src, dst in transform["fieldMapping"].items() if src in data}

    if "structure" in transform:
        def fill(node):
            if isinstance(node, str):
                return _TEMPLATE_VAR.sub(
                    lambda m: _scalar(data[m.group(1)]) if m.group(1) in data else m.group(0), node)
            if isinstance(node, list):
                return [fill(n) for n in node]
            if isinstance(node, dict):
                return {k: fill(v) for k, v in node.items()}
            return node
        return fill(transform["structure"])

    return data


# ══════════════════════════════════════════════════════════════════════════════
# RESPONSE HANDLING
# ══════════════════════════════════════════════════════════════════════════════

def parse_response(response: httpx.Response) -> Any:
    content_type = response.headers.get("content-type", "").lower()
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            logger.warning("[EXEC] Response declared JSON but did not parse; returning text")
            return response.text
    if content_type.startswith("text/"):
        return response.text
    return {
        "status": response.status_code,
        "headers": dict(response.headers),
        "body": response.text,
    }


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After header in seconds (delta-seconds or HTTP-date)."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def remote_error(response: httpx.Response, url: str) -> RemoteError:
    status = response.status_code
    try:
        body = response.json()
    except ValueError:
        body = {"message": response.text, "status": status}
    hint = _STATUS_HINTS.get(status, f"API call failed ({status} {response.reason_phrase})")
    return RemoteError(
        status,
        f"{hint} ({status}). URL: {url}",
        body=body,
        retry_after=parse_retry_after(response.headers.get("retry-after")),
    )


# ══════════════════════════════════════════════════════════════════════════════
# EXECUTOR
# ══════════════════════════════════════════════════════════════════════════════

class RequestExecutor:
    """
    Performs outbound calls for compiled ToolInstances over one shared httpx.AsyncClient.
    Pass `transport` (e.g. httpx.MockTransport) to intercept traffic in tests.
    """

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        backoff_base_ms: Optional[int] = None,
        backoff_max_ms: Optional[int] = None,
        strict_output: Optional[bool] = None,
    ):
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.backoff_base_ms = settings.retry_backoff_base_ms if backoff_base_ms is None else backoff_base_ms
        self.backoff_max_ms = settings.retry_backoff_max_ms if backoff_max_ms is None else backoff_max_ms
        self.strict_output = settings.strict_output_validation if strict_output is None else strict_output

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(transport=self._transport, follow_redirects=True)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ── Request building ──────────────────────────────────────────

    @staticmethod
    def _apply_auth(definition: ToolDefinition, headers: Dict[str, str],
                    params: List[Tuple[str, str]]) -> Tuple[str, ...]:
        auth = definition.authentication
        if isinstance(auth, ApiKeyAuth):
            if auth.config.location == "query":
                params.append((auth.config.param_name, auth.config.value))
                return (auth.config.param_name,)
            headers[auth.config.param_name] = auth.config.value
        elif isinstance(auth, BearerAuth):
            headers["Authorization"] = f"Bearer {auth.config.token}"
        elif isinstance(auth, BasicAuth):
            cred = base64.b64encode(f"{auth.config.username}:{auth.config.password}".encode()).decode()
            headers["Authorization"] = f"Basic {cred}"
        return ()

    def build_request(self, definition: ToolDefinition, payload: Any) -> OutboundRequest:
        """Pure: turn a definition + input into the concrete outbound request."""
        remaining = dict(payload) if isinstance(payload, dict) else payload

        def fill(match):
            key = match.group(1)
            if isinstance(remaining, dict) and remaining.get(key) is not None:
                return quote(_scalar(remaining.pop(key)), safe="")
            return match.group(0)

        url = _PLACEHOLDER.sub(fill, definition.api_endpoint)
        headers = dict(definition.headers)
        params: List[Tuple[str, str]] = []
        secret_params = self._apply_auth(definition, headers, params)

        content = None
        if definition.method == HttpMethod.GET:
            if isinstance(remaining, dict):
                for key, value in remaining.items():
                    if isinstance(value, (list, tuple)):
                        params.extend((key, _scalar(v)) for v in value if v is not None)
                    elif value is not None and not isinstance(value, dict):
                        params.append((key, _scalar(value)))
        else:
            transform = definition.metadata.get("bodyTransform")
            if transform:
                remaining = apply_body_transform(remaining, transform)
            content = encode_body(definition.body_format, remaining)

        if content is not None:
            explicit = definition.content_type is not None
            has_header = any(k.lower() == "content-type" for k in headers)
            if explicit or not has_header:
                headers = {k: v for k, v in headers.items() if k.lower() != "content-type"}
                headers["Content-Type"] = definition.effective_content_type

        return OutboundRequest(
            method=definition.method.value,
            url=url,
            params=params,
            headers=headers,
            content=content,
            secret_params=secret_params,
        )

    def build_probe(self, definition: ToolDefinition) -> OutboundRequest:
        """Health probe: safe verb only, auth applied, never a body."""
        policy = definition.health_check
        if policy is not None:
            method = policy.method.value
            url = policy.endpoint or definition.api_endpoint
        else:
            method = "GET" if definition.method == HttpMethod.GET else "HEAD"
            url = definition.api_endpoint
        headers = {k: v for k, v in definition.headers.items() if k.lower() != "content-type"}
        params: List[Tuple[str, str]] = []
        secret_params = self._apply_auth(definition, headers, params)
        return OutboundRequest(method=method, url=url, params=params, headers=headers,
                               secret_params=secret_params)

    # ── Transport ─────────────────────────────────────────────────

    async def send(self, request: OutboundRequest, timeout_ms: int) -> httpx.Response:
        """One attempt bounded by `timeout_ms`. Raises ToolTimeoutError, TransientNetworkError or RemoteProtocolError."""
        timeout_s = timeout_ms / 1000.0
        safe_url = redact_url(request.url, request.secret_params)
        try:
            return await asyncio.wait_for(
                self.client.request(
                    request.method,
                    request.url,
                    params=request.params or None,
                    headers=request.headers,
                    content=request.content,
                    timeout=httpx.Timeout(timeout_s),
                ),
                timeout=timeout_s,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise ToolTimeoutError(timeout_ms, safe_url) from e
        except httpx.TransportError as e:
            raise TransientNetworkError(
                f"Connection error calling {safe_url}: {e}", {"url": safe_url}
            ) from e
        except httpx.RequestError as e:
            raise RemoteProtocolError(
                f"Unusable response from {safe_url}: {e}", {"url": safe_url}
            ) from e

    def backoff_delay(self, retry_index: int, retry_after: Optional[float] = None) -> float:
        """Seconds to wait before retry number `retry_index` (0-based)."""
        delay_ms = min(self.backoff_base_ms * (2 ** retry_index), self.backoff_max_ms)
        if retry_after is not None:
            delay_ms = max(delay_ms, retry_after * 1000.0)
        return delay_ms / 1000.0

    # ── Execution ─────────────────────────────────────────────────

    async def execute(self, instance: "ToolInstance", payload: Any,
                      context: Optional[Dict[str, Any]] = None) -> ExecutionResult:
        definition = instance.definition
        context = context or {}
        started = time.perf_counter()
        result = ExecutionResult(tool_id=definition.id, input=payload)

        def finish() -> ExecutionResult:
            result.duration_ms = round((time.perf_counter() - started) * 1000, 1)
            return result

        if definition.validation.enabled and instance.input_validator is not None:
            problems = validate_instance(instance.input_validator, payload)
            if problems:
                result.error = ErrorInfo(
                    type="validation",
                    message=f"Input validation failed: {'; '.join(problems)}",
                    details={"violations": problems},
                )
                logger.info(f"[EXEC] {instance.tenant_id}/{definition.id} rejected input: {problems}")
                return finish()

        request = self.build_request(definition, payload)
        logger.info(
            f"[EXEC] {instance.tenant_id}/{definition.id} request_id={context.get('request_id')} "
            f"{request.log_view()}"
        )

        response = None
        last_error: Optional[ToolEngineError] = None
        for attempt in range(definition.retries + 1):
            result.attempts = attempt + 1
            if instance.limiter is not None:
                waited = await instance.limiter.acquire()
                if waited:
                    logger.debug(f"[EXEC] {definition.id} rate limited, waited {waited:.3f}s")
            try:
                resp = await self.send(request, definition.timeout)
            except (ToolTimeoutError, TransientNetworkError) as e:
                last_error = e
            except RemoteProtocolError as e:
                last_error = e
                logger.warning(f"[EXEC] {definition.id} non-retryable error: {e.message}")
                break
            else:
                result.status_code = resp.status_code
                if resp.is_success:
                    response, last_error = resp, None
                    break
                last_error = remote_error(resp, redact_url(str(resp.request.url), request.secret_params))
                if not last_error.retryable:
                    logger.warning(f"[EXEC] {definition.id} non-retryable error: {last_error.message}")
                    break

            if attempt < definition.retries:
                delay = self.backoff_delay(attempt, getattr(last_error, "retry_after", None))
                logger.warning(
                    f"[EXEC] {definition.id} attempt {attempt + 1}/{definition.retries + 1} failed "
                    f"({last_error.message}); retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

        if response is None:
            result.error = ErrorInfo.from_exception(last_error)
            logger.error(f"[EXEC] {definition.id} failed after {result.attempts} attempt(s): {last_error.message}")
            return finish()

        result.output = parse_response(response)

        if definition.validation.enabled and instance.output_validator is not None:
            problems = validate_instance(instance.output_validator, result.output)
            if problems:
                info = ErrorInfo(
                    type="validation",
                    message=f"Output validation failed: {'; '.join(problems)}",
                    details={"violations": problems},
                )
                if definition.validation.strict or self.strict_output:
                    result.output, result.error = None, info
                else:
                    result.validation_error = info
                logger.warning(f"[EXEC] {definition.id} output does not match outputSchema: {problems}")

        finish()
        logger.info(
            f"[EXEC] {definition.id} status={result.status_code} attempts={result.attempts} "
            f"duration={result.duration_ms}ms"
        )
        return result

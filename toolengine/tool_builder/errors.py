"""
Tool engine error taxonomy.

Config and programmer errors (validation, unknown ids, bad auth) are raised before
any network attempt. Remote failures during execution (timeouts, transient network
errors, non-2xx responses) are captured into ExecutionResult.error instead of raised.
"""

from typing import Any, Dict, List, Optional


class ToolEngineError(Exception):
    """Base class for all tool engine errors."""

    code = "tool_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ToolValidationError(ToolEngineError):
    """Malformed tool definition or tool input. Enumerates every violation."""

    code = "validation"

    def __init__(self, violations: List[str], message: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.violations = list(violations)
        super().__init__(
            message or f"Invalid tool configuration: {'; '.join(self.violations)}",
            details,
        )


class ToolAlreadyExistsError(ToolValidationError):
    code = "already_exists"

    def __init__(self, tool_id: str, tenant_id: str):
        super().__init__(
            [f"Tool with ID '{tool_id}' already exists"],
            message=f"Tool with ID '{tool_id}' already exists in tenant '{tenant_id}'",
            details={"tool_id": tool_id, "tenant_id": tenant_id},
        )


class ToolNotFoundError(ToolEngineError):
    """Unknown tool (or template) id within a tenant."""

    code = "not_found"

    def __init__(self, tool_id: str, tenant_id: Optional[str] = None, kind: str = "Tool"):
        where = f" in tenant '{tenant_id}'" if tenant_id else ""
        super().__init__(
            f"{kind} with ID '{tool_id}' not found{where}",
            {"tool_id": tool_id, "tenant_id": tenant_id},
        )
        self.tool_id = tool_id


class AuthConfigError(ToolEngineError):
    """Unsupported or malformed authentication variant."""

    code = "auth_config"


class ToolTimeoutError(ToolEngineError):
    """The outbound call did not complete within the tool's timeout."""

    code = "timeout"

    def __init__(self, timeout_ms: int, url: str = ""):
        super().__init__(f"Request timeout after {timeout_ms}ms", {"timeout_ms": timeout_ms, "url": url})
        self.timeout_ms = timeout_ms


class TransientNetworkError(ToolEngineError):
    """Connection-level failure worth retrying."""

    code = "network"


class RemoteError(ToolEngineError):
    """Completed non-2xx response from the remote API."""

    code = "remote"

    def __init__(self, status_code: int, message: str, body: Any = None,
                 retry_after: Optional[float] = None):
        super().__init__(message, {"status_code": status_code, "body": body})
        self.status_code = status_code
        self.body = body
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.status_code == 429 or self.status_code >= 500


class RemoteProtocolError(ToolEngineError):
    """The remote answered with no usable response (redirect loop, undecodable body). Not retried."""

    code = "protocol"


class InitializationError(ToolEngineError):
    """The Tool Definition Store could not be read while building a tenant registry."""

    code = "initialization"


# HTTP status per error type, used by the API layer
HTTP_STATUS: Dict[type, int] = {
    ToolAlreadyExistsError: 409,
    ToolValidationError: 400,
    AuthConfigError: 400,
    ToolNotFoundError: 404,
    InitializationError: 503,
    ToolTimeoutError: 504,
    TransientNetworkError: 502,
    RemoteError: 502,
    RemoteProtocolError: 502,
}


def http_status_for(error: ToolEngineError) -> int:
    for cls in type(error).__mro__:
        if cls in HTTP_STATUS:
            return HTTP_STATUS[cls]
    return 500

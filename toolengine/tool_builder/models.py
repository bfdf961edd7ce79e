"""
Tool definition and execution models.

Attributes are snake_case; the persisted/wire form is camelCase JSON
(see ToolDefinition.to_record).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel

from toolengine.config.settings import settings
from toolengine.tool_builder.errors import ToolEngineError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def wire_key(name: str) -> str:
    """snake_case attribute name -> camelCase record key; camelCase passes through."""
    return to_camel(name) if "_" in name else name


def wire_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    return {wire_key(k): v for k, v in data.items()}


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class _Closed(BaseModel):
    """Tagged-variant member: fields belonging to another tag are rejected."""
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


# ══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ══════════════════════════════════════════════════════════════════════════════

class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


class ProbeMethod(str, Enum):
    GET = "GET"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"


class BodyFormat(str, Enum):
    JSON = "json"
    FORM = "form"
    TEXT = "text"
    XML = "xml"


DEFAULT_CONTENT_TYPES: Dict[BodyFormat, str] = {
    BodyFormat.JSON: "application/json",
    BodyFormat.FORM: "application/x-www-form-urlencoded",
    BodyFormat.TEXT: "text/plain",
    BodyFormat.XML: "application/xml",
}


class ToolStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


# ══════════════════════════════════════════════════════════════════════════════
# AUTHENTICATION (closed tagged variant)
# ══════════════════════════════════════════════════════════════════════════════

class ApiKeyConfig(_Closed):
    name: Optional[str] = None  # "X-API-Key" in a header, "key" in the query
    location: Literal["header", "query"] = Field(
        default="header",
        validation_alias=AliasChoices("in", "location"),
        serialization_alias="in",
    )
    value: str = Field(validation_alias=AliasChoices("value", "apiKey"))

    @field_validator("value")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must be a non-empty string")
        return v

    @property
    def param_name(self) -> str:
        if self.name:
            return self.name
        return "key" if self.location == "query" else "X-API-Key"


class BearerConfig(_Closed):
    token: str

    @field_validator("token")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must be a non-empty string")
        return v


class BasicConfig(_Closed):
    username: str
    password: str

    @field_validator("username")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must be a non-empty string")
        return v


class ApiKeyAuth(_Closed):
    type: Literal["api_key"] = "api_key"
    config: ApiKeyConfig


class BearerAuth(_Closed):
    type: Literal["bearer"] = "bearer"
    config: BearerConfig


class BasicAuth(_Closed):
    type: Literal["basic"] = "basic"
    config: BasicConfig


class NoAuth(_Closed):
    type: Literal["none"] = "none"


AuthConfig = Annotated[
    Union[ApiKeyAuth, BearerAuth, BasicAuth, NoAuth],
    Field(discriminator="type"),
]

AUTH_TYPES: Dict[str, type] = {
    "api_key": ApiKeyAuth,
    "bearer": BearerAuth,
    "basic": BasicAuth,
    "none": NoAuth,
}


# ── Policies ─────────────────────────────────────────────────────────────

class RateLimitPolicy(_Wire):
    requests: int = Field(gt=0)
    window: float = Field(gt=0)  # seconds


class CachePolicy(_Wire):
    enabled: bool = False
    ttl: int = Field(default_factory=lambda: settings.response_cache_default_ttl, gt=0)  # seconds


class ValidationPolicy(_Wire):
    enabled: bool = False
    strict: bool = False


class HealthCheckPolicy(_Wire):
    """Probe request used by the health monitor. Only safe verbs are allowed."""
    method: ProbeMethod = ProbeMethod.GET
    endpoint: Optional[str] = None


# ══════════════════════════════════════════════════════════════════════════════
# TOOL DEFINITION
# ══════════════════════════════════════════════════════════════════════════════

class ToolDefinition(_Wire):
    """
    Declarative description of one external HTTP API call.
    Compiled by the tenant's ToolRegistry into a ToolInstance.
    """
    id: str
    name: str
    description: str
    api_endpoint: str
    method: HttpMethod
    content_type: Optional[str] = None
    body_format: BodyFormat = BodyFormat.JSON
    headers: Dict[str, str] = Field(default_factory=dict)
    authentication: AuthConfig = Field(default_factory=NoAuth)
    rate_limit: Optional[RateLimitPolicy] = None
    timeout: int = Field(default_factory=lambda: settings.default_tool_timeout_ms, gt=0)  # ms
    retries: int = Field(default_factory=lambda: settings.default_tool_retries, ge=0)
    cache: CachePolicy = Field(default_factory=CachePolicy)
    validation: ValidationPolicy = Field(default_factory=ValidationPolicy)
    input_schema: Optional[Dict[str, Any]] = None
    output_schema: Optional[Dict[str, Any]] = None
    health_check: Optional[HealthCheckPolicy] = None
    status: ToolStatus = ToolStatus.ACTIVE
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @property
    def effective_content_type(self) -> str:
        return self.content_type or DEFAULT_CONTENT_TYPES[self.body_format]

    def to_record(self) -> Dict[str, Any]:
        """Wire/persisted form (camelCase JSON, ISO-8601 timestamps)."""
        return self.model_dump(mode="json", by_alias=True)


# ══════════════════════════════════════════════════════════════════════════════
# RESULTS
# ══════════════════════════════════════════════════════════════════════════════

class ErrorInfo(_Wire):
    type: str
    message: str
    status_code: Optional[int] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: Exception) -> "ErrorInfo":
        if isinstance(exc, ToolEngineError):
            return cls(
                type=exc.code,
                message=exc.message,
                status_code=getattr(exc, "status_code", None),
                details=exc.details,
            )
        return cls(type="internal", message=str(exc) or type(exc).__name__)


class ExecutionResult(_Wire):
    """Outcome of one execute() call. Remote failures land in `error`, never raised."""
    tool_id: str
    input: Any = None
    output: Any = None
    error: Optional[ErrorInfo] = None
    validation_error: Optional[ErrorInfo] = None
    timestamp: datetime = Field(default_factory=_utcnow)
    duration_ms: float = 0.0
    attempts: int = 0
    status_code: Optional[int] = None
    cache_hit: bool = False

    @computed_field
    @property
    def success(self) -> bool:
        return self.error is None


class HealthRecord(_Wire):
    tool_id: str
    healthy: bool
    status: str
    response_time: Optional[float] = None  # ms
    status_code: Optional[int] = None
    error: Optional[str] = None
    last_checked: datetime = Field(default_factory=_utcnow)


class HealthSummary(_Wire):
    tenant_id: str
    total: int = 0
    healthy: int = 0
    unhealthy: int = 0
    average_response_time: float = 0.0
    tools: Dict[str, HealthRecord] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)

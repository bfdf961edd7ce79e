"""
Definition and payload validation.

validate_definition() collects every violation of a candidate tool record before
raising, so a caller fixing a definition sees all problems at once.
"""

import logging
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlsplit

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError
from jsonschema.validators import validator_for
from pydantic import BaseModel, ValidationError

from toolengine.tool_builder.errors import AuthConfigError, ToolValidationError
from toolengine.tool_builder.models import (
    AUTH_TYPES,
    ApiKeyAuth,
    BearerAuth,
    HttpMethod,
    ToolDefinition,
    wire_key,
)

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("id", "name", "description", "api_endpoint", "method")

# tools.id column width
MAX_ID_LENGTH = 128


def _format_pydantic(exc: ValidationError, prefix: str = "") -> List[str]:
    out = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        where = f"{prefix}.{loc}" if prefix and loc else (prefix or loc)
        out.append(f"{where}: {err.get('msg')}" if where else err.get("msg", "invalid"))
    return out


# ══════════════════════════════════════════════════════════════════════════════
# AUTHENTICATION
# ══════════════════════════════════════════════════════════════════════════════

def parse_authentication(raw: Union[None, Dict[str, Any], BaseModel]):
    """
    Resolve a raw authentication block into its tagged variant.
    Raises AuthConfigError for unknown tags or a config that does not fit the tag.
    """
    if raw is None:
        return AUTH_TYPES["none"]()
    if isinstance(raw, BaseModel):
        return raw
    if not isinstance(raw, dict):
        raise AuthConfigError("authentication must be an object")

    tag = raw.get("type", "none")
    cls = AUTH_TYPES.get(tag)
    if cls is None:
        raise AuthConfigError(
            f"Unsupported authentication type '{tag}'",
            {"supported": sorted(AUTH_TYPES)},
        )

    data = dict(raw)
    if tag == "none" and not data.get("config"):
        data.pop("config", None)
    try:
        return cls.model_validate(data)
    except ValidationError as e:
        raise AuthConfigError(
            f"Invalid '{tag}' authentication: {'; '.join(_format_pydantic(e))}",
            {"type": tag},
        ) from e


# ══════════════════════════════════════════════════════════════════════════════
# JSON SCHEMA
# ══════════════════════════════════════════════════════════════════════════════

def check_schema(schema: Any) -> Optional[str]:
    """Return None when `schema` is a well-formed JSON Schema, else the reason."""
    if not isinstance(schema, dict):
        return "must be a JSON Schema object"
    try:
        validator_for(schema, default=Draft7Validator).check_schema(schema)
    except SchemaError as e:
        return e.message
    return None


def compile_schema(schema: Optional[Dict[str, Any]]):
    if not schema:
        return None
    cls = validator_for(schema, default=Draft7Validator)
    return cls(schema)


def validate_instance(validator, instance: Any) -> List[str]:
    """Every schema violation of `instance`, as 'path: message' strings."""
    if validator is None:
        return []
    messages = []
    for err in sorted(validator.iter_errors(instance), key=lambda e: list(e.absolute_path)):
        path = "/".join(str(p) for p in err.absolute_path) or "$"
        messages.append(f"{path}: {err.message}")
    return messages


# ══════════════════════════════════════════════════════════════════════════════
# TOOL DEFINITION
# ══════════════════════════════════════════════════════════════════════════════

def _field(data: Dict[str, Any], name: str) -> Any:
    camel = wire_key(name)
    return data[camel] if camel in data else data.get(name)


def _header_safe(value: Any) -> bool:
    return not isinstance(value, str) or value.isascii()


def _header_credentials(auth) -> List[str]:
    if isinstance(auth, BearerAuth):
        return [auth.config.token]
    if isinstance(auth, ApiKeyAuth) and auth.config.location == "header":
        return [auth.config.param_name, auth.config.value]
    return []


def validate_definition(data: Union[Dict[str, Any], ToolDefinition]) -> ToolDefinition:
    """
    Validate a candidate tool record (camelCase or snake_case keys).
    Returns the parsed ToolDefinition or raises ToolValidationError listing every violation.
    """
    if isinstance(data, ToolDefinition):
        data = data.to_record()
    if not isinstance(data, dict):
        raise ToolValidationError(["tool definition must be an object"])

    violations: List[str] = []
    checked = set()

    for name in REQUIRED_FIELDS:
        value = _field(data, name)
        if value is None or (isinstance(value, str) and not value.strip()):
            violations.append(f"{wire_key(name)} is required")
            checked.add(wire_key(name))

    tool_id = _field(data, "id")
    if isinstance(tool_id, str) and len(tool_id) > MAX_ID_LENGTH:
        violations.append(f"id must be at most {MAX_ID_LENGTH} characters, got {len(tool_id)}")
        checked.add("id")

    method = _field(data, "method")
    if "method" not in checked:
        allowed = [m.value for m in HttpMethod]
        if not isinstance(method, str) or method.upper() not in allowed:
            violations.append(f"method must be one of {allowed}, got {method!r}")
        checked.add("method")

    endpoint = _field(data, "api_endpoint")
    if "apiEndpoint" not in checked:
        parts = urlsplit(endpoint) if isinstance(endpoint, str) else None
        if parts is None or parts.scheme not in ("http", "https") or not parts.netloc:
            violations.append(f"apiEndpoint must be an absolute http(s) URL, got {endpoint!r}")
        checked.add("apiEndpoint")

    timeout = _field(data, "timeout")
    if timeout is not None:
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            violations.append(f"timeout must be a positive number of milliseconds, got {timeout!r}")
        checked.add("timeout")

    headers = _field(data, "headers")
    if isinstance(headers, dict):
        for name, value in headers.items():
            if not _header_safe(name) or not _header_safe(value):
                violations.append(f"headers.{name}: header names and values must be ASCII")

    retries = _field(data, "retries")
    if retries is not None:
        if isinstance(retries, bool) or not isinstance(retries, int) or retries < 0:
            violations.append(f"retries must be a non-negative integer, got {retries!r}")
        checked.add("retries")

    for name in ("input_schema", "output_schema"):
        schema = _field(data, name)
        if schema is not None:
            problem = check_schema(schema)
            if problem:
                violations.append(f"{wire_key(name)} is not a valid JSON Schema: {problem}")
            checked.add(wire_key(name))

    try:
        auth = parse_authentication(_field(data, "authentication"))
    except AuthConfigError as e:
        violations.append(e.message)
    else:
        if not all(_header_safe(v) for v in _header_credentials(auth)):
            violations.append("authentication: credentials sent in a header must be ASCII")
    checked.add("authentication")

    definition = None
    try:
        definition = ToolDefinition.model_validate(data)
    except ValidationError as e:
        model_violations, unchecked = [], []
        for err in e.errors():
            loc = err.get("loc") or ("",)
            head = wire_key(loc[0]) if isinstance(loc[0], str) else str(loc[0])
            where = ".".join([head] + [str(p) for p in loc[1:]])
            model_violations.append(f"{where}: {err.get('msg')}")
            if head not in checked:
                unchecked.append(model_violations[-1])
        violations.extend(unchecked if violations else model_violations)

    if violations or definition is None:
        logger.info(f"[TOOLS] Rejected definition '{data.get('id')}': {len(violations)} violation(s)")
        raise ToolValidationError(violations, details={"tool_id": data.get("id")})
    return definition

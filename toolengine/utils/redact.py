"""
Log-safe views of outbound requests. Credentials never reach the log stream.
"""

from typing import Dict, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

REDACTED = "***REDACTED***"

SENSITIVE_HEADERS = frozenset({"authorization", "x-api-key", "api-key", "cookie", "proxy-authorization"})
SENSITIVE_PARAMS = frozenset({"key", "api_key", "apikey", "token", "access_token", "auth", "authorization"})


def redact_headers(headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    return {
        k: (REDACTED if k.lower() in SENSITIVE_HEADERS else v)
        for k, v in (headers or {}).items()
    }


def redact_params(params: Optional[Mapping[str, object]], extra=()) -> Dict[str, object]:
    hidden = SENSITIVE_PARAMS | {p.lower() for p in extra}
    return {k: (REDACTED if k.lower() in hidden else v) for k, v in (params or {}).items()}


def redact_url(url: str, extra=()) -> str:
    """Mask credential-looking query parameters in `url`."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.query:
        return url
    hidden = SENSITIVE_PARAMS | {p.lower() for p in extra}
    query = [(k, REDACTED if k.lower() in hidden else v) for k, v in parse_qsl(parts.query, keep_blank_values=True)]
    return urlunsplit(parts._replace(query=urlencode(query, safe="*")))

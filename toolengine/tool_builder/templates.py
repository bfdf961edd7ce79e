"""
Built-in tool templates.
A template is a partial tool definition; create_tool_from_template() layers caller
customizations over it and sends the result through the normal create path.
"""

import copy
import uuid
from typing import Any, Dict, List, Optional

from pydantic import Field

from toolengine.tool_builder.models import _Wire


class ToolTemplate(_Wire):
    id: str
    name: str
    description: str
    category: str = "api"
    template: Dict[str, Any] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════════════
# TEMPLATES
# ═══════════════════════════════════════════════════════════════════════════════

BUILTIN_TEMPLATES = [
    {
        "id": "http-api",
        "name": "HTTP API Tool",
        "description": "Generic tool for making HTTP API calls",
        "category": "api",
        "template": {
            "method": "GET",
            "headers": {"Content-Type": "application/json"},
            "timeout": 30000,
            "retries": 3,
            "validation": {"enabled": True},
        },
        "tags": ["http", "api", "rest"],
    },
    {
        "id": "weather-api",
        "name": "Weather API Tool",
        "description": "Tool for fetching weather information",
        "category": "weather",
        "template": {
            "name": "Weather Tool",
            "description": "Get current weather information for a location",
            "method": "GET",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "location": {"type": "string", "description": "City name or coordinates"},
                    "units": {"type": "string", "enum": ["metric", "imperial"], "default": "metric"},
                },
                "required": ["location"],
            },
            "timeout": 10000,
            "cache": {"enabled": True, "ttl": 300},
        },
        "tags": ["weather", "api", "location"],
    },
    {
        "id": "gemini-api",
        "name": "Gemini API Tool",
        "description": "Tool for making calls to Google Gemini API",
        "category": "ai",
        "template": {
            "name": "Gemini API Tool",
            "description": "Make calls to Google Gemini API",
            "apiEndpoint": "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.0-flash:generateContent",
            "method": "POST",
            "contentType": "application/json",
            "inputSchema": {
                "type": "object",
                "properties": {"text": {"type": "string", "description": "Text to send to Gemini API"}},
                "required": ["text"],
            },
            # Gemini expects the key as a query parameter
            "authentication": {
                "type": "api_key",
                "config": {"name": "key", "in": "query", "value": "YOUR_GEMINI_API_KEY"},
            },
            "metadata": {
                "apiType": "gemini",
                "bodyTransform": {"structure": {"contents": [{"parts": [{"text": "{{text}}"}]}]}},
            },
            "timeout": 30000,
            "retries": 3,
            "cache": {"enabled": True, "ttl": 300},
        },
        "tags": ["gemini", "google", "ai", "llm"],
    },
]

_BY_ID = {t["id"]: t for t in BUILTIN_TEMPLATES}


def get_templates() -> List[ToolTemplate]:
    return [ToolTemplate.model_validate(t) for t in BUILTIN_TEMPLATES]


def get_template(template_id: str) -> Optional[ToolTemplate]:
    raw = _BY_ID.get(template_id)
    return ToolTemplate.model_validate(copy.deepcopy(raw)) if raw else None


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge `override` onto a copy of `base`; non-dict values replace."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def render_template(template: ToolTemplate, customizations: Dict[str, Any]) -> Dict[str, Any]:
    """Tool record built from `template` with `customizations` layered on top."""
    base = dict(template.template)
    base.setdefault("name", template.name)
    base.setdefault("description", template.description)
    record = deep_merge(base, customizations or {})
    record.setdefault("id", f"tool-{uuid.uuid4().hex[:8]}")
    record.setdefault("metadata", {})
    record["metadata"] = {**record["metadata"], "template": template.id}
    return record

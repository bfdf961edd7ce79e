"""
Tool Engine — Tool routes
Thin HTTP adapter over ToolService, scoped per tenant. Engine errors are mapped
to status codes by the application's exception handler.
"""

import copy
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Request
from pydantic import BaseModel, Field

from toolengine.tool_builder.errors import ToolNotFoundError
from toolengine.tool_builder.models import ToolDefinition
from toolengine.tool_builder.service import ToolService
from toolengine.utils.redact import REDACTED

router = APIRouter(prefix="/tenants/{tenant_id}/tools", tags=["Tools"])

_SECRET_FIELDS = ("value", "token", "password")


def get_tool_service(request: Request) -> ToolService:
    return request.app.state.tool_service


def public_record(definition: ToolDefinition) -> Dict[str, Any]:
    """Wire record with credential values masked."""
    record = definition.to_record()
    auth = copy.deepcopy(record.get("authentication") or {})
    config = auth.get("config")
    if isinstance(config, dict):
        for key in _SECRET_FIELDS:
            if config.get(key):
                config[key] = REDACTED
    record["authentication"] = auth
    return record


# ── Request Models ────────────────────────────────────────────────

class ExecuteRequest(BaseModel):
    input: Any = None
    context: Dict[str, Any] = Field(default_factory=dict)


# ══════════════════════════════════════════════════════════════════════════════
# COLLECTION
# ══════════════════════════════════════════════════════════════════════════════

@router.get("")
async def list_tools(tenant_id: str, service: ToolService = Depends(get_tool_service)):
    tools = await service.list_tools(tenant_id)
    return {"tools": [public_record(t) for t in tools], "total": len(tools)}


@router.post("", status_code=201)
async def create_tool(tenant_id: str, data: Dict[str, Any] = Body(...),
                      service: ToolService = Depends(get_tool_service)):
    definition = await service.create_tool(tenant_id, data)
    return public_record(definition)


@router.get("/templates")
async def list_templates(tenant_id: str, service: ToolService = Depends(get_tool_service)):
    templates = service.get_templates()
    return {"templates": [t.model_dump(mode="json", by_alias=True) for t in templates]}


@router.post("/templates/{template_id}", status_code=201)
async def create_from_template(tenant_id: str, template_id: str,
                               customizations: Optional[Dict[str, Any]] = Body(default=None),
                               service: ToolService = Depends(get_tool_service)):
    definition = await service.create_tool_from_template(tenant_id, template_id, customizations or {})
    return public_record(definition)


@router.get("/health")
async def health_all(tenant_id: str, service: ToolService = Depends(get_tool_service)):
    summary = await service.health_check_all(tenant_id)
    return summary.model_dump(mode="json", by_alias=True)


@router.delete("/cache")
async def clear_response_cache(tenant_id: str, tool_id: Optional[str] = None,
                               service: ToolService = Depends(get_tool_service)):
    removed = await service.invalidate_response_cache(tenant_id, tool_id)
    return {"invalidated": removed}


# ══════════════════════════════════════════════════════════════════════════════
# SINGLE TOOL
# ══════════════════════════════════════════════════════════════════════════════

@router.get("/{tool_id}")
async def get_tool(tenant_id: str, tool_id: str, service: ToolService = Depends(get_tool_service)):
    instance = await service.get_tool(tenant_id, tool_id)
    if instance is None:
        raise ToolNotFoundError(tool_id, tenant_id)
    return public_record(instance.definition)


@router.put("/{tool_id}")
async def update_tool(tenant_id: str, tool_id: str, data: Dict[str, Any] = Body(...),
                      service: ToolService = Depends(get_tool_service)):
    definition = await service.update_tool(tenant_id, tool_id, data)
    return public_record(definition)


@router.patch("/{tool_id}")
async def patch_tool(tenant_id: str, tool_id: str, data: Dict[str, Any] = Body(...),
                     service: ToolService = Depends(get_tool_service)):
    definition = await service.patch_tool(tenant_id, tool_id, data)
    return public_record(definition)


@router.delete("/{tool_id}")
async def delete_tool(tenant_id: str, tool_id: str, service: ToolService = Depends(get_tool_service)):
    await service.delete_tool(tenant_id, tool_id)
    return {"deleted": tool_id}


@router.post("/{tool_id}/execute")
async def execute_tool(tenant_id: str, tool_id: str, req: ExecuteRequest,
                       service: ToolService = Depends(get_tool_service)):
    result = await service.execute(tenant_id, tool_id, req.input, req.context)
    return result.model_dump(mode="json", by_alias=True)


@router.get("/{tool_id}/health")
async def health_one(tenant_id: str, tool_id: str, service: ToolService = Depends(get_tool_service)):
    record = await service.health_check(tenant_id, tool_id)
    return record.model_dump(mode="json", by_alias=True)

"""
ToolService — tenant-scoped façade over the tool engine.

Composes the Tool Definition Store, Tool Instance Cache, Response Cache, Request
Executor and Health Monitor, and wires both caches to the ToolMutated event bus.
One instance per application, created in the FastAPI lifespan.
"""

import logging
from typing import Any, Dict, List, Optional

from toolengine.cache.cache_layer import ResponseCache
from toolengine.cache.instance_cache import ToolInstanceCache
from toolengine.config.settings import settings
from toolengine.db.store import InMemoryToolStore, ToolStore
from toolengine.tool_builder.errors import ToolNotFoundError
from toolengine.tool_builder.events import ToolEventBus
from toolengine.tool_builder.executor import RequestExecutor
from toolengine.tool_builder.health import HealthMonitor
from toolengine.tool_builder.models import (
    ExecutionResult,
    HealthRecord,
    HealthSummary,
    ToolDefinition,
)
from toolengine.tool_builder.templates import ToolTemplate, get_templates
from toolengine.tool_builder.tool_registry import ToolInstance

logger = logging.getLogger(__name__)


class ToolService:

    def __init__(
        self,
        store: Optional[ToolStore] = None,
        executor: Optional[RequestExecutor] = None,
        response_cache: Optional[ResponseCache] = None,
        events: Optional[ToolEventBus] = None,
        health: Optional[HealthMonitor] = None,
    ):
        self.events = events or ToolEventBus()
        self.store = store or InMemoryToolStore()
        self.executor = executor or RequestExecutor()
        self.response_cache = response_cache or ResponseCache(redis_url=settings.redis_url)
        self.instances = ToolInstanceCache(self.store, self.executor, self.events)
        self.events.subscribe(self.response_cache.on_tool_mutated)
        self.health = health or HealthMonitor(self.executor)

    async def startup(self) -> None:
        await self.response_cache.connect()

    async def shutdown(self) -> None:
        await self.executor.aclose()
        await self.response_cache.disconnect()

    # ── Reads ─────────────────────────────────────────────────────

    async def list_tools(self, tenant_id: str) -> List[ToolDefinition]:
        registry = await self.instances.get_or_build(tenant_id)
        return registry.list_tools()

    async def get_tool(self, tenant_id: str, tool_id: str) -> Optional[ToolInstance]:
        """The compiled instance, or None. Never raises for an unknown id."""
        registry = await self.instances.get_or_build(tenant_id)
        return registry.get_tool(tool_id)

    def get_templates(self) -> List[ToolTemplate]:
        return get_templates()

    # ── Mutations ─────────────────────────────────────────────────
    # Each returns only after the ToolMutated handlers (both caches) have run.

    async def create_tool(self, tenant_id: str, data: Dict[str, Any]) -> ToolDefinition:
        registry = await self.instances.get_or_build(tenant_id)
        return await registry.create_tool(data)

    async def update_tool(self, tenant_id: str, tool_id: str, data: Dict[str, Any]) -> ToolDefinition:
        registry = await self.instances.get_or_build(tenant_id)
        return await registry.update_tool(tool_id, data)

    async def patch_tool(self, tenant_id: str, tool_id: str, partial: Dict[str, Any]) -> ToolDefinition:
        registry = await self.instances.get_or_build(tenant_id)
        return await registry.patch_tool(tool_id, partial)

    async def delete_tool(self, tenant_id: str, tool_id: str) -> None:
        registry = await self.instances.get_or_build(tenant_id)
        await registry.delete_tool(tool_id)

    async def create_tool_from_template(self, tenant_id: str, template_id: str,
                                        customizations: Optional[Dict[str, Any]] = None) -> ToolDefinition:
        registry = await self.instances.get_or_build(tenant_id)
        return await registry.create_tool_from_template(template_id, customizations)

    # ── Execution ─────────────────────────────────────────────────

    async def execute(self, tenant_id: str, tool_id: str, payload: Any = None,
                      context: Optional[Dict[str, Any]] = None) -> ExecutionResult:
        """
        Run a tool. Raises ToolNotFoundError for an unknown id; every remote
        failure is reported in the returned result instead.
        """
        registry = await self.instances.get_or_build(tenant_id)
        instance = registry.get_tool(tool_id)
        if instance is None:
            raise ToolNotFoundError(tool_id, tenant_id)

        policy = instance.definition.cache
        if policy.enabled:
            cached = await self.response_cache.get(tenant_id, tool_id, payload)
            if cached is not None:
                result = ExecutionResult.model_validate(cached)
                result.cache_hit = True
                return result

        result = await instance.execute(payload, context)

        # A mutation may have landed while the call was in flight; its result must not be cached.
        if policy.enabled and result.success and self.instances.is_current(tenant_id, registry):
            await self.response_cache.set(
                tenant_id, tool_id, payload,
                result.model_dump(mode="json", by_alias=True), ttl=policy.ttl,
            )
        return result

    # ── Health ────────────────────────────────────────────────────

    async def health_check(self, tenant_id: str, tool_id: str) -> HealthRecord:
        registry = await self.instances.get_or_build(tenant_id)
        return await self.health.check(registry.get_tool(tool_id), tool_id)

    async def health_check_all(self, tenant_id: str) -> HealthSummary:
        registry = await self.instances.get_or_build(tenant_id)
        return await self.health.check_all(registry)

    # ── Cache control ─────────────────────────────────────────────

    async def invalidate_response_cache(self, tenant_id: str, tool_id: Optional[str] = None) -> int:
        if tool_id:
            return await self.response_cache.invalidate_tool(tenant_id, tool_id)
        return await self.response_cache.invalidate_tenant(tenant_id)

    async def get_stats(self, tenant_id: str) -> Dict[str, Any]:
        registry = await self.instances.get_or_build(tenant_id)
        return {
            **registry.get_stats(),
            "instance_cache": self.instances.get_stats(),
            "response_cache": self.response_cache.get_stats(),
        }

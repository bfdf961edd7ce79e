"""
Tool Instance Cache — per-tenant ToolRegistry cache with single-flight builds.

Concurrent get_or_build() calls for an uninitialized tenant share one build task.
invalidate() bumps the tenant's generation, so a build that started before the
invalidation is handed to the callers already waiting on it but never stored.
"""

import asyncio
import logging
from typing import Any, Dict, List

from toolengine.db.store import ToolStore
from toolengine.tool_builder.events import ToolEventBus, ToolMutated
from toolengine.tool_builder.executor import RequestExecutor
from toolengine.tool_builder.rate_limit import LimiterPool
from toolengine.tool_builder.tool_registry import ToolRegistry

logger = logging.getLogger(__name__)


class ToolInstanceCache:

    def __init__(self, store: ToolStore, executor: RequestExecutor, events: ToolEventBus):
        self._store = store
        self._executor = executor
        self._events = events
        self._registries: Dict[str, ToolRegistry] = {}
        self._building: Dict[str, asyncio.Task] = {}
        self._generation: Dict[str, int] = {}
        self.limiters = LimiterPool()
        self._builds = 0
        self._hits = 0
        events.subscribe(self.on_tool_mutated)

    async def get_or_build(self, tenant_id: str) -> ToolRegistry:
        """The tenant's registry, building it at most once across concurrent callers."""
        registry = self._registries.get(tenant_id)
        if registry is not None:
            self._hits += 1
            return registry

        task = self._building.get(tenant_id)
        if task is None:
            generation = self._generation.get(tenant_id, 0)
            task = asyncio.ensure_future(self._build(tenant_id, generation))
            self._building[tenant_id] = task
            task.add_done_callback(lambda t: self._build_done(tenant_id, t))
        else:
            logger.debug(f"[CACHE] Joining in-flight registry build for '{tenant_id}'")

        # shield: one caller's cancellation must not cancel the shared build
        return await asyncio.shield(task)

    async def _build(self, tenant_id: str, generation: int) -> ToolRegistry:
        self._builds += 1
        registry = ToolRegistry(tenant_id, self._store, self._executor, self._events, self.limiters)
        await registry.initialize()
        if self._generation.get(tenant_id, 0) == generation:
            self._registries[tenant_id] = registry
        else:
            logger.info(f"[CACHE] Discarding stale registry build for '{tenant_id}'")
        return registry

    def _build_done(self, tenant_id: str, task: asyncio.Task) -> None:
        if self._building.get(tenant_id) is task:
            del self._building[tenant_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[CACHE] Registry build for '{tenant_id}' failed: {task.exception()}")

    async def invalidate(self, tenant_id: str) -> None:
        """Evict the tenant's registry and orphan any in-flight build."""
        self._generation[tenant_id] = self._generation.get(tenant_id, 0) + 1
        self._registries.pop(tenant_id, None)
        self._building.pop(tenant_id, None)
        logger.info(f"[CACHE] Invalidated tool registry for '{tenant_id}'")

    async def invalidate_all(self) -> None:
        for tenant_id in set(self._registries) | set(self._building):
            await self.invalidate(tenant_id)

    async def on_tool_mutated(self, event: ToolMutated) -> None:
        await self.invalidate(event.tenant_id)

    def is_current(self, tenant_id: str, registry: ToolRegistry) -> bool:
        return self._registries.get(tenant_id) is registry

    def cached_tenants(self) -> List[str]:
        return sorted(self._registries)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "tenants": len(self._registries),
            "builds": self._builds,
            "in_flight": len(self._building),
            "hits": self._hits,
        }

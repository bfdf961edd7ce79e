"""
Tool Registry — per-tenant mapping of tool id to compiled ToolInstance.

The registry is also the tenant's Tool Instance Builder: it loads active definitions
from the Tool Definition Store, compiles them, and performs validated CRUD. Every
successful Store write publishes a ToolMutated event so both caches evict.
"""

import copy
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from toolengine.db.store import ToolStore
from toolengine.tool_builder import templates
from toolengine.tool_builder.errors import (
    InitializationError,
    ToolAlreadyExistsError,
    ToolEngineError,
    ToolNotFoundError,
)
from toolengine.tool_builder.events import ToolEventBus, ToolMutated
from toolengine.tool_builder.executor import RequestExecutor
from toolengine.tool_builder.models import (
    ExecutionResult,
    ToolDefinition,
    ToolStatus,
    wire_keys,
)
from toolengine.tool_builder.rate_limit import LimiterPool, SlidingWindowLimiter
from toolengine.tool_builder.validation import compile_schema, validate_definition

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════════
# TOOL INSTANCE
# ══════════════════════════════════════════════════════════════════════════════

class ToolInstance:
    """
    Compiled, executable form of one ToolDefinition.
    Holds a private copy of the definition, compiled schema validators and the
    tool's rate limiter. Rebuilt (never mutated) when the definition changes; the
    limiter itself comes from the LimiterPool and outlives the instance.
    """

    def __init__(self, tenant_id: str, definition: ToolDefinition, executor: RequestExecutor,
                 limiter: Optional[SlidingWindowLimiter] = None):
        self.tenant_id = tenant_id
        self._definition = definition.model_copy(deep=True)
        self._executor = executor
        self.input_validator = compile_schema(definition.input_schema)
        self.output_validator = compile_schema(definition.output_schema)
        policy = definition.rate_limit
        if limiter is None and policy is not None:
            limiter = SlidingWindowLimiter(policy.requests, policy.window)
        self.limiter = limiter

    @property
    def id(self) -> str:
        return self._definition.id

    @property
    def definition(self) -> ToolDefinition:
        return self._definition

    async def execute(self, payload: Any, context: Optional[Dict[str, Any]] = None) -> ExecutionResult:
        return await self._executor.execute(self, payload, context)

    def __repr__(self):
        return f"<ToolInstance {self.tenant_id}/{self.id} {self._definition.method.value} {self._definition.api_endpoint}>"


# ══════════════════════════════════════════════════════════════════════════════
# TENANT REGISTRY
# ══════════════════════════════════════════════════════════════════════════════

def _now() -> datetime:
    return datetime.now(timezone.utc)


class ToolRegistry:
    """
    Tools for one tenant. Created and owned by the ToolInstanceCache; never shared
    across tenants.
    """

    def __init__(self, tenant_id: str, store: ToolStore, executor: RequestExecutor,
                 events: Optional[ToolEventBus] = None, limiters: Optional[LimiterPool] = None):
        self.tenant_id = tenant_id
        self._store = store
        self._executor = executor
        self._events = events or ToolEventBus()
        self._limiters = limiters if limiters is not None else LimiterPool()
        self._tools: Dict[str, ToolInstance] = {}
        self._initialized = False
        self.skipped: Dict[str, str] = {}

    # ── Build ─────────────────────────────────────────────────────

    def _compile(self, definition: ToolDefinition) -> ToolInstance:
        limiter = self._limiters.limiter_for(self.tenant_id, definition.id, definition.rate_limit)
        return ToolInstance(self.tenant_id, definition, self._executor, limiter)

    async def initialize(self) -> "ToolRegistry":
        """Load and compile every active definition. Idempotent."""
        if self._initialized:
            return self
        try:
            records = await self._store.list(self.tenant_id)
        except Exception as e:
            logger.error(f"[TOOLS] Store unavailable for tenant '{self.tenant_id}': {e}")
            raise InitializationError(
                f"Failed to load tools for tenant '{self.tenant_id}': {e}",
                {"tenant_id": self.tenant_id},
            ) from e

        for record in records:
            tool_id = record.get("id", "<missing id>")
            if record.get("status", ToolStatus.ACTIVE.value) != ToolStatus.ACTIVE.value:
                continue
            try:
                self._tools[tool_id] = self._compile(validate_definition(record))
            except ToolEngineError as e:
                self.skipped[tool_id] = e.message
                logger.warning(f"[TOOLS] Skipping tool {self.tenant_id}/{tool_id}: {e.message}")

        self._initialized = True
        logger.info(
            f"[TOOLS] Initialized tenant '{self.tenant_id}': {len(self._tools)} tool(s)"
            + (f", {len(self.skipped)} skipped" if self.skipped else "")
        )
        return self

    @property
    def initialized(self) -> bool:
        return self._initialized

    def _register(self, definition: ToolDefinition) -> None:
        if definition.status == ToolStatus.ACTIVE:
            self._tools[definition.id] = self._compile(definition)
        else:
            self._tools.pop(definition.id, None)

    async def _publish(self, tool_id: str, action: str) -> None:
        await self._events.publish(ToolMutated(self.tenant_id, tool_id, action))

    # ── CRUD ──────────────────────────────────────────────────────

    async def create_tool(self, data: Dict[str, Any]) -> ToolDefinition:
        record = wire_keys(dict(data))
        now = _now().isoformat()
        record["createdAt"] = now
        record["updatedAt"] = now
        definition = validate_definition(record)

        if await self._store.get(self.tenant_id, definition.id) is not None:
            raise ToolAlreadyExistsError(definition.id, self.tenant_id)
        await self._store.create(self.tenant_id, definition.to_record())

        self._register(definition)
        await self._publish(definition.id, "created")
        logger.info(f"[TOOLS] Created tool {self.tenant_id}/{definition.id} ({definition.name})")
        return definition.model_copy(deep=True)

    async def _existing(self, tool_id: str) -> Dict[str, Any]:
        existing = await self._store.get(self.tenant_id, tool_id)
        if existing is None:
            raise ToolNotFoundError(tool_id, self.tenant_id)
        return existing

    async def _replace(self, tool_id: str, record: Dict[str, Any], action: str) -> ToolDefinition:
        definition = validate_definition(record)
        if await self._store.update(self.tenant_id, tool_id, definition.to_record()) is None:
            raise ToolNotFoundError(tool_id, self.tenant_id)
        self._register(definition)
        await self._publish(tool_id, action)
        logger.info(f"[TOOLS] {action.capitalize()} tool {self.tenant_id}/{tool_id} (status={definition.status.value})")
        return definition.model_copy(deep=True)

    async def update_tool(self, tool_id: str, data: Dict[str, Any]) -> ToolDefinition:
        """Full replacement; fields not supplied fall back to definition defaults."""
        existing = await self._existing(tool_id)
        record = wire_keys(dict(data))
        record["id"] = tool_id
        record["createdAt"] = existing.get("createdAt")
        record["updatedAt"] = _now().isoformat()
        return await self._replace(tool_id, record, "updated")

    async def patch_tool(self, tool_id: str, partial: Dict[str, Any]) -> ToolDefinition:
        """Merge only the supplied top-level fields onto the stored definition."""
        existing = await self._existing(tool_id)
        record = {**existing, **wire_keys(copy.deepcopy(partial))}
        record["id"] = tool_id
        record["createdAt"] = existing.get("createdAt")
        record["updatedAt"] = _now().isoformat()
        return await self._replace(tool_id, record, "updated")

    async def delete_tool(self, tool_id: str) -> None:
        if not await self._store.delete(self.tenant_id, tool_id):
            raise ToolNotFoundError(tool_id, self.tenant_id)
        self._tools.pop(tool_id, None)
        self._limiters.discard(self.tenant_id, tool_id)
        await self._publish(tool_id, "deleted")
        logger.info(f"[TOOLS] Deleted tool {self.tenant_id}/{tool_id}")

    def get_tool(self, tool_id: str) -> Optional[ToolInstance]:
        return self._tools.get(tool_id)

    def list_tools(self) -> List[ToolDefinition]:
        """Active tool definitions, most recently updated first."""
        defs = [inst.definition.model_copy(deep=True) for inst in self._tools.values()]
        return sorted(defs, key=lambda d: d.updated_at, reverse=True)

    def tool_ids(self) -> List[str]:
        return list(self._tools)

    def __len__(self):
        return len(self._tools)

    # ── Templates ─────────────────────────────────────────────────

    def get_templates(self) -> List[templates.ToolTemplate]:
        return templates.get_templates()

    async def create_tool_from_template(self, template_id: str,
                                        customizations: Optional[Dict[str, Any]] = None) -> ToolDefinition:
        template = templates.get_template(template_id)
        if template is None:
            raise ToolNotFoundError(template_id, kind="Template")
        record = templates.render_template(template, wire_keys(customizations or {}))
        return await self.create_tool(record)

    # ── Stats ─────────────────────────────────────────────────────

    def get_stats(self) -> Dict[str, Any]:
        defs = [inst.definition for inst in self._tools.values()]
        by_method: Dict[str, int] = {}
        for d in defs:
            by_method[d.method.value] = by_method.get(d.method.value, 0) + 1
        return {
            "tenant_id": self.tenant_id,
            "total_tools": len(defs),
            "by_method": by_method,
            "cached_responses_enabled": sum(1 for d in defs if d.cache.enabled),
            "skipped": dict(self.skipped),
        }

"""
Tool Definition Store — durable per-tenant key-value store of tool records.
Records are wire dicts (camelCase keys, ISO-8601 timestamps).
"""

import copy
import logging
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from toolengine.tool_builder.errors import ToolAlreadyExistsError

logger = logging.getLogger(__name__)


@runtime_checkable
class ToolStore(Protocol):
    async def list(self, tenant_id: str) -> List[Dict[str, Any]]: ...

    async def get(self, tenant_id: str, tool_id: str) -> Optional[Dict[str, Any]]: ...

    async def create(self, tenant_id: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert; raises ToolAlreadyExistsError when the id is taken."""
        ...

    async def update(self, tenant_id: str, tool_id: str, record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Replace; returns None when the id is unknown."""
        ...

    async def delete(self, tenant_id: str, tool_id: str) -> bool: ...


class InMemoryToolStore:
    """Process-local store for development and tests. Records are deep-copied in and out."""

    def __init__(self):
        self._tools: Dict[str, Dict[str, Dict[str, Any]]] = {}

    async def list(self, tenant_id: str) -> List[Dict[str, Any]]:
        return [copy.deepcopy(r) for r in self._tools.get(tenant_id, {}).values()]

    async def get(self, tenant_id: str, tool_id: str) -> Optional[Dict[str, Any]]:
        record = self._tools.get(tenant_id, {}).get(tool_id)
        return copy.deepcopy(record) if record is not None else None

    async def create(self, tenant_id: str, record: Dict[str, Any]) -> Dict[str, Any]:
        tools = self._tools.setdefault(tenant_id, {})
        if record["id"] in tools:
            raise ToolAlreadyExistsError(record["id"], tenant_id)
        tools[record["id"]] = copy.deepcopy(record)
        logger.info(f"[DB] Created tool {tenant_id}/{record['id']} (memory)")
        return copy.deepcopy(record)

    async def update(self, tenant_id: str, tool_id: str, record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        tools = self._tools.get(tenant_id, {})
        if tool_id not in tools:
            return None
        tools[tool_id] = copy.deepcopy(record)
        logger.info(f"[DB] Updated tool {tenant_id}/{tool_id} (memory)")
        return copy.deepcopy(record)

    async def delete(self, tenant_id: str, tool_id: str) -> bool:
        removed = self._tools.get(tenant_id, {}).pop(tool_id, None)
        if removed is not None:
            logger.info(f"[DB] Deleted tool {tenant_id}/{tool_id} (memory)")
        return removed is not None

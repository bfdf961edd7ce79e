"""
ToolRepository — async Tool Definition Store backed by PostgreSQL.
Bridges between wire tool records and the SQLAlchemy ToolModel; the
authentication block is Fernet-encrypted at rest.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from toolengine.db.engine import get_session_factory
from toolengine.db.models import ToolModel
from toolengine.tool_builder.errors import ToolAlreadyExistsError
from toolengine.utils.crypto import decrypt_json, encrypt_json

logger = logging.getLogger(__name__)

# Tag substituted for an auth block that cannot be decrypted; the registry then
# rejects the tool instead of calling the API without credentials.
UNREADABLE_AUTH = "undecryptable"


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    return datetime.now(timezone.utc)


def _record_to_row(tenant_id: str, record: Dict[str, Any]) -> dict:
    """Convert a wire tool record to a dict for DB insertion."""
    body = {k: v for k, v in record.items() if k != "authentication"}
    return {
        "tenant_id": tenant_id,
        "id": record["id"],
        "name": record.get("name", ""),
        "description": record.get("description", ""),
        "method": record.get("method", "GET"),
        "api_endpoint": record.get("apiEndpoint", ""),
        "status": record.get("status", "active"),
        "definition_json": body,
        "auth_secret": encrypt_json(record.get("authentication")),
        "created_at": _parse_ts(record.get("createdAt")),
        "updated_at": _parse_ts(record.get("updatedAt")),
    }


def _row_to_record(row: ToolModel) -> Dict[str, Any]:
    """Convert a ToolModel row back to a wire tool record."""
    record = dict(row.definition_json or {})
    if row.auth_secret:
        try:
            record["authentication"] = decrypt_json(row.auth_secret)
        except ValueError as e:
            logger.error(f"[DB] Tool {row.tenant_id}/{row.id}: {e}")
            record["authentication"] = {"type": UNREADABLE_AUTH}
    return record


class ToolRepository:
    """Async CRUD for tool records; implements the ToolStore protocol."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory

    def _sf(self) -> async_sessionmaker:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    async def list(self, tenant_id: str) -> List[Dict[str, Any]]:
        async with self._sf()() as session:
            result = await session.execute(
                select(ToolModel)
                .where(ToolModel.tenant_id == tenant_id)
                .order_by(ToolModel.updated_at.desc())
            )
            return [_row_to_record(r) for r in result.scalars().all()]

    async def get(self, tenant_id: str, tool_id: str) -> Optional[Dict[str, Any]]:
        async with self._sf()() as session:
            row = await session.get(ToolModel, (tenant_id, tool_id))
            return _row_to_record(row) if row else None

    async def create(self, tenant_id: str, record: Dict[str, Any]) -> Dict[str, Any]:
        async with self._sf()() as session:
            session.add(ToolModel(**_record_to_row(tenant_id, record)))
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ToolAlreadyExistsError(record["id"], tenant_id) from e
        logger.info(f"[DB] Created tool {tenant_id}/{record['id']}")
        return record

    async def update(self, tenant_id: str, tool_id: str, record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with self._sf()() as session:
            row = await session.get(ToolModel, (tenant_id, tool_id))
            if not row:
                return None
            data = _record_to_row(tenant_id, {**record, "id": tool_id})
            for k, v in data.items():
                setattr(row, k, v)
            await session.commit()
        logger.info(f"[DB] Updated tool {tenant_id}/{tool_id}")
        return record

    async def delete(self, tenant_id: str, tool_id: str) -> bool:
        async with self._sf()() as session:
            result = await session.execute(
                delete(ToolModel).where(ToolModel.tenant_id == tenant_id, ToolModel.id == tool_id)
            )
            await session.commit()
        deleted = result.rowcount > 0
        if deleted:
            logger.info(f"[DB] Deleted tool {tenant_id}/{tool_id}")
        return deleted

    async def count(self, tenant_id: str, status: Optional[str] = None) -> int:
        stmt = select(func.count(ToolModel.id)).where(ToolModel.tenant_id == tenant_id)
        if status:
            stmt = stmt.where(ToolModel.status == status)
        async with self._sf()() as session:
            result = await session.execute(stmt)
            return result.scalar_one()

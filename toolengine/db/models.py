"""
SQLAlchemy ORM models for the Tool Definition Store.
"""
from datetime import datetime

from sqlalchemy import JSON, DateTime, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from toolengine.db.base import Base


# ── Tools ──────────────────────────────────────────────────────────────────────

class ToolModel(Base):
    """Persisted tool definition, one row per (tenant, tool id)."""
    __tablename__ = "tools"

    tenant_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, default="")
    method: Mapped[str] = mapped_column(String(8), default="GET")
    api_endpoint: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(32), default="active", index=True)
    # full wire record minus the authentication block
    definition_json: Mapped[dict] = mapped_column(JSON().with_variant(JSONB, "postgresql"), default=dict)
    # Fernet token of the authentication block
    auth_secret: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)

    def __repr__(self) -> str:
        return f"<Tool tenant={self.tenant_id} id={self.id} name={self.name!r} status={self.status}>"

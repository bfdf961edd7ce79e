"""Database package — Tool Definition Store protocol, in-memory and async SQLAlchemy stores."""
from toolengine.db.store import InMemoryToolStore, ToolStore

__all__ = ["InMemoryToolStore", "ToolStore"]

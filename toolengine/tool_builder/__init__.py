"""Tool Builder — compile declarative HTTP API tool definitions into executable tools."""
from toolengine.tool_builder.models import ExecutionResult, ToolDefinition, ToolStatus

__all__ = ["ExecutionResult", "ToolDefinition", "ToolStatus"]

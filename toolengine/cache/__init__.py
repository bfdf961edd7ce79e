"""
Caching layer for the tool engine.
ResponseCache holds successful execution results (L1 memory + optional Redis L2);
ToolInstanceCache holds per-tenant compiled tool registries.
"""
from toolengine.cache.cache_layer import ResponseCache
from toolengine.cache.instance_cache import ToolInstanceCache

__all__ = ["ResponseCache", "ToolInstanceCache"]

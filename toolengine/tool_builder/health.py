"""
Health Monitor — lightweight probes against tool endpoints.

A probe uses a safe verb only (GET/HEAD/OPTIONS), carries the tool's auth but no
body, and never retries. Probes never change tool state.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Dict, Optional

import httpx

from toolengine.config.settings import settings
from toolengine.tool_builder.errors import ToolEngineError
from toolengine.tool_builder.executor import RequestExecutor
from toolengine.tool_builder.models import HealthRecord, HealthSummary
from toolengine.tool_builder.tool_registry import ToolInstance, ToolRegistry

logger = logging.getLogger(__name__)


class HealthMonitor:

    def __init__(self, executor: RequestExecutor, concurrency: Optional[int] = None,
                 probe_timeout_ms: Optional[int] = None):
        self._executor = executor
        self.concurrency = concurrency or settings.health_check_concurrency
        self.probe_timeout_ms = probe_timeout_ms or settings.health_probe_timeout_ms

    async def check(self, instance: Optional[ToolInstance], tool_id: str) -> HealthRecord:
        if instance is None:
            return HealthRecord(tool_id=tool_id, healthy=False, status="not_found",
                                error=f"Tool with ID '{tool_id}' not found")

        definition = instance.definition
        timeout_ms = min(definition.timeout, self.probe_timeout_ms)
        request = self._executor.build_probe(definition)
        started = time.perf_counter()
        try:
            response = await self._executor.send(request, timeout_ms)
        except ToolEngineError as e:
            logger.info(f"[HEALTH] {instance.tenant_id}/{tool_id} probe failed: {e.message}")
            return HealthRecord(
                tool_id=tool_id,
                healthy=False,
                status="timeout" if e.code == "timeout" else "error",
                error=e.message,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.info(f"[HEALTH] {instance.tenant_id}/{tool_id} probe could not be sent: {e}")
            return HealthRecord(tool_id=tool_id, healthy=False, status="error", error=str(e))

        elapsed = round((time.perf_counter() - started) * 1000, 1)
        healthy = response.status_code < 500
        return HealthRecord(
            tool_id=tool_id,
            healthy=healthy,
            status="healthy" if healthy else "unhealthy",
            response_time=elapsed,
            status_code=response.status_code,
            error=None if healthy else f"HTTP {response.status_code}: {response.reason_phrase}",
        )

    async def check_all(self, registry: ToolRegistry) -> HealthSummary:
        """Probe every tool with bounded concurrency; one failing probe never aborts the rest."""
        semaphore = asyncio.Semaphore(self.concurrency)

        async def probe(tool_id: str) -> HealthRecord:
            async with semaphore:
                try:
                    return await self.check(registry.get_tool(tool_id), tool_id)
                except Exception as e:
                    logger.exception(f"[HEALTH] {registry.tenant_id}/{tool_id} probe crashed")
                    return HealthRecord(tool_id=tool_id, healthy=False, status="error",
                                        error=str(e) or type(e).__name__)

        tool_ids = registry.tool_ids()
        records = await asyncio.gather(*(probe(t) for t in tool_ids))
        tools: Dict[str, HealthRecord] = dict(zip(tool_ids, records))

        timed = [r.response_time for r in records if r.response_time is not None]
        healthy = sum(1 for r in records if r.healthy)
        summary = HealthSummary(
            tenant_id=registry.tenant_id,
            total=len(records),
            healthy=healthy,
            unhealthy=len(records) - healthy,
            average_response_time=round(sum(timed) / len(timed), 1) if timed else 0.0,
            tools=tools,
            timestamp=datetime.now(timezone.utc),
        )
        logger.info(
            f"[HEALTH] {registry.tenant_id}: {summary.healthy}/{summary.total} healthy, "
            f"avg {summary.average_response_time}ms"
        )
        return summary

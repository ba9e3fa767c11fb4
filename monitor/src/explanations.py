"""
Global fault-code explanation cache.

Keyed by fault code only: a code means the same thing on every device of
the fleet. The first explanation obtained for a code (including a fallback
produced while the LLM was unavailable) is stored and never refreshed.
Concurrent lookups of the same uncached code share one LLM call through a
per-code asyncio.Lock.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from monitor.src.llm import LlmAdvisor
    from monitor.src.models import ExplanationRecord
    from monitor.src.storage import Storage

logger = logging.getLogger(__name__)


class ExplanationCache:
    """Read-through cache in front of LlmAdvisor.explain_fault()."""

    def __init__(self, storage: Storage, advisor: LlmAdvisor) -> None:
        self._storage = storage
        self._advisor = advisor
        self._locks: dict[str, asyncio.Lock] = {}

    async def get(self, fault_code: str) -> ExplanationRecord | None:
        return await self._storage.get_explanation(fault_code)

    async def get_or_explain(
        self,
        fault_code: str,
        context: dict[str, Any] | None = None,
    ) -> ExplanationRecord:
        """Return the cached explanation, asking the LLM only on a miss."""
        cached = await self._storage.get_explanation(fault_code)
        if cached is not None:
            return cached

        lock = self._locks.setdefault(fault_code, asyncio.Lock())
        async with lock:
            cached = await self._storage.get_explanation(fault_code)
            if cached is not None:
                return cached
            record = await self._advisor.explain_fault(fault_code, context)
            stored = await self._storage.insert_explanation(record)
            logger.info("Cached explanation for fault code %s", fault_code)
            return stored

    async def all(self) -> list[ExplanationRecord]:
        """Every known explanation, ordered by fault code."""
        return await self._storage.list_explanations()

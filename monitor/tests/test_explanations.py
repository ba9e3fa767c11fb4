"""
Unit tests for the global fault explanation cache.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from monitor.src.explanations import ExplanationCache
from monitor.src.llm import fallback_explanation
from monitor.src.models import ExplanationRecord
from monitor.src.storage import MemoryStorage


def _mock_advisor() -> MagicMock:
    advisor = MagicMock()

    async def explain(code, context=None):
        await asyncio.sleep(0)
        return ExplanationRecord(fault_code=code, name=f"Explained {code}")

    advisor.explain_fault = AsyncMock(side_effect=explain)
    return advisor


class TestExplanationCache:
    @pytest.mark.asyncio
    async def test_miss_asks_advisor_once(self) -> None:
        advisor = _mock_advisor()
        cache = ExplanationCache(MemoryStorage(), advisor)

        first = await cache.get_or_explain("23", {"deviceSn": "SN-001"})
        second = await cache.get_or_explain("23", {"deviceSn": "SN-002"})

        assert first == second
        assert first.name == "Explained 23"
        advisor.explain_fault.assert_awaited_once_with("23", {"deviceSn": "SN-001"})

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_call(self) -> None:
        advisor = _mock_advisor()
        cache = ExplanationCache(MemoryStorage(), advisor)

        results = await asyncio.gather(*(cache.get_or_explain("41") for _ in range(5)))

        assert {r.name for r in results} == {"Explained 41"}
        assert advisor.explain_fault.await_count == 1

    @pytest.mark.asyncio
    async def test_fallback_is_cached(self) -> None:
        advisor = MagicMock()
        advisor.explain_fault = AsyncMock(return_value=fallback_explanation("7"))
        cache = ExplanationCache(MemoryStorage(), advisor)

        await cache.get_or_explain("7")
        await cache.get_or_explain("7")

        assert advisor.explain_fault.await_count == 1
        assert (await cache.get("7")).cause.startswith("Unknown")

    @pytest.mark.asyncio
    async def test_all_sorted(self) -> None:
        cache = ExplanationCache(MemoryStorage(), _mock_advisor())
        await cache.get_or_explain("9")
        await cache.get_or_explain("10")

        assert [r.fault_code for r in await cache.all()] == ["10", "9"]

    @pytest.mark.asyncio
    async def test_get_unknown_code(self) -> None:
        cache = ExplanationCache(MemoryStorage(), _mock_advisor())

        assert await cache.get("999") is None

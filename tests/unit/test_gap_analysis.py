"""Unit tests for the keyword gap analysis session."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from gap_engine.core.exceptions import InputError, LimitExceededError
from gap_engine.integrations.session_store import InMemorySessionStore
from gap_engine.schemas.gap import GapRecord
from gap_engine.services.gaps.analysis import KeywordGapAnalysis
from gap_engine.services.gaps.cache import build_cache_key
from gap_engine.services.gaps.resolver import ResolutionResult


class _StubResolver:
    """Counts calls and returns a fixed list per competitor set.

    ``delays`` maps a first competitor to its own resolution delay.
    """

    def __init__(
        self,
        delay: float = 0,
        keywords: list[str] | None = None,
        delays: dict[str, float] | None = None,
    ) -> None:
        self.delay = delay
        self.keywords = keywords or [f"kw {i}" for i in range(20)]
        self.delays = delays or {}
        self.calls: list[dict[str, Any]] = []

    async def resolve(self, domain: str, competitors: list[str], corpus: list, **kwargs: Any) -> ResolutionResult:
        self.calls.append({"domain": domain, "competitors": competitors, "corpus": corpus, **kwargs})
        delay = self.delays.get(competitors[0], self.delay)
        if delay:
            await asyncio.sleep(delay)
        records = [
            GapRecord(keyword=keyword, volume=100 + i, difficulty=20, competitor=competitors[i % len(competitors)])
            for i, keyword in enumerate(self.keywords)
        ]
        return ResolutionResult(records=records, tier="direct", min_per_competitor=1)


CORPUS = [{"keyword": "crm", "competitor_positions": {"a.com": 3}}]


class _UnavailableStore:
    """Session store whose backend refuses every connection."""

    def __init__(self) -> None:
        self.attempts = 0

    async def load(self, key: str) -> bytes | None:
        self.attempts += 1
        raise ConnectionError("redis down")

    async def save(self, key: str, data: bytes) -> None:
        self.attempts += 1
        raise ConnectionError("redis down")


@pytest.mark.asyncio
async def test_same_domain_in_different_forms_is_a_cache_hit() -> None:
    resolver = _StubResolver()
    analysis = KeywordGapAnalysis(resolver)  # type: ignore[arg-type]

    first = await analysis.analyze("https://www.example.com", ["a.com", "b.com"], CORPUS)
    second = await analysis.analyze("example.com", ["b.com", "a.com"], CORPUS)

    assert len(resolver.calls) == 1
    assert second is first


@pytest.mark.asyncio
async def test_changed_location_triggers_new_resolution() -> None:
    resolver = _StubResolver()
    analysis = KeywordGapAnalysis(resolver)  # type: ignore[arg-type]

    await analysis.analyze("example.com", ["a.com"], CORPUS, location_code=2840)
    await analysis.analyze("example.com", ["a.com"], CORPUS, location_code=2826)

    assert len(resolver.calls) == 2
    assert resolver.calls[1]["location_code"] == 2826


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_in_flight_resolution() -> None:
    resolver = _StubResolver(delay=0.05)
    analysis = KeywordGapAnalysis(resolver)  # type: ignore[arg-type]

    first, second = await asyncio.gather(
        analysis.analyze("example.com", ["a.com", "b.com"], CORPUS),
        analysis.analyze("www.example.com", ["b.com", "a.com"], CORPUS),
    )

    assert len(resolver.calls) == 1
    assert first is second
    key = build_cache_key("example.com", ["a.com", "b.com"], 1, 2840, "dataforseo-live")
    assert not analysis.in_flight(key)


@pytest.mark.asyncio
async def test_refresh_resolves_again_for_same_key() -> None:
    resolver = _StubResolver()
    analysis = KeywordGapAnalysis(resolver)  # type: ignore[arg-type]

    await analysis.analyze("example.com", ["a.com"], CORPUS)
    await analysis.refresh("example.com", ["a.com"], CORPUS)

    assert len(resolver.calls) == 2


@pytest.mark.asyncio
async def test_input_errors_surface_without_resolution() -> None:
    resolver = _StubResolver()
    analysis = KeywordGapAnalysis(resolver)  # type: ignore[arg-type]

    with pytest.raises(InputError):
        await analysis.analyze("example.com", [], CORPUS)
    with pytest.raises(InputError):
        await analysis.analyze("", ["a.com"], CORPUS)
    with pytest.raises(InputError):
        await analysis.analyze("example.com", ["a.com"], None)  # type: ignore[arg-type]

    assert resolver.calls == []


@pytest.mark.asyncio
async def test_selection_pruned_when_keyword_universe_changes() -> None:
    resolver = _StubResolver(keywords=["kw 0", "kw 1", "kw 2"])
    analysis = KeywordGapAnalysis(resolver)  # type: ignore[arg-type]
    await analysis.analyze("example.com", ["a.com"], CORPUS)
    analysis.select("kw 0")
    analysis.select("kw 2")

    resolver.keywords = ["kw 2", "kw 9"]
    await analysis.analyze("example.com", ["b.com"], CORPUS)

    assert analysis.selection.all() == ["kw 2"]


@pytest.mark.asyncio
async def test_view_controls_update_cached_view_state() -> None:
    analysis = KeywordGapAnalysis(_StubResolver())  # type: ignore[arg-type]
    await analysis.analyze("example.com", ["a.com", "b.com"], CORPUS)

    analysis.set_page_size(5)
    analysis.go_to_page(3)
    assert analysis.page_info().index == 3

    analysis.filter_by_competitor("b.com")
    assert analysis.page_info().index == 1
    assert analysis.page_info().total == 10
    assert {r.competitor for r in analysis.visible()} == {"b.com"}

    analysis.filter_by_competitor(None)
    analysis.filter_by_volume(100, 104)
    assert analysis.page_info().total == 5
    analysis.filter_by_difficulty(0, 10)
    assert analysis.visible() == []
    assert analysis.competitors() == ["a.com", "b.com"]


def test_view_controls_require_loaded_analysis() -> None:
    analysis = KeywordGapAnalysis(_StubResolver())  # type: ignore[arg-type]

    with pytest.raises(InputError):
        analysis.go_to_page(2)
    assert analysis.competitors() == []


def test_select_beyond_limit_is_rejected() -> None:
    analysis = KeywordGapAnalysis(_StubResolver())  # type: ignore[arg-type]
    for i in range(10):
        analysis.select(f"kw {i}")

    with pytest.raises(LimitExceededError):
        analysis.select("kw 10")
    assert len(analysis.selection) == 10
    assert analysis.toggle_selection("kw 0") is False
    analysis.deselect("kw 1")
    assert len(analysis.selection) == 8


@pytest.mark.asyncio
async def test_restore_reloads_entry_view_and_selection() -> None:
    store = InMemorySessionStore()
    analysis = KeywordGapAnalysis(_StubResolver(), store=store, session_id="abc")  # type: ignore[arg-type]
    await analysis.analyze("example.com", ["a.com"], CORPUS)
    analysis.set_page_size(4)
    analysis.select("kw 1")
    await analysis.save()

    resolver = _StubResolver()
    reloaded = KeywordGapAnalysis(resolver, store=store, session_id="abc")  # type: ignore[arg-type]
    entry = await reloaded.restore()
    again = await reloaded.analyze("example.com", ["a.com"], CORPUS)

    assert entry is not None
    assert entry.page.page_size == 4
    assert reloaded.selection.all() == ["kw 1"]
    assert again is entry
    assert resolver.calls == []
    assert store.keys() == ["keyword_gaps:abc:gaps", "keyword_gaps:abc:selection"]


@pytest.mark.asyncio
async def test_restore_ignores_invalid_selection_snapshot() -> None:
    store = InMemorySessionStore()
    await store.save("keyword_gaps:abc:selection", json.dumps(["not", "a", "dict"]).encode())
    analysis = KeywordGapAnalysis(_StubResolver(), store=store, session_id="abc")  # type: ignore[arg-type]

    assert await analysis.restore() is None
    assert len(analysis.selection) == 0


@pytest.mark.asyncio
async def test_overlapping_requests_keep_the_latest_result_cached() -> None:
    resolver = _StubResolver(delays={"a.com": 0.05, "b.com": 0.01})
    analysis = KeywordGapAnalysis(resolver)  # type: ignore[arg-type]

    older, newer = await asyncio.gather(
        analysis.analyze("example.com", ["a.com"], CORPUS),
        analysis.analyze("example.com", ["b.com"], CORPUS),
    )

    assert len(resolver.calls) == 2
    assert older.key.competitors == ("a.com",)
    assert newer.key.competitors == ("b.com",)
    assert analysis.entry is newer
    assert {r.competitor for r in analysis.entry.records} == {"b.com"}


@pytest.mark.asyncio
async def test_superseded_result_does_not_prune_selection() -> None:
    resolver = _StubResolver(keywords=["kw 0", "kw 1"], delays={"a.com": 0.05})
    analysis = KeywordGapAnalysis(resolver)  # type: ignore[arg-type]
    await analysis.analyze("example.com", ["b.com"], CORPUS)
    analysis.select("kw 1")

    slow = asyncio.create_task(analysis.analyze("example.com", ["a.com"], CORPUS))
    await asyncio.sleep(0)
    await analysis.analyze("example.com", ["b.com"], CORPUS)
    resolver.keywords = ["kw 9"]
    await slow

    assert analysis.entry is not None
    assert analysis.entry.key.competitors == ("b.com",)
    assert analysis.selection.all() == ["kw 1"]


@pytest.mark.asyncio
async def test_analyze_survives_unavailable_session_store() -> None:
    store = _UnavailableStore()
    analysis = KeywordGapAnalysis(_StubResolver(), store=store, session_id="abc")  # type: ignore[arg-type]

    entry = await analysis.analyze("example.com", ["a.com"], CORPUS, api_source="sample")
    analysis.select("kw 0")

    assert analysis.entry is entry
    assert len(entry.records) == 20
    assert await analysis.save() is False
    assert await analysis.restore() is entry
    assert analysis.selection.all() == ["kw 0"]
    assert store.attempts == 6

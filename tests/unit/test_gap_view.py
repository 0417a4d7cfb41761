"""Unit tests for filtered, paginated gap views."""

from __future__ import annotations

import math
from datetime import datetime, timezone

import pytest

from gap_engine.core.exceptions import InputError
from gap_engine.schemas.gap import GapRecord
from gap_engine.services.gaps import view as gap_view
from gap_engine.services.gaps.cache import CacheEntry, FilterState, PageState, build_cache_key


def _entry(records: list[GapRecord], page_size: int = 15, index: int = 1) -> CacheEntry:
    key = build_cache_key("example.com", ["a.com", "b.com"], len(records), 2840, "sample")
    return CacheEntry(
        key=key,
        records=tuple(records),
        resolved_at=datetime.now(timezone.utc),
        page=PageState(index=index, page_size=page_size),
    )


def _records(count: int) -> list[GapRecord]:
    return [
        GapRecord(
            keyword=f"keyword {i}",
            volume=i * 50,
            difficulty=i % 101,
            competitor="a.com" if i % 2 == 0 else "B.com",
        )
        for i in range(count)
    ]


@pytest.mark.parametrize(("total", "page_size"), [(0, 15), (1, 15), (15, 15), (16, 15), (37, 5), (10, 3)])
def test_pages_concatenate_to_filtered_list(total: int, page_size: int) -> None:
    records = _records(total)
    entry = _entry(records, page_size=page_size)
    filtered = gap_view.filter_records(entry.records, entry.filter_state)

    pages = []
    for index in range(1, gap_view.page_count(len(filtered), page_size) + 1):
        page = gap_view.view(gap_view.with_page(entry, index))
        assert page
        pages.extend(page)

    assert gap_view.page_count(len(filtered), page_size) == math.ceil(total / page_size)
    assert pages == filtered


def test_competitor_filter_is_case_insensitive_and_resets_page() -> None:
    entry = _entry(_records(40), page_size=5, index=3)

    filtered = gap_view.with_filter(entry, competitor="https://b.com")

    assert filtered.page.index == 1
    assert all(r.competitor == "B.com" for r in gap_view.view(filtered))
    assert gap_view.page_info(filtered).total == 20


def test_volume_and_difficulty_ranges_are_inclusive() -> None:
    entry = _entry(_records(10))

    filtered = gap_view.with_filter(entry, volume_range=(100, 300), difficulty_range=(3, 6))

    assert [r.keyword for r in gap_view.view(filtered)] == ["keyword 3", "keyword 4", "keyword 5", "keyword 6"]


def test_category_filter_uses_search_intent() -> None:
    records = [
        GapRecord(keyword="how to track rankings", volume=100, difficulty=50, competitor="a.com"),
        GapRecord(keyword="best rank tracker", volume=100, difficulty=50, competitor="a.com"),
        GapRecord(keyword="rank tracker price", volume=100, difficulty=50, competitor="a.com"),
        GapRecord(keyword="rank tracker login", volume=100, difficulty=50, competitor="a.com"),
    ]
    entry = _entry(records)

    commercial = gap_view.with_filter(entry, category="commercial")

    assert [r.keyword for r in gap_view.view(commercial)] == ["best rank tracker"]


@pytest.mark.parametrize(
    ("keyword", "difficulty", "expected"),
    [
        ("what is crm", 80, "informational"),
        ("crm vs helpdesk", 10, "commercial"),
        ("buy crm licence", 10, "transactional"),
        ("crm support contact", 10, "navigational"),
        ("crm software", 20, "informational"),
        ("crm software", 60, "commercial"),
    ],
)
def test_categorize_intent(keyword: str, difficulty: int, expected: str) -> None:
    assert gap_view.categorize_intent(keyword, difficulty, 100) == expected


def test_unknown_filter_or_category_is_rejected() -> None:
    entry = _entry(_records(3))

    with pytest.raises(InputError):
        gap_view.with_filter(entry, keyword_type="gaps")
    with pytest.raises(InputError):
        gap_view.with_filter(entry, category="seasonal")


def test_with_page_clamps_to_valid_range() -> None:
    entry = _entry(_records(12), page_size=5)

    assert gap_view.with_page(entry, 0).page.index == 1
    assert gap_view.with_page(entry, 99).page.index == 3


def test_page_size_change_clamps_index() -> None:
    entry = _entry(_records(30), page_size=5, index=6)

    resized = gap_view.with_page_size(entry, 10)
    kept = gap_view.with_page_size(_entry(_records(30), page_size=5, index=2), 10)

    assert resized.page == PageState(index=3, page_size=10)
    assert kept.page.index == 2
    with pytest.raises(InputError):
        gap_view.with_page_size(entry, 0)


def test_page_info_for_middle_and_empty_pages() -> None:
    info = gap_view.page_info(_entry(_records(12), page_size=5, index=3))
    empty = gap_view.page_info(_entry([], page_size=5))

    assert info == gap_view.PageInfo(total=12, pages=3, index=3, start_item=11, end_item=12)
    assert empty == gap_view.PageInfo(total=0, pages=1, index=1, start_item=0, end_item=0)


def test_record_competitors_are_sorted_and_unique() -> None:
    assert gap_view.record_competitors(_records(5)) == ["B.com", "a.com"]


def test_view_never_mutates_records() -> None:
    entry = _entry(_records(10), page_size=3)
    before = entry.records

    gap_view.view(gap_view.with_filter(entry, competitor="a.com", volume_range=(0, 200)))

    assert entry.records is before
    assert entry.filter_state == FilterState()

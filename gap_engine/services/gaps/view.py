"""Filtered, paginated views over a cached gap list.

Everything here is a pure function of a ``CacheEntry``: records are never
mutated, and view-state changes return a new entry.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, replace
from typing import Any

from gap_engine.core.exceptions import InputError
from gap_engine.schemas.gap import GapRecord
from gap_engine.services.gaps.cache import ALL, CacheEntry, FilterState, PageState
from gap_engine.services.gaps.domains import domain_key

INTENT_PATTERNS: tuple[tuple[str, tuple[str, ...]], ...] = (
    (
        "informational",
        ("how", "what", "why", "when", "where", "guide", "tutorial", "tips", "learn", "example", "definition"),
    ),
    ("navigational", ("login", "signin", "account", "download", "contact", "support", "official")),
    ("commercial", ("best", "top", "review", "compare", "vs", "versus", "comparison", "alternative")),
    ("transactional", ("buy", "price", "cost", "purchase", "cheap", "deal", "discount", "order", "shop")),
)
CATEGORIES: frozenset[str] = frozenset(name for name, _ in INTENT_PATTERNS)


@dataclass(frozen=True, slots=True)
class PageInfo:
    """Display numbers for the current page (``start_item`` is 1-based)."""

    total: int
    pages: int
    index: int
    start_item: int
    end_item: int


def categorize_intent(keyword: str, difficulty: int, volume: int) -> str:
    """Classify search intent from keyword patterns, falling back on difficulty."""
    lowered = keyword.lower()
    for category, patterns in INTENT_PATTERNS:
        if any(pattern in lowered for pattern in patterns):
            return category
    return "informational" if difficulty < 40 else "commercial"


def filter_records(records: Sequence[GapRecord], filter_state: FilterState) -> list[GapRecord]:
    """Apply competitor, volume, difficulty and category filters in that order."""
    filtered = list(records)

    if filter_state.competitor != ALL:
        wanted = domain_key(filter_state.competitor)
        filtered = [r for r in filtered if r.competitor_key == wanted]

    low, high = filter_state.volume_range
    filtered = [r for r in filtered if low <= r.volume <= high]

    low, high = filter_state.difficulty_range
    filtered = [r for r in filtered if low <= r.difficulty <= high]

    if filter_state.category != ALL:
        filtered = [
            r
            for r in filtered
            if categorize_intent(r.keyword, r.difficulty, r.volume) == filter_state.category
        ]

    return filtered


def page_count(total: int, page_size: int) -> int:
    """Number of non-empty pages."""
    return math.ceil(total / page_size)


def last_page(total: int, page_size: int) -> int:
    return max(1, page_count(total, page_size))


def paginate(records: Sequence[GapRecord], page: PageState) -> list[GapRecord]:
    start = (page.index - 1) * page.page_size
    return list(records[start : start + page.page_size])


def view(entry: CacheEntry) -> list[GapRecord]:
    """Records visible for the entry's filters and page."""
    return paginate(filter_records(entry.records, entry.filter_state), entry.page)


def page_info(entry: CacheEntry) -> PageInfo:
    total = len(filter_records(entry.records, entry.filter_state))
    size = entry.page.page_size
    index = min(entry.page.index, last_page(total, size))
    start_item = 0 if total == 0 else (index - 1) * size + 1
    return PageInfo(
        total=total,
        pages=last_page(total, size),
        index=index,
        start_item=start_item,
        end_item=min(start_item + size - 1, total) if total else 0,
    )


def record_competitors(records: Sequence[GapRecord]) -> list[str]:
    """Sorted competitor names present in ``records``."""
    return sorted({record.competitor for record in records})


def with_filter(entry: CacheEntry, **changes: Any) -> CacheEntry:
    """Return ``entry`` with updated filters and the page index reset to 1."""
    unknown = set(changes) - {"competitor", "volume_range", "difficulty_range", "category"}
    if unknown:
        raise InputError("Unknown filter", {"filters": sorted(unknown)})

    category = changes.get("category")
    if category is not None and category != ALL and category not in CATEGORIES:
        raise InputError("Unknown keyword category", {"category": category})

    filter_state = replace(entry.filter_state, **changes)
    return replace(entry, filter_state=filter_state, page=replace(entry.page, index=1))


def with_page(entry: CacheEntry, index: int) -> CacheEntry:
    """Move to ``index``, clamped to the valid page range."""
    total = len(filter_records(entry.records, entry.filter_state))
    clamped = min(max(1, index), last_page(total, entry.page.page_size))
    return replace(entry, page=replace(entry.page, index=clamped))


def with_page_size(entry: CacheEntry, page_size: int) -> CacheEntry:
    """Change page size, keeping the index when it is still valid."""
    if page_size < 1:
        raise InputError("Page size must be positive", {"page_size": page_size})
    total = len(filter_records(entry.records, entry.filter_state))
    index = min(entry.page.index, last_page(total, page_size))
    return replace(entry, page=PageState(index=index, page_size=page_size))

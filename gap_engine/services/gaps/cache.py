"""Single-slot cache for the most recently resolved keyword gap list."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any

from gap_engine.config import settings
from gap_engine.core.exceptions import InputError
from gap_engine.integrations.session_store import STORE_ERRORS, SessionStore
from gap_engine.schemas.gap import GapRecord
from gap_engine.services.gaps.domains import domain_key, normalize_list

logger = logging.getLogger(__name__)

MAX_VOLUME = sys.maxsize
VOLUME_RANGE_ALL: tuple[int, int] = (0, MAX_VOLUME)
DIFFICULTY_RANGE_ALL: tuple[int, int] = (0, 100)
ALL = "all"


@dataclass(frozen=True, slots=True)
class CacheKey:
    """Inputs that decide whether a resolved list can be reused.

    ``competitors`` is sorted and de-duplicated so that reordering the
    competitor list never produces a different key.
    """

    domain: str
    competitors: tuple[str, ...]
    corpus_size: int
    location_code: int
    api_source: str

    def changed_fields(self, other: CacheKey | None) -> list[str]:
        """Names of the key parts that differ from ``other``."""
        if other is None:
            return [f.name for f in fields(self)]
        return [f.name for f in fields(self) if getattr(self, f.name) != getattr(other, f.name)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "competitors": list(self.competitors),
            "corpus_size": self.corpus_size,
            "location_code": self.location_code,
            "api_source": self.api_source,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CacheKey:
        return cls(
            domain=str(payload["domain"]),
            competitors=tuple(str(c) for c in payload.get("competitors", [])),
            corpus_size=int(payload["corpus_size"]),
            location_code=int(payload["location_code"]),
            api_source=str(payload["api_source"]),
        )


def build_cache_key(
    domain: str,
    competitors: Iterable[str],
    corpus_size: int,
    location_code: int,
    api_source: str,
) -> CacheKey:
    """Build the composite key with set semantics for competitors."""
    own_key = domain_key(domain)
    competitor_keys = {domain_key(c) for c in normalize_list(competitors)}
    competitor_keys.discard(own_key)
    return CacheKey(
        domain=own_key,
        competitors=tuple(sorted(competitor_keys)),
        corpus_size=corpus_size,
        location_code=location_code,
        api_source=api_source,
    )


def _as_range(value: Sequence[int], name: str) -> tuple[int, int]:
    if len(value) != 2:
        raise InputError(f"{name} must have exactly two bounds", {name: list(value)})
    low, high = int(value[0]), int(value[1])
    if low > high:
        raise InputError(f"{name} lower bound exceeds upper bound", {name: [low, high]})
    return low, high


@dataclass(frozen=True, slots=True)
class FilterState:
    """Filters applied on top of the cached records."""

    competitor: str = ALL
    volume_range: tuple[int, int] = VOLUME_RANGE_ALL
    difficulty_range: tuple[int, int] = DIFFICULTY_RANGE_ALL
    category: str = ALL

    def __post_init__(self) -> None:
        object.__setattr__(self, "volume_range", _as_range(self.volume_range, "volume_range"))
        object.__setattr__(
            self, "difficulty_range", _as_range(self.difficulty_range, "difficulty_range")
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "competitor": self.competitor,
            "volume_range": list(self.volume_range),
            "difficulty_range": list(self.difficulty_range),
            "category": self.category,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> FilterState:
        return cls(
            competitor=str(payload.get("competitor", ALL)),
            volume_range=tuple(payload.get("volume_range", VOLUME_RANGE_ALL)),
            difficulty_range=tuple(payload.get("difficulty_range", DIFFICULTY_RANGE_ALL)),
            category=str(payload.get("category", ALL)),
        )


@dataclass(frozen=True, slots=True)
class PageState:
    """Pagination cursor; ``index`` is 1-based."""

    index: int = 1
    page_size: int = field(default_factory=lambda: settings.default_page_size)

    def __post_init__(self) -> None:
        if self.index < 1:
            raise InputError("Page index must be at least 1", {"index": self.index})
        if self.page_size < 1:
            raise InputError("Page size must be positive", {"page_size": self.page_size})

    def to_dict(self) -> dict[str, int]:
        return {"index": self.index, "page_size": self.page_size}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PageState:
        return cls(
            index=int(payload.get("index", 1)),
            page_size=int(payload.get("page_size", settings.default_page_size)),
        )


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """A fully resolved gap list and the view state layered over it."""

    key: CacheKey
    records: tuple[GapRecord, ...]
    resolved_at: datetime
    tier: str = "direct"
    filter_state: FilterState = field(default_factory=FilterState)
    page: PageState = field(default_factory=PageState)

    @property
    def keywords(self) -> set[str]:
        return {record.keyword for record in self.records}

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key.to_dict(),
            "records": [record.model_dump(mode="json") for record in self.records],
            "resolved_at": self.resolved_at.isoformat(),
            "tier": self.tier,
            "filter_state": self.filter_state.to_dict(),
            "page": self.page.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CacheEntry:
        return cls(
            key=CacheKey.from_dict(payload["key"]),
            records=tuple(GapRecord.model_validate(item) for item in payload.get("records", [])),
            resolved_at=datetime.fromisoformat(str(payload["resolved_at"])),
            tier=str(payload.get("tier", "direct")),
            filter_state=FilterState.from_dict(payload.get("filter_state") or {}),
            page=PageState.from_dict(payload.get("page") or {}),
        )


class GapCache:
    """Memo of the last resolved key.

    Holding a second key evicts the first. Records are only ever replaced as
    a whole list; view state (filters, page) can be swapped independently.
    """

    def __init__(self, store: SessionStore | None = None, session_id: str = "default") -> None:
        self.store = store
        self.session_id = session_id
        self._entry: CacheEntry | None = None

    @property
    def entry(self) -> CacheEntry | None:
        return self._entry

    @property
    def storage_key(self) -> str:
        return settings.session_key(self.session_id, "gaps")

    def get(self, key: CacheKey) -> tuple[CacheEntry | None, bool]:
        """Return the entry for ``key`` and whether it was a hit."""
        if self._entry is not None and self._entry.key == key:
            logger.info("Keyword gap cache hit", extra={"domain": key.domain})
            return self._entry, True

        logger.info(
            "Keyword gap cache miss",
            extra={
                "domain": key.domain,
                "changed": key.changed_fields(self._entry.key if self._entry else None),
            },
        )
        return None, False

    def put(
        self,
        key: CacheKey,
        records: Sequence[GapRecord],
        tier: str = "direct",
        *,
        resolved_at: datetime | None = None,
    ) -> CacheEntry:
        """Store a freshly resolved list, replacing whatever was cached.

        Filters and page index reset; the page size carries over.
        """
        page_size = self._entry.page.page_size if self._entry else settings.default_page_size
        self._entry = CacheEntry(
            key=key,
            records=tuple(records),
            resolved_at=resolved_at or datetime.now(timezone.utc),
            tier=tier,
            filter_state=FilterState(),
            page=PageState(index=1, page_size=page_size),
        )
        logger.info(
            "Keyword gap cache stored",
            extra={"domain": key.domain, "records": len(records), "tier": tier},
        )
        return self._entry

    def invalidate(self) -> None:
        if self._entry is not None:
            logger.info("Keyword gap cache invalidated", extra={"domain": self._entry.key.domain})
        self._entry = None

    def update_view(
        self,
        *,
        filter_state: FilterState | None = None,
        page: PageState | None = None,
    ) -> CacheEntry:
        """Swap filter and page state on the cached entry."""
        if self._entry is None:
            raise InputError("No keyword gap analysis is loaded")
        changes: dict[str, Any] = {}
        if filter_state is not None:
            changes["filter_state"] = filter_state
        if page is not None:
            changes["page"] = page
        self._entry = replace(self._entry, **changes)
        return self._entry

    async def save(self) -> bool:
        """Persist the entry (or its absence) to the session store.

        Returns False when the store is unavailable; the in-memory slot is kept.
        """
        if self.store is None:
            return False
        data = b"" if self._entry is None else json.dumps(self._entry.to_dict()).encode("utf-8")
        try:
            await self.store.save(self.storage_key, data)
        except STORE_ERRORS as e:
            logger.warning(
                "Session store unavailable, keyword gap cache not persisted",
                extra={"session_id": self.session_id, "key": self.storage_key, "error": str(e)},
            )
            return False
        return True

    async def load(self) -> CacheEntry | None:
        """Restore the entry from the session store; corrupt payloads are dropped."""
        if self.store is None:
            return self._entry
        try:
            raw = await self.store.load(self.storage_key)
        except STORE_ERRORS as e:
            logger.warning(
                "Session store unavailable, keyword gap cache not restored",
                extra={"session_id": self.session_id, "key": self.storage_key, "error": str(e)},
            )
            return self._entry
        if not raw:
            return self._entry

        try:
            entry = CacheEntry.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError, InputError) as e:
            logger.warning(
                "Invalid keyword gap snapshot in session store",
                extra={"session_id": self.session_id, "error": str(e)},
            )
            return self._entry

        self._entry = entry
        logger.info(
            "Keyword gap cache restored",
            extra={"domain": entry.key.domain, "records": len(entry.records)},
        )
        return entry

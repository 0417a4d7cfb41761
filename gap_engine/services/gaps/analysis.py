"""Keyword gap analysis session: cache, resolution, view state and selection."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from typing import Any

from gap_engine.config import settings
from gap_engine.core.exceptions import InputError
from gap_engine.integrations.session_store import STORE_ERRORS, SessionStore
from gap_engine.schemas.gap import ApiSource, GapRecord, KeywordRecord
from gap_engine.services.gaps import view as gap_view
from gap_engine.services.gaps.cache import ALL, CacheEntry, CacheKey, GapCache, build_cache_key
from gap_engine.services.gaps.domains import normalize
from gap_engine.services.gaps.resolver import (
    GapResolver,
    ResolutionResult,
    coerce_corpus,
    unique_competitors,
)
from gap_engine.services.gaps.selection import SelectionSet

logger = logging.getLogger(__name__)


class KeywordGapAnalysis:
    """One analysis session owned by the calling orchestration layer.

    The session holds its own cache slot and selection set; nothing is shared
    through module globals. At most one resolution runs per cache key: a second
    caller for the same key awaits the first caller's task.
    """

    def __init__(
        self,
        resolver: GapResolver | None = None,
        *,
        cache: GapCache | None = None,
        selection: SelectionSet | None = None,
        store: SessionStore | None = None,
        session_id: str = "default",
    ) -> None:
        self.resolver = resolver or GapResolver()
        self.store = store
        self.session_id = session_id
        self.cache = cache or GapCache(store=store, session_id=session_id)
        self.selection = selection or SelectionSet()
        self.last_result: ResolutionResult | None = None
        self._in_flight: dict[CacheKey, asyncio.Task[CacheEntry]] = {}
        self._latest_key: CacheKey | None = None

    # ========== Resolution ==========

    async def analyze(
        self,
        domain: str,
        competitors: Sequence[str],
        corpus: Sequence[KeywordRecord | Mapping[str, Any]],
        *,
        location_code: int | None = None,
        api_source: ApiSource = "dataforseo-live",
        target_count: int | None = None,
        refresh: bool = False,
    ) -> CacheEntry:
        """Return the cached entry for these inputs, resolving on a miss.

        Raises:
            InputError: Blank domain, no competitors or a malformed corpus.
        """
        domain_name = normalize(domain)
        if not domain_name:
            raise InputError("Domain is required for keyword gap analysis")
        competitor_names = unique_competitors(domain_name, competitors)
        if not competitor_names:
            raise InputError("Add at least one competitor domain to perform gap analysis")
        rows = coerce_corpus(corpus)
        location = location_code or settings.default_location_code

        key = build_cache_key(domain_name, competitor_names, len(rows), location, api_source)
        self._latest_key = key
        if refresh:
            self.cache.invalidate()
        else:
            entry, hit = self.cache.get(key)
            if hit and entry is not None:
                return entry

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(
                self._resolve_and_store(
                    key, domain_name, competitor_names, rows, location, api_source, target_count
                )
            )
            self._in_flight[key] = task
            task.add_done_callback(lambda done, k=key: self._forget_in_flight(k, done))
        else:
            logger.info(
                "Joining in-flight keyword gap resolution",
                extra={"domain": key.domain, "competitors": list(key.competitors)},
            )

        return await asyncio.shield(task)

    async def refresh(
        self,
        domain: str,
        competitors: Sequence[str],
        corpus: Sequence[KeywordRecord | Mapping[str, Any]],
        *,
        location_code: int | None = None,
        api_source: ApiSource = "dataforseo-live",
        target_count: int | None = None,
    ) -> CacheEntry:
        """Drop the cached list and resolve again."""
        return await self.analyze(
            domain,
            competitors,
            corpus,
            location_code=location_code,
            api_source=api_source,
            target_count=target_count,
            refresh=True,
        )

    def in_flight(self, key: CacheKey) -> bool:
        return key in self._in_flight

    def _forget_in_flight(self, key: CacheKey, task: asyncio.Task[CacheEntry]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def _resolve_and_store(
        self,
        key: CacheKey,
        domain_name: str,
        competitors: list[str],
        rows: list[KeywordRecord],
        location_code: int,
        api_source: ApiSource,
        target_count: int | None,
    ) -> CacheEntry:
        result = await self.resolver.resolve(
            domain_name,
            competitors,
            rows,
            target_count=target_count,
            source=api_source,
            location_code=location_code,
        )
        if key != self._latest_key:
            # A newer request owns the slot; the caller still gets its own result.
            logger.info(
                "Discarding superseded keyword gap resolution",
                extra={
                    "domain": key.domain,
                    "competitors": list(key.competitors),
                    "tier": result.tier,
                },
            )
            return CacheEntry(
                key=key,
                records=tuple(result.records),
                resolved_at=datetime.now(timezone.utc),
                tier=result.tier,
            )

        previous = self.cache.entry
        entry = self.cache.put(key, result.records, result.tier)
        self.last_result = result

        if previous is None or previous.keywords != entry.keywords:
            removed = self.selection.retain(entry.keywords)
            if removed:
                logger.info(
                    "Pruned keyword selections absent from new gap list",
                    extra={"removed": removed, "remaining": len(self.selection)},
                )

        await self.save()
        return entry

    # ========== View state ==========

    @property
    def entry(self) -> CacheEntry | None:
        return self.cache.entry

    def _require_entry(self) -> CacheEntry:
        entry = self.cache.entry
        if entry is None:
            raise InputError("No keyword gap analysis is loaded")
        return entry

    def _apply(self, entry: CacheEntry) -> CacheEntry:
        return self.cache.update_view(filter_state=entry.filter_state, page=entry.page)

    def visible(self) -> list[GapRecord]:
        """Records on the current page after filters."""
        return gap_view.view(self._require_entry())

    def page_info(self) -> gap_view.PageInfo:
        return gap_view.page_info(self._require_entry())

    def competitors(self) -> list[str]:
        entry = self.cache.entry
        return gap_view.record_competitors(entry.records) if entry else []

    def filter_by_competitor(self, competitor: str | None) -> CacheEntry:
        return self._apply(gap_view.with_filter(self._require_entry(), competitor=competitor or ALL))

    def filter_by_volume(self, low: int, high: int) -> CacheEntry:
        return self._apply(gap_view.with_filter(self._require_entry(), volume_range=(low, high)))

    def filter_by_difficulty(self, low: int, high: int) -> CacheEntry:
        return self._apply(gap_view.with_filter(self._require_entry(), difficulty_range=(low, high)))

    def filter_by_category(self, category: str | None) -> CacheEntry:
        return self._apply(gap_view.with_filter(self._require_entry(), category=category or ALL))

    def go_to_page(self, index: int) -> CacheEntry:
        return self._apply(gap_view.with_page(self._require_entry(), index))

    def set_page_size(self, page_size: int) -> CacheEntry:
        return self._apply(gap_view.with_page_size(self._require_entry(), page_size))

    # ========== Selection ==========

    def select(self, keyword: str) -> None:
        """Raises ``LimitExceededError`` when the selection is full."""
        self.selection.add(keyword)

    def deselect(self, keyword: str) -> None:
        self.selection.remove(keyword)

    def toggle_selection(self, keyword: str) -> bool:
        return self.selection.toggle(keyword)

    # ========== Persistence ==========

    @property
    def selection_storage_key(self) -> str:
        return settings.session_key(self.session_id, "selection")

    async def save(self) -> bool:
        """Persist cache entry, view state and selection to the session store.

        A store outage is logged and reported as False; in-memory state stays.
        """
        if self.store is None:
            return False
        saved = await self.cache.save()
        payload = json.dumps(self.selection.to_dict()).encode("utf-8")
        try:
            await self.store.save(self.selection_storage_key, payload)
        except STORE_ERRORS as e:
            logger.warning(
                "Session store unavailable, keyword selection not persisted",
                extra={"session_id": self.session_id, "error": str(e)},
            )
            return False
        return saved

    async def restore(self) -> CacheEntry | None:
        """Reload cache entry and selection saved by an earlier session."""
        if self.store is None:
            return self.cache.entry
        entry = await self.cache.load()

        try:
            raw = await self.store.load(self.selection_storage_key)
        except STORE_ERRORS as e:
            logger.warning(
                "Session store unavailable, keyword selection not restored",
                extra={"session_id": self.session_id, "error": str(e)},
            )
            return entry
        if raw:
            try:
                self.selection = SelectionSet.from_dict(json.loads(raw))
            except (ValueError, TypeError, AttributeError) as e:
                logger.warning(
                    "Invalid keyword selection snapshot in session store",
                    extra={"session_id": self.session_id, "error": str(e)},
                )
        return entry

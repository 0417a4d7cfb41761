"""Bounded, ordered set of keywords picked for content generation."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from typing import Any

from gap_engine.config import settings
from gap_engine.core.exceptions import LimitExceededError

logger = logging.getLogger(__name__)


class SelectionSet:
    """Keywords in insertion order, capped at ``limit``.

    Selections are keyed by keyword string only. Pruning against a new keyword
    universe is the orchestrator's call (see ``retain``); nothing here reacts
    to cache changes on its own.
    """

    def __init__(self, keywords: Iterable[str] = (), limit: int | None = None) -> None:
        self.limit = min(limit or settings.selection_limit, settings.selection_limit)
        self._keywords: dict[str, None] = {}
        for keyword in keywords:
            self.add(keyword)

    def __len__(self) -> int:
        return len(self._keywords)

    def __contains__(self, keyword: object) -> bool:
        return keyword in self._keywords

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._keywords))

    def add(self, keyword: str) -> None:
        """Add ``keyword``; adding one already present is a no-op.

        Raises:
            LimitExceededError: The set is full. It is left unchanged.
        """
        if keyword in self._keywords:
            return
        if len(self._keywords) >= self.limit:
            logger.info(
                "Keyword selection rejected",
                extra={"keyword": keyword, "limit": self.limit},
            )
            raise LimitExceededError(self.limit, keyword)
        self._keywords[keyword] = None

    def remove(self, keyword: str) -> None:
        self._keywords.pop(keyword, None)

    def contains(self, keyword: str) -> bool:
        return keyword in self._keywords

    def all(self) -> list[str]:
        return list(self._keywords)

    def toggle(self, keyword: str) -> bool:
        """Remove if present, otherwise add. Returns whether it is now selected."""
        if keyword in self._keywords:
            self.remove(keyword)
            return False
        self.add(keyword)
        return True

    def clear(self) -> None:
        self._keywords.clear()

    def retain(self, universe: Iterable[str]) -> list[str]:
        """Drop selections missing from ``universe`` and return what was dropped."""
        allowed = set(universe)
        removed = [keyword for keyword in self._keywords if keyword not in allowed]
        for keyword in removed:
            del self._keywords[keyword]
        return removed

    def to_dict(self) -> dict[str, Any]:
        return {"keywords": self.all(), "limit": self.limit}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SelectionSet:
        """Restore a snapshot; the stored limit may only tighten the configured cap."""
        stored_limit = payload.get("limit")
        selection = cls(limit=int(stored_limit) if stored_limit else None)
        keywords = dict.fromkeys(str(keyword) for keyword in payload.get("keywords", []))
        # Snapshots holding more than the cap are truncated on restore rather than rejected.
        for keyword in list(keywords)[: selection.limit]:
            selection.add(keyword)
        return selection

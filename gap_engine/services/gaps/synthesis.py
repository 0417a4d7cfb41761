"""Deterministic synthetic gap generator used when no usable data exists."""

from __future__ import annotations

import logging
import random
from collections.abc import Sequence
from typing import NamedTuple

from gap_engine.config import settings
from gap_engine.schemas.gap import GapRecord, Opportunity
from gap_engine.services.gaps.domains import normalize_list

logger = logging.getLogger(__name__)


class GapTemplate(NamedTuple):
    keyword: str
    volume: int
    difficulty: int
    opportunity: Opportunity


GAP_TEMPLATES: tuple[GapTemplate, ...] = (
    GapTemplate("seo competitor analysis", 2400, 45, Opportunity.MEDIUM),
    GapTemplate("keyword gap analysis tool", 880, 28, Opportunity.HIGH),
    GapTemplate("content marketing strategy", 3600, 62, Opportunity.MEDIUM),
    GapTemplate("local seo checklist", 1300, 24, Opportunity.HIGH),
    GapTemplate("backlink audit guide", 590, 38, Opportunity.MEDIUM),
    GapTemplate("technical seo services", 720, 71, Opportunity.MEDIUM),
    GapTemplate("how to improve domain authority", 1900, 33, Opportunity.MEDIUM),
    GapTemplate("ecommerce seo tips", 1000, 27, Opportunity.HIGH),
    GapTemplate("search intent examples", 480, 19, Opportunity.MEDIUM),
    GapTemplate("best rank tracking software", 1600, 58, Opportunity.MEDIUM),
    GapTemplate("on page seo factors", 2900, 52, Opportunity.MEDIUM),
    GapTemplate("seo reporting dashboard", 390, 36, Opportunity.MEDIUM),
    GapTemplate("long tail keyword research", 1100, 22, Opportunity.HIGH),
    GapTemplate("enterprise seo platform pricing", 90, 67, Opportunity.LOW),
    GapTemplate("google core update recovery", 260, 44, Opportunity.MEDIUM),
)

VOLUME_JITTER = 300
DIFFICULTY_JITTER = 5


class SynthesisFallback:
    """Generate plausible gaps with a guaranteed count per competitor.

    Keywords and template order are fixed; only volume and difficulty carry
    jitter, drawn from ``rng``. Pass a seeded ``random.Random`` for
    reproducible numbers.
    """

    def __init__(
        self,
        rng: random.Random | None = None,
        records_per_competitor: int | None = None,
        templates: Sequence[GapTemplate] = GAP_TEMPLATES,
    ) -> None:
        self.rng = rng or random.Random()
        self.records_per_competitor = (
            records_per_competitor or settings.synthetic_records_per_competitor
        )
        if not templates:
            raise ValueError("SynthesisFallback needs at least one template")
        self.templates = tuple(templates)

    def synthesize(self, competitors: Sequence[str]) -> list[GapRecord]:
        """Produce ``records_per_competitor`` records for every competitor."""
        records: list[GapRecord] = []
        for competitor in normalize_list(competitors):
            for i in range(self.records_per_competitor):
                records.append(self._build_record(competitor, i))

        logger.info(
            "Synthesized fallback gaps",
            extra={
                "competitors": len(competitors),
                "records": len(records),
                "per_competitor": self.records_per_competitor,
            },
        )
        return records

    def _build_record(self, competitor: str, index: int) -> GapRecord:
        template = self.templates[index % len(self.templates)]
        keyword = template.keyword
        if index % 3 == 0:
            keyword = f"{keyword} {competitor}"

        volume = template.volume + self.rng.randrange(VOLUME_JITTER)
        difficulty = template.difficulty + self.rng.randint(-DIFFICULTY_JITTER, DIFFICULTY_JITTER)
        difficulty = max(1, min(100, difficulty))

        return GapRecord(
            keyword=keyword,
            volume=volume,
            difficulty=difficulty,
            opportunity=template.opportunity,
            competitor=competitor,
            rank=None,
        )

"""Three-tier keyword gap resolution: direct, assisted, synthetic.

Every tier reports a ``TierOutcome``. The resolver inspects the outcome's
error kind, logs it and moves to the next tier, so a populated (possibly
synthetic) list always comes back. Only ``InputError`` reaches the caller.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from gap_engine.config import settings
from gap_engine.core.exceptions import (
    CoverageShortfallError,
    GapEngineError,
    InputError,
    TierError,
    TransportError,
    ValidationError,
)
from gap_engine.schemas.gap import (
    DATAFORSEO_SOURCES,
    OPPORTUNITY_RANK,
    ApiSource,
    GapInferenceInput,
    GapRecord,
    KeywordRecord,
)
from gap_engine.services.gaps.domains import domain_key, normalize, normalize_list
from gap_engine.services.gaps.synthesis import SynthesisFallback

logger = logging.getLogger(__name__)

Tier = Literal["direct", "assisted", "synthetic"]


class KeywordCorpusProvider(Protocol):
    """Source of ranked keyword rows for a domain and its competitors."""

    async def fetch_corpus(
        self,
        domain: str,
        competitors: Sequence[str],
        location_code: int,
    ) -> list[KeywordRecord]: ...


class GapInferenceCollaborator(Protocol):
    """Generative model that proposes gap candidates from a corpus sample."""

    async def infer_gaps(self, request: GapInferenceInput) -> Any: ...


@dataclass(slots=True)
class TierOutcome:
    """Result of one tier: either records or the error that rejected them."""

    tier: Tier
    records: list[GapRecord] = field(default_factory=list)
    error: GapEngineError | None = None

    @property
    def accepted(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class ResolutionResult:
    """Accepted gap list plus the trail of tiers that were tried."""

    records: list[GapRecord]
    tier: Tier
    min_per_competitor: int
    attempts: list[TierOutcome] = field(default_factory=list)


def min_per_competitor(target_count: int, competitor_count: int) -> int:
    return math.ceil(target_count / competitor_count)


def coerce_corpus(corpus: Sequence[KeywordRecord | Mapping[str, Any]] | None) -> list[KeywordRecord]:
    """Validate corpus rows, raising ``InputError`` on anything malformed."""
    if corpus is None or isinstance(corpus, str | bytes) or not isinstance(corpus, Sequence):
        raise InputError("Keyword corpus must be a list of keyword records")

    rows: list[KeywordRecord] = []
    for index, item in enumerate(corpus):
        if isinstance(item, KeywordRecord):
            rows.append(item)
            continue
        try:
            rows.append(KeywordRecord.model_validate(item))
        except PydanticValidationError as e:
            raise InputError(
                f"Invalid keyword record at index {index}",
                {"index": index, "errors": e.errors(include_url=False)},
            ) from e
    return rows


def unique_competitors(domain: str, competitors: Sequence[str]) -> list[str]:
    """Normalize competitors, dropping blanks, duplicates and the domain itself."""
    own_key = domain_key(domain)
    seen: set[str] = set()
    unique: list[str] = []
    for competitor in normalize_list(competitors):
        key = domain_key(competitor)
        if key in seen or key == own_key:
            continue
        seen.add(key)
        unique.append(competitor)
    return unique


def coverage_shortfall(
    records: Sequence[GapRecord],
    competitors: Sequence[str],
    minimum: int,
) -> dict[str, int]:
    """Map each under-covered competitor to its record count."""
    counts = {domain_key(competitor): 0 for competitor in competitors}
    for record in records:
        key = record.competitor_key
        if key in counts:
            counts[key] += 1
    return {
        competitor: counts[domain_key(competitor)]
        for competitor in competitors
        if counts[domain_key(competitor)] < minimum
    }


def merge_corpus(
    primary: Sequence[KeywordRecord],
    extra: Sequence[KeywordRecord],
) -> list[KeywordRecord]:
    """Merge rows by keyword; primary values win, missing positions are filled in."""
    merged: dict[str, KeywordRecord] = {}
    for row in primary:
        merged.setdefault(row.keyword.lower(), row)

    for row in extra:
        key = row.keyword.lower()
        existing = merged.get(key)
        if existing is None:
            merged[key] = row
            continue

        positions = dict(row.competitor_positions)
        positions.update(
            {name: pos for name, pos in existing.competitor_positions.items() if pos is not None}
        )
        merged[key] = existing.model_copy(
            update={
                "position": existing.position if existing.position is not None else row.position,
                "competitor_positions": positions,
                "monthly_search_volume": existing.monthly_search_volume or row.monthly_search_volume,
                "competition_index": existing.competition_index or row.competition_index,
            }
        )
    return list(merged.values())


class GapResolver:
    """Resolve a validated gap list for one domain and competitor set."""

    def __init__(
        self,
        inference: GapInferenceCollaborator | None = None,
        corpus_provider: KeywordCorpusProvider | None = None,
        synthesis: SynthesisFallback | None = None,
        *,
        max_position: int | None = None,
        sample_size: int | None = None,
        timeout_seconds: float | None = None,
        top_opportunity_count: int | None = None,
    ) -> None:
        self.inference = inference
        self.corpus_provider = corpus_provider
        self.synthesis = synthesis or SynthesisFallback()
        self.max_position = (
            settings.gap_direct_max_position if max_position is None else max_position
        )
        self.sample_size = settings.gap_inference_sample_size if sample_size is None else sample_size
        self.timeout_seconds = (
            settings.gap_outbound_timeout_seconds if timeout_seconds is None else timeout_seconds
        )
        self.top_opportunity_count = (
            settings.gap_top_opportunity_count
            if top_opportunity_count is None
            else top_opportunity_count
        )

        if self.max_position < 1:
            raise ValueError("max_position must be at least 1")
        if self.sample_size < 1:
            raise ValueError("sample_size must be at least 1")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if self.top_opportunity_count < 0:
            raise ValueError("top_opportunity_count must not be negative")

    async def resolve(
        self,
        domain: str,
        competitors: Sequence[str],
        corpus: Sequence[KeywordRecord | Mapping[str, Any]],
        target_count: int | None = None,
        source: ApiSource = "dataforseo-live",
        location_code: int | None = None,
    ) -> ResolutionResult:
        """Run direct, assisted and synthetic tiers in order until one is accepted.

        Args:
            domain: Analyzed domain, any URL-ish form.
            competitors: Competitor domains; order and duplicates do not matter.
            corpus: Keyword rows with the domain's and competitors' positions.
            target_count: Total gaps wanted; drives the per-competitor minimum.
            source: Data source. ``sample`` skips straight to synthetic data.
            location_code: DataForSEO location code for enrichment.

        Returns:
            ResolutionResult with the accepted tier's records.

        Raises:
            InputError: Blank domain, no competitors, bad target or corpus.
        """
        domain_name = normalize(domain)
        if not domain_name:
            raise InputError("Domain is required for keyword gap analysis")

        competitor_names = unique_competitors(domain_name, competitors)
        if not competitor_names:
            raise InputError("Add at least one competitor domain to perform gap analysis")

        target = settings.gap_default_target_count if target_count is None else target_count
        if target < 1:
            raise InputError("Target gap count must be positive", {"target_count": target})

        rows = coerce_corpus(corpus)
        location = location_code or settings.default_location_code
        minimum = min_per_competitor(target, len(competitor_names))

        logger.info(
            "Resolving keyword gaps",
            extra={
                "domain": domain_name,
                "competitors": competitor_names,
                "corpus_size": len(rows),
                "target_count": target,
                "min_per_competitor": minimum,
                "source": source,
                "location_code": location,
            },
        )

        attempts: list[TierOutcome] = []
        if source != "sample":
            direct = await self._run_direct_tier(
                domain_name, competitor_names, rows, target, minimum, source, location
            )
            attempts.append(direct)
            if direct.accepted:
                return self._finish(direct, minimum, attempts)
            self._log_fallthrough(direct)

            assisted = await self._run_assisted_tier(domain_name, competitor_names, rows, minimum)
            attempts.append(assisted)
            if assisted.accepted:
                return self._finish(assisted, minimum, attempts)
            self._log_fallthrough(assisted)

        synthetic = TierOutcome(tier="synthetic", records=self.synthesis.synthesize(competitor_names))
        attempts.append(synthetic)
        return self._finish(synthetic, minimum, attempts)

    # ========== Tier 1: direct extraction ==========

    async def _run_direct_tier(
        self,
        domain_name: str,
        competitors: list[str],
        corpus: list[KeywordRecord],
        target_count: int,
        minimum: int,
        source: ApiSource,
        location_code: int,
    ) -> TierOutcome:
        records = self.extract_direct_gaps(domain_name, competitors, corpus, target_count, minimum)
        shortfall = coverage_shortfall(records, competitors, minimum)
        if not shortfall:
            return TierOutcome(tier="direct", records=records)

        if self.corpus_provider is None or source not in DATAFORSEO_SOURCES:
            return TierOutcome(
                tier="direct",
                records=records,
                error=CoverageShortfallError("direct", shortfall, minimum),
            )

        try:
            fetched = await self._call_with_timeout(
                "Keyword corpus provider",
                self.corpus_provider.fetch_corpus(domain_name, competitors, location_code),
            )
        except TierError as e:
            return TierOutcome(tier="direct", records=records, error=e)

        enriched = merge_corpus(corpus, fetched)
        logger.info(
            "Direct tier enriched from corpus provider",
            extra={"supplied": len(corpus), "fetched": len(fetched), "merged": len(enriched)},
        )
        records = self.extract_direct_gaps(domain_name, competitors, enriched, target_count, minimum)
        shortfall = coverage_shortfall(records, competitors, minimum)
        if shortfall:
            return TierOutcome(
                tier="direct",
                records=records,
                error=CoverageShortfallError("direct", shortfall, minimum),
            )
        return TierOutcome(tier="direct", records=records)

    def extract_direct_gaps(
        self,
        domain_name: str,
        competitors: Sequence[str],
        corpus: Sequence[KeywordRecord],
        target_count: int,
        minimum: int,
    ) -> list[GapRecord]:
        """Collect corpus gaps, attributing each to its best-ranking competitor.

        A competitor contributes at most ``minimum`` records so that one
        dominant competitor cannot use up the whole target. Collection stops
        at ``minimum * len(competitors)`` when that exceeds ``target_count``,
        so every bucket can still fill when the target does not divide evenly.
        """
        by_key = {domain_key(competitor): competitor for competitor in competitors}
        per_competitor = {competitor: 0 for competitor in competitors}
        records: list[GapRecord] = []
        limit = max(target_count, minimum * len(competitors))

        for row in corpus:
            if len(records) >= limit:
                break
            if row.position is not None and row.position <= self.max_position:
                continue

            best = self._best_competitor(row, by_key)
            if best is None:
                continue
            competitor, position = best
            if per_competitor[competitor] >= minimum:
                continue

            records.append(
                GapRecord(
                    keyword=row.keyword,
                    volume=row.monthly_search_volume,
                    difficulty=row.competition_index,
                    competitor=competitor,
                    rank=position,
                    relevance=relevance_score(row, domain_name),
                    competitive_advantage=self._competitive_advantage(
                        position, row.monthly_search_volume
                    ),
                )
            )
            per_competitor[competitor] += 1

        return records

    def _best_competitor(
        self,
        row: KeywordRecord,
        by_key: Mapping[str, str],
    ) -> tuple[str, int] | None:
        best: tuple[str, int] | None = None
        for key, competitor in by_key.items():
            position = row.competitor_positions.get(key)
            if position is None or position < 1 or position > self.max_position:
                continue
            if best is None or position < best[1]:
                best = (competitor, position)
        return best

    def _competitive_advantage(self, position: int, volume: int) -> int:
        rank_part = round(((self.max_position - position) / self.max_position) * 50)
        volume_part = min(50, round(volume / 100))
        return max(0, min(100, rank_part + volume_part))

    # ========== Tier 2: assisted inference ==========

    async def _run_assisted_tier(
        self,
        domain_name: str,
        competitors: list[str],
        corpus: list[KeywordRecord],
        minimum: int,
    ) -> TierOutcome:
        if self.inference is None:
            return TierOutcome(
                tier="assisted",
                error=TransportError("Gap inference", "no inference collaborator configured"),
            )

        request = GapInferenceInput(
            domain_name=domain_name,
            competitor_names=list(competitors),
            sample_corpus=corpus[: self.sample_size],
            min_per_competitor=minimum,
        )
        try:
            payload = await self._call_with_timeout("Gap inference", self.inference.infer_gaps(request))
            records = parse_inference_gaps(payload, competitors)
        except TierError as e:
            return TierOutcome(tier="assisted", error=e)

        shortfall = coverage_shortfall(records, competitors, minimum)
        if shortfall:
            return TierOutcome(
                tier="assisted",
                records=records,
                error=CoverageShortfallError("assisted", shortfall, minimum),
            )
        return TierOutcome(tier="assisted", records=records)

    async def _call_with_timeout(self, api_name: str, awaitable: Any) -> Any:
        """Await an outbound call, mapping timeouts and stray failures to TransportError."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise TransportError(api_name, f"timed out after {self.timeout_seconds:.0f}s") from e
        except TierError:
            raise
        except GapEngineError as e:
            raise TransportError(api_name, e.message) from e
        except Exception as e:
            logger.warning(
                "Unexpected collaborator failure",
                extra={"api": api_name, "error": str(e), "error_type": type(e).__name__},
                exc_info=True,
            )
            raise TransportError(api_name, str(e) or type(e).__name__) from e

    # ========== Finalization ==========

    def _finish(
        self,
        outcome: TierOutcome,
        minimum: int,
        attempts: list[TierOutcome],
    ) -> ResolutionResult:
        records = mark_top_opportunities(outcome.records, self.top_opportunity_count)
        logger.info(
            "Keyword gap tier accepted",
            extra={
                "tier": outcome.tier,
                "records": len(records),
                "attempted": [attempt.tier for attempt in attempts],
            },
        )
        return ResolutionResult(
            records=records,
            tier=outcome.tier,
            min_per_competitor=minimum,
            attempts=attempts,
        )

    @staticmethod
    def _log_fallthrough(outcome: TierOutcome) -> None:
        error = outcome.error
        if isinstance(error, CoverageShortfallError):
            reason = "coverage_shortfall"
        elif isinstance(error, ValidationError):
            reason = "invalid_response"
        elif isinstance(error, TransportError):
            reason = "transport_failure"
        else:
            reason = "unknown"
        logger.warning(
            "Keyword gap tier rejected, falling through",
            extra={
                "tier": outcome.tier,
                "reason": reason,
                "error": error.message if error else None,
                "details": error.details if error else None,
                "records": len(outcome.records),
            },
        )


def relevance_score(row: KeywordRecord, domain_name: str) -> int:
    """Lower competition and a brand match in the keyword raise relevance."""
    brand = domain_name.lower().split(".")[0]
    bonus = 20 if brand and brand in row.keyword.lower() else 0
    return max(0, min(100, 100 - row.competition_index + bonus))


def parse_inference_gaps(payload: Any, competitors: Sequence[str]) -> list[GapRecord]:
    """Validate an untrusted inference payload into gap records.

    Raises:
        ValidationError: Payload is not a non-empty ``gaps`` array, an element
            lacks a requested competitor, or an element fails GapRecord rules.
    """
    if isinstance(payload, BaseModel):
        payload = payload.model_dump()
    if isinstance(payload, Mapping):
        gaps = payload.get("gaps", payload.get("keywordGaps"))
    else:
        gaps = payload

    if not isinstance(gaps, list) or not gaps:
        raise ValidationError("Inference returned no gap candidates")

    allowed = {domain_key(competitor): competitor for competitor in competitors}
    records: list[GapRecord] = []
    for index, item in enumerate(gaps):
        if isinstance(item, BaseModel):
            item = item.model_dump()
        if not isinstance(item, Mapping):
            raise ValidationError("Gap candidate is not an object", {"index": index})

        raw_competitor = item.get("competitor")
        if not raw_competitor or not isinstance(raw_competitor, str):
            raise ValidationError("Gap candidate is missing a competitor", {"index": index})
        competitor = allowed.get(domain_key(raw_competitor))
        if competitor is None:
            raise ValidationError(
                "Gap candidate names an unrequested competitor",
                {"index": index, "competitor": raw_competitor},
            )

        # Opportunity is always derived from volume and difficulty.
        fields = {
            key: value
            for key, value in item.items()
            if key not in {"opportunity", "is_top_opportunity", "isTopOpportunity"}
        }
        fields["competitor"] = competitor
        try:
            records.append(GapRecord.model_validate(fields))
        except PydanticValidationError as e:
            raise ValidationError(
                "Gap candidate failed validation",
                {"index": index, "errors": e.errors(include_url=False)},
            ) from e

    return records


def mark_top_opportunities(records: Sequence[GapRecord], count: int) -> list[GapRecord]:
    """Flag the best ``count`` records by opportunity, then by volume."""
    if count <= 0 or not records:
        return [record.model_copy(update={"is_top_opportunity": False}) for record in records]

    ranked = sorted(
        range(len(records)),
        key=lambda i: (OPPORTUNITY_RANK[records[i].opportunity], -records[i].volume, i),
    )
    top = set(ranked[:count])
    return [
        record.model_copy(update={"is_top_opportunity": index in top})
        for index, record in enumerate(records)
    ]

"""Keyword gap schemas."""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from gap_engine.services.gaps.domains import domain_key, normalize

ApiSource = Literal[
    "sample",
    "semrush",
    "dataforseo-live",
    "dataforseo-task",
    "dataforseo-intersection",
]

DATAFORSEO_SOURCES: frozenset[str] = frozenset(
    {"dataforseo-live", "dataforseo-task", "dataforseo-intersection"}
)


class Opportunity(str, Enum):
    """Opportunity bucket for a gap keyword."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def derive_opportunity(volume: int, difficulty: int) -> Opportunity:
    """High volume with low difficulty is high; low volume with high difficulty is low."""
    if volume > 500 and difficulty < 30:
        return Opportunity.HIGH
    if volume < 100 and difficulty > 60:
        return Opportunity.LOW
    return Opportunity.MEDIUM


OPPORTUNITY_RANK = {
    Opportunity.HIGH: 0,
    Opportunity.MEDIUM: 1,
    Opportunity.LOW: 2,
}


class GapRecord(BaseModel):
    """One keyword a competitor ranks for and the analyzed domain does not."""

    model_config = ConfigDict(frozen=True, extra="ignore", use_enum_values=False)

    keyword: str
    volume: int = Field(ge=0)
    difficulty: int = Field(ge=0, le=100)
    opportunity: Opportunity | None = None
    competitor: str
    rank: int | None = None
    is_top_opportunity: bool = False
    relevance: int | None = Field(default=None, ge=0, le=100)
    competitive_advantage: int | None = Field(default=None, ge=0, le=100)

    @field_validator("keyword")
    @classmethod
    def _strip_keyword(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("keyword must not be blank")
        return cleaned

    @field_validator("competitor")
    @classmethod
    def _normalize_competitor(cls, value: str) -> str:
        cleaned = normalize(value)
        if not cleaned:
            raise ValueError("competitor must not be blank")
        return cleaned

    @model_validator(mode="after")
    def _fill_opportunity(self) -> GapRecord:
        if self.opportunity is None:
            object.__setattr__(
                self, "opportunity", derive_opportunity(self.volume, self.difficulty)
            )
        return self

    @property
    def competitor_key(self) -> str:
        """Case-insensitive competitor identity used for grouping."""
        return domain_key(self.competitor)


class KeywordRecord(BaseModel):
    """One row of the keyword corpus for the analyzed domain."""

    keyword: str
    monthly_search_volume: int = Field(default=0, ge=0)
    competition_index: int = Field(default=0, ge=0, le=100)
    position: int | None = None
    competitor_positions: dict[str, int | None] = Field(default_factory=dict)

    @field_validator("keyword")
    @classmethod
    def _strip_keyword(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("keyword must not be blank")
        return cleaned

    @field_validator("competitor_positions")
    @classmethod
    def _normalize_competitor_keys(
        cls, value: dict[str, int | None]
    ) -> dict[str, int | None]:
        normalized: dict[str, int | None] = {}
        for raw_domain, position in value.items():
            key = domain_key(raw_domain)
            if key:
                normalized[key] = position
        return normalized


class GapInferenceInput(BaseModel):
    """Request sent to the assisted-inference collaborator."""

    domain_name: str
    competitor_names: list[str]
    sample_corpus: list[KeywordRecord] = Field(default_factory=list)
    min_per_competitor: int = Field(ge=1)


class GapCandidate(BaseModel):
    """Loosely typed gap as returned by the model, validated later."""

    keyword: str = ""
    volume: int | None = None
    difficulty: int | None = None
    opportunity: str | None = None
    competitor: str | None = None
    rank: int | None = None
    is_top_opportunity: bool = False


class GapInferenceOutput(BaseModel):
    """Structured output of the assisted-inference collaborator."""

    gaps: list[GapCandidate] = Field(default_factory=list)

"""Gap analyst agent: proposes keyword gaps from a ranked-keyword sample."""

import json
import logging

from gap_engine.agents.base_agent import BaseAgent
from gap_engine.schemas.gap import GapInferenceInput, GapInferenceOutput

logger = logging.getLogger(__name__)


class KeywordGapAgent(BaseAgent[GapInferenceInput, GapInferenceOutput]):
    """Agent used by the assisted tier of gap resolution.

    It only proposes candidates. Competitor attribution, coverage and
    top-opportunity marking are checked and recomputed by the resolver.
    """

    model_tier = "standard"
    temperature = 0.7

    @property
    def system_prompt(self) -> str:
        return """You are an expert SEO keyword analyst who identifies valuable keyword opportunities.

A keyword gap is a keyword that a competitor ranks for while the main domain does not rank, or ranks poorly (beyond the first few pages).

For each gap return:
- keyword: the keyword text
- volume: estimated monthly search volume
- difficulty: 1-100, higher is harder to rank for
- opportunity: high, medium or low potential value for the main domain
- competitor: the competitor domain that ranks for this keyword, written exactly as given
- rank: the competitor's position when the data shows it, otherwise null

Rules:
- Every gap must name exactly one of the listed competitors.
- Spread gaps across competitors; each competitor needs its own minimum count.
- Prefer keywords from the provided data. Only add new keywords when the data is too thin.
- Never name the main domain as a competitor."""

    @property
    def output_type(self) -> type[GapInferenceOutput]:
        return GapInferenceOutput

    def _build_prompt(self, input_data: GapInferenceInput) -> str:
        logger.info(
            "Building keyword gap prompt",
            extra={
                "domain": input_data.domain_name,
                "competitor_count": len(input_data.competitor_names),
                "sample_size": len(input_data.sample_corpus),
            },
        )
        competitors_text = "\n".join(f"- {name}" for name in input_data.competitor_names)
        sample = [row.model_dump(mode="json") for row in input_data.sample_corpus]
        total = input_data.min_per_competitor * len(input_data.competitor_names)

        return f"""Main domain: {input_data.domain_name}

Competitors:
{competitors_text}

Return at least {input_data.min_per_competitor} keyword gaps for EACH competitor ({total} total at minimum).

Keyword data (competitor_positions maps competitor domain to its position; position is the main domain's own position, null when it does not rank):
{json.dumps(sample, indent=2)}"""

    async def infer_gaps(self, request: GapInferenceInput) -> GapInferenceOutput:
        """Collaborator entry point for ``GapResolver``."""
        return await self.run(request)

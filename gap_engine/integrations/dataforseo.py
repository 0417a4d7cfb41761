"""DataForSEO API integration for ranked keywords and gap corpora."""

import logging
from collections.abc import Callable, Sequence
from typing import Any

import httpx

from gap_engine.config import settings
from gap_engine.core.exceptions import APIKeyMissingError, RateLimitExceededError, TransportError
from gap_engine.schemas.gap import KeywordRecord
from gap_engine.services.gaps.domains import domain_key, normalize

logger = logging.getLogger(__name__)

RANKED_KEYWORDS_ENDPOINT = "dataforseo_labs/google/ranked_keywords/live"
STATUS_OK = 20000


class DataForSEOClient:
    """Ranked-keyword lookups against the DataForSEO Labs API.

    Enter with ``async with`` before making requests. An ``http_client``
    passed in is borrowed and left open on exit.
    """

    BASE_URL = "https://api.dataforseo.com/v3/"

    def __init__(
        self,
        login: str | None = None,
        password: str | None = None,
        *,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        login = login or settings.dataforseo_login
        password = password or settings.dataforseo_password
        if not login or not password:
            raise APIKeyMissingError("DataForSEO")

        self.auth = httpx.BasicAuth(login, password)
        self.timeout = timeout or settings.dataforseo_timeout_seconds
        self._http = http_client
        self._borrowed = http_client is not None

    async def __aenter__(self) -> "DataForSEOClient":
        if self._http is None:
            self._http = httpx.AsyncClient(base_url=self.BASE_URL, auth=self.auth, timeout=self.timeout)
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        if self._http is not None and not self._borrowed:
            await self._http.aclose()
            self._http = None

    async def post_task(self, endpoint: str, task: dict[str, Any]) -> list[dict[str, Any]]:
        """POST a single task and return the result blocks it produced.

        Raises:
            RateLimitExceededError: The API answered 429.
            TransportError: Network failure, HTTP error, unreadable body or a
                non-OK status in the response envelope.
        """
        if self._http is None:
            raise RuntimeError("DataForSEOClient must be entered with 'async with' before use")

        logger.info("DataForSEO API request", extra={"endpoint": endpoint, "target": task.get("target")})
        try:
            response = await self._http.post(endpoint, json=[task])
            if response.status_code == 429:
                logger.warning("DataForSEO rate limit hit", extra={"endpoint": endpoint})
                raise RateLimitExceededError("DataForSEO")
            response.raise_for_status()
            envelope = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("DataForSEO request failed", extra={"endpoint": endpoint, "error": str(e)})
            raise TransportError("DataForSEO", str(e)) from e

        return _task_results(endpoint, envelope)

    async def get_ranked_keywords(
        self,
        target: str,
        location_code: int = 2840,
        language_code: str = "en",
        limit: int = 700,
    ) -> list[dict[str, Any]]:
        """Organic keywords ``target`` ranks for, first occurrence per keyword.

        Each dict carries keyword, search_volume, competition, difficulty,
        position and url.
        """
        results = await self.post_task(
            RANKED_KEYWORDS_ENDPOINT,
            {
                "target": normalize(target),
                "location_code": location_code,
                "language_code": language_code,
                "item_types": ["organic"],
                "limit": limit,
            },
        )

        keywords: dict[str, dict[str, Any]] = {}
        for result in results:
            for item in result.get("items") or []:
                parsed = _ranked_keyword(item)
                if parsed is not None:
                    keywords.setdefault(parsed["keyword"].lower(), parsed)
        return list(keywords.values())


def _task_results(endpoint: str, envelope: Any) -> list[dict[str, Any]]:
    if not isinstance(envelope, dict) or envelope.get("status_code") != STATUS_OK:
        status = envelope.get("status_message") if isinstance(envelope, dict) else None
        logger.warning("DataForSEO API error", extra={"endpoint": endpoint, "status": status})
        raise TransportError("DataForSEO", status or "Unexpected response envelope")

    return [
        block
        for task in envelope.get("tasks") or []
        if task.get("status_code") == STATUS_OK
        for block in task.get("result") or []
    ]


def _ranked_keyword(item: dict[str, Any]) -> dict[str, Any] | None:
    keyword_data = item.get("keyword_data") or {}
    keyword = (keyword_data.get("keyword") or "").strip()
    if not keyword:
        return None

    info = keyword_data.get("keyword_info") or {}
    serp_item = (item.get("ranked_serp_element") or {}).get("serp_item") or {}
    return {
        "keyword": keyword,
        "search_volume": info.get("search_volume"),
        "competition": info.get("competition"),
        "difficulty": (keyword_data.get("keyword_properties") or {}).get("keyword_difficulty"),
        "position": serp_item.get("rank_absolute"),
        "url": serp_item.get("url"),
    }


class DataForSEOCorpusProvider:
    """Build a gap corpus from ranked keywords of a domain and its competitors.

    The domain's own ranked keywords supply its positions; each competitor's
    ranked keywords add rows (or competitor positions on existing rows). A
    failing competitor is skipped; a failing domain lookup propagates.
    """

    def __init__(
        self,
        client_factory: Callable[[], DataForSEOClient] = DataForSEOClient,
        language_code: str = "en",
        limit: int = 700,
    ) -> None:
        self.client_factory = client_factory
        self.language_code = language_code
        self.limit = limit

    async def fetch_corpus(
        self,
        domain: str,
        competitors: Sequence[str],
        location_code: int,
    ) -> list[KeywordRecord]:
        rows: dict[str, dict[str, Any]] = {}

        async with self.client_factory() as client:
            own = await client.get_ranked_keywords(
                domain,
                location_code=location_code,
                language_code=self.language_code,
                limit=self.limit,
            )
            for item in own:
                row = self._row_for(rows, item)
                row["position"] = item.get("position")

            for competitor in competitors:
                try:
                    ranked = await client.get_ranked_keywords(
                        competitor,
                        location_code=location_code,
                        language_code=self.language_code,
                        limit=self.limit,
                    )
                except TransportError as e:
                    logger.warning(
                        "Skipping competitor without ranked keywords",
                        extra={"competitor": competitor, "error": e.message},
                    )
                    continue

                competitor_key = domain_key(competitor)
                for item in ranked:
                    row = self._row_for(rows, item)
                    row["competitor_positions"][competitor_key] = item.get("position")

        corpus = [KeywordRecord.model_validate(row) for row in rows.values()]
        logger.info(
            "Built keyword corpus from DataForSEO",
            extra={"domain": domain, "competitors": len(competitors), "rows": len(corpus)},
        )
        return corpus

    @staticmethod
    def _row_for(rows: dict[str, dict[str, Any]], item: dict[str, Any]) -> dict[str, Any]:
        key = item["keyword"].lower()
        row = rows.get(key)
        if row is None:
            row = {
                "keyword": item["keyword"],
                "monthly_search_volume": 0,
                "competition_index": 0,
                "position": None,
                "competitor_positions": {},
            }
            rows[key] = row
        if not row["monthly_search_volume"] and item.get("search_volume"):
            row["monthly_search_volume"] = int(item["search_volume"])
        if not row["competition_index"]:
            row["competition_index"] = _competition_index(item)
        return row


def _competition_index(item: dict[str, Any]) -> int:
    """Keyword difficulty when present, otherwise the 0-1 competition scaled to 100."""
    difficulty = item.get("difficulty")
    if difficulty is not None:
        return max(0, min(100, int(difficulty)))
    competition = item.get("competition")
    if competition is not None:
        return max(0, min(100, round(float(competition) * 100)))
    return 0


# Country code -> (DataForSEO location code, display name)
LOCATIONS: dict[str, tuple[int, str]] = {
    "us": (2840, "United States"),
    "uk": (2826, "United Kingdom"),
    "ca": (2124, "Canada"),
    "au": (2036, "Australia"),
    "de": (2276, "Germany"),
    "fr": (2250, "France"),
    "es": (2724, "Spain"),
    "it": (2380, "Italy"),
    "in": (2356, "India"),
    "jp": (2392, "Japan"),
    "br": (2076, "Brazil"),
    "nl": (2528, "Netherlands"),
}
DEFAULT_COUNTRY = "us"


def get_location_code(locale: str) -> int:
    """Map ``en-uk`` or ``de`` style locales to a location code, defaulting to the US."""
    country = locale.rsplit("-", 1)[-1].lower()
    code, _ = LOCATIONS.get(country, LOCATIONS[DEFAULT_COUNTRY])
    return code


def get_location_name(location_code: int) -> str:
    for code, name in LOCATIONS.values():
        if code == location_code:
            return name
    return "Unknown"

"""Exception taxonomy for keyword gap resolution."""

from typing import Any


class GapEngineError(Exception):
    """Base exception for all engine errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


# Caller-visible errors
class InputError(GapEngineError):
    """Invalid analysis input; no resolution is attempted."""

    pass


class LimitExceededError(GapEngineError):
    """Keyword selection capacity reached."""

    def __init__(self, limit: int, keyword: str) -> None:
        self.limit = limit
        self.keyword = keyword
        super().__init__(
            f"You can select a maximum of {limit} keywords",
            {"limit": limit, "keyword": keyword},
        )


# Tier errors (recovered inside the resolver)
class TierError(GapEngineError):
    """Base class for failures that make the resolver fall through a tier."""

    pass


class TransportError(TierError):
    """Outbound call failed: timeout, non-2xx status or unreadable payload."""

    def __init__(self, api_name: str, message: str) -> None:
        self.api_name = api_name
        super().__init__(f"{api_name} API error: {message}", {"api": api_name})


class RateLimitExceededError(TransportError):
    """Rate limit exceeded for external API."""

    def __init__(self, api_name: str) -> None:
        super().__init__(api_name, "Rate limit exceeded")


class APIKeyMissingError(TransportError):
    """API credentials not configured."""

    def __init__(self, api_name: str) -> None:
        super().__init__(api_name, "API key not configured")


class ValidationError(TierError):
    """Collaborator response has the wrong shape or missing fields."""

    pass


class CoverageShortfallError(TierError):
    """A tier produced records but left some competitor under the minimum."""

    def __init__(self, tier: str, shortfall: dict[str, int], minimum: int) -> None:
        self.tier = tier
        self.shortfall = shortfall
        self.minimum = minimum
        super().__init__(
            f"Tier {tier} missed coverage minimum {minimum} for {len(shortfall)} competitor(s)",
            {"tier": tier, "shortfall": shortfall, "minimum": minimum},
        )

"""Domain canonicalization for comparison and display."""

from __future__ import annotations

import re
from collections.abc import Iterable

_PREFIX_PATTERN = re.compile(r"^(?:https?://|www\.)", re.IGNORECASE)


def _strip_once(value: str) -> str:
    cleaned = value.strip()
    cleaned = _PREFIX_PATTERN.sub("", cleaned, count=1)
    return cleaned.rstrip("/")


def normalize(raw: str) -> str:
    """Strip scheme, a leading ``www.`` and trailing slashes.

    Case is preserved. Stripping repeats until nothing changes, so
    ``normalize(normalize(x)) == normalize(x)`` for every input.
    """
    current = raw or ""
    while True:
        stripped = _strip_once(current)
        if stripped == current:
            return stripped
        current = stripped


def normalize_list(raws: Iterable[str]) -> list[str]:
    """Normalize element-wise, keeping caller order and dropping blanks."""
    normalized: list[str] = []
    for raw in raws:
        value = normalize(raw)
        if value:
            normalized.append(value)
    return normalized


def domain_key(raw: str) -> str:
    """Case-insensitive identity of a domain."""
    return normalize(raw).lower()


def same_domain(left: str, right: str) -> bool:
    return domain_key(left) == domain_key(right)

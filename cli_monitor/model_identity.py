"""Model identity helpers used to size the context window of a session."""
from __future__ import annotations

import re

from cli_monitor.models import DEFAULT_CONTEXT_WINDOW_LIMIT

_DATE_SUFFIX_PATTERN = re.compile(r"(?:-\d{8}|-\d{4}-\d{2}-\d{2})+$")

# Keyed by family token so individual families can diverge later.
_CONTEXT_WINDOW_BY_FAMILY: dict[str, int] = {
    "opus": 200_000,
    "sonnet": 200_000,
    "haiku": 200_000,
}


def canonical_model_name(raw_model: str | None) -> str:
    """Return a canonical model identifier with build/date suffixes removed.

    Example:
      claude-opus-4-5-20251101 -> claude-opus-4-5
    """
    raw = (raw_model or "").strip().lower()
    if not raw:
        return ""
    normalized = re.sub(r"[\s_]+", "-", raw)
    normalized = re.sub(r"-{2,}", "-", normalized).strip("-")
    stripped = _DATE_SUFFIX_PATTERN.sub("", normalized).strip("-")
    return stripped or normalized


def model_family(raw_model: str | None) -> str:
    """Return the lowercase family token (opus, sonnet, haiku), or "" if unknown."""
    canonical = canonical_model_name(raw_model)
    for family in _CONTEXT_WINDOW_BY_FAMILY:
        if family in canonical:
            return family
    return ""


def context_window_limit(raw_model: str | None) -> int:
    family = model_family(raw_model)
    return _CONTEXT_WINDOW_BY_FAMILY.get(family, DEFAULT_CONTEXT_WINDOW_LIMIT)

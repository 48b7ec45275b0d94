"""Timestamp normalization helpers."""
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any


def now_ms() -> int:
    return int(time.time() * 1000)


def _parse_datetime_token(token: str) -> datetime | None:
    cleaned = token.strip()
    if not cleaned:
        return None
    try:
        return datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError:
        pass
    for fmt in ("%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%d %H:%M:%S"):
        try:
            parsed = datetime.strptime(cleaned, fmt)
        except ValueError:
            continue
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def iso_to_epoch_ms(value: Any) -> int | None:
    """Convert an ISO 8601 timestamp to epoch milliseconds.

    Naive timestamps are read as UTC. Returns None when the value cannot be
    parsed, or when it resolves to the epoch itself.
    """
    if not isinstance(value, str):
        return None
    parsed = _parse_datetime_token(value)
    if parsed is None:
        return None
    dt = parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    try:
        epoch_ms = round(dt.astimezone(timezone.utc).timestamp() * 1000)
    except (OverflowError, ValueError, OSError):
        return None
    return epoch_ms or None

"""Pure derivations of session health from performance counters."""
from __future__ import annotations

from typing import Iterable

from cli_monitor.models import AggregateStatus, HealthStatus, SessionRecord, TurnMetrics

CRITICAL_PRESSURE = 0.9
WARNING_PRESSURE = 0.7
CRITICAL_CACHE_RATIO = 0.1
WARNING_CACHE_RATIO = 0.3
# Cache ratios are only meaningful once the session has warmed up.
MIN_TURNS_FOR_CACHE_CHECK = 3


def derive_health_status(
    context_pressure: float,
    cache_hit_ratio: float,
    turn_count: int,
    compaction_count: int,
) -> HealthStatus:
    warmed_up = turn_count > MIN_TURNS_FOR_CACHE_CHECK
    if context_pressure > CRITICAL_PRESSURE or (cache_hit_ratio < CRITICAL_CACHE_RATIO and warmed_up):
        return "critical"
    if (
        context_pressure > WARNING_PRESSURE
        or (cache_hit_ratio < WARNING_CACHE_RATIO and warmed_up)
        or compaction_count > 0
    ):
        return "warning"
    return "healthy"


def cache_hit_ratio(turns: Iterable[TurnMetrics]) -> float:
    """Share of prompt tokens served from cache across the given turns."""
    total_read = 0
    total_input = 0
    for turn in turns:
        total_read += turn.cacheReadTokens
        total_input += turn.inputTokens
    denominator = total_read + total_input
    if denominator <= 0:
        return 0.0
    return total_read / denominator


def context_pressure(used: int, limit: int) -> float:
    if limit <= 0:
        return 0.0
    return used / limit


def refresh_health(session: SessionRecord) -> HealthStatus:
    metrics = session.performanceMetrics
    metrics.healthStatus = derive_health_status(
        metrics.contextPressure,
        metrics.cacheHitRatio,
        session.turnCount,
        metrics.compactionCount,
    )
    return metrics.healthStatus


def derive_aggregate_status(sessions: Iterable[SessionRecord]) -> AggregateStatus:
    """Collapse many sessions into a single ambient status."""
    seen_any = False
    has_working = False
    for session in sessions:
        seen_any = True
        if session.status in ("waiting_for_approval", "waiting_for_input"):
            return "attention"
        if session.status == "working":
            has_working = True
    if not seen_any:
        return "idle"
    return "nominal" if has_working else "idle"

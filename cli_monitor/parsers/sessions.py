"""Incrementally parse JSONL session transcripts into SessionRecord state.

Each call consumes one chunk of newly appended text. The return value is the
exact number of UTF-8 bytes of that chunk that were applied to the store; the
caller resubmits everything after that point (at most one trailing partial
line) on its next read.
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import PurePath
from typing import Any, Callable, Optional, Union

from cli_monitor import config
from cli_monitor.date_utils import iso_to_epoch_ms, now_ms
from cli_monitor.model_identity import context_window_limit
from cli_monitor.models import (
    CompactionEvent,
    PendingToolUse,
    SessionRecord,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    TurnMetrics,
    parse_content_blocks,
)
from cli_monitor.observability import record_parse, record_parser_failure
from cli_monitor.session_health import cache_hit_ratio, context_pressure, refresh_health
from cli_monitor.session_store import SessionStore

logger = logging.getLogger("cli_monitor.parser")

GOAL_MAX_LENGTH = 200
RECENT_OUTPUT_MAX_LENGTH = 500
RECENT_TURNS_CAPACITY = 10

_COMPACTION_SUBTYPES = {
    "compact_boundary": ("compact", "compactMetadata"),
    "microcompact_boundary": ("microcompact", "microcompactMetadata"),
}


# ── Line decoding ───────────────────────────────────────────────────

@dataclass(frozen=True)
class Decoded:
    event: Any


@dataclass(frozen=True)
class Incomplete:
    """Trailing line that does not parse yet; the writer may still be flushing it."""


@dataclass(frozen=True)
class Corrupt:
    error: str


DecodeResult = Union[Decoded, Incomplete, Corrupt]


def decode_line(text: str, is_last: bool) -> DecodeResult:
    try:
        return Decoded(json.loads(text))
    except (ValueError, RecursionError) as exc:
        if is_last:
            return Incomplete()
        return Corrupt(str(exc))


# ── Field helpers ───────────────────────────────────────────────────

def _coerce_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return default


def _path_segments(file_path: str) -> list[str]:
    return file_path.replace("\\", "/").split("/")


def extract_project_hash(file_path: str) -> str:
    """~/.claude/projects/{hash}/{sessionId}.jsonl -> {hash}"""
    segments = _path_segments(file_path)
    return segments[-2] if len(segments) >= 2 else ""


def extract_parent_session_id(file_path: str) -> Optional[str]:
    """.../{parentSessionId}/subagents/{agentId}.jsonl -> {parentSessionId}"""
    segments = _path_segments(file_path)
    try:
        index = segments.index("subagents")
    except ValueError:
        return None
    if index > 0 and segments[index - 1]:
        return segments[index - 1]
    return None


def is_subagent_file(file_path: str, event: dict[str, Any]) -> bool:
    return "/subagents/" in file_path.replace("\\", "/") or bool(event.get("agentId"))


def _project_name(cwd: str) -> str:
    return PurePath(cwd).name if cwd else ""


# ── Parser ──────────────────────────────────────────────────────────

class JsonlSessionParser:
    """Applies transcript lines to a SessionStore.

    Holds no per-file state between calls; everything lives in the store.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger | None = None,
        max_line_bytes: int | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.logger = logger or logging.getLogger("cli_monitor.parser")
        self.max_line_bytes = max_line_bytes if max_line_bytes is not None else config.MAX_LINE_BYTES
        self.clock = clock

    def parse(self, file_path: str, new_content: str, store: SessionStore) -> int:
        started = time.perf_counter()
        lines = new_content.split("\n")
        bytes_consumed = 0
        applied = 0
        result = "ok"

        for index, line in enumerate(lines):
            is_last = index == len(lines) - 1
            line_bytes = len((line if is_last else f"{line}\n").encode("utf-8", errors="surrogateescape"))

            if line_bytes > self.max_line_bytes:
                self.logger.warning(
                    "Skipping oversized line in %s (%d bytes > %d)", file_path, line_bytes, self.max_line_bytes
                )
                record_parser_failure("oversized_line")
                bytes_consumed += line_bytes
                continue

            trimmed = line.strip()
            if not trimmed:
                bytes_consumed += line_bytes
                continue

            decoded = decode_line(trimmed, is_last)
            if isinstance(decoded, Incomplete):
                result = "partial"
                break
            if isinstance(decoded, Corrupt):
                self.logger.warning("Skipping malformed line %d in %s: %s", index + 1, file_path, decoded.error)
                record_parser_failure("corrupt_line")
                bytes_consumed += line_bytes
                continue

            event = decoded.event
            if isinstance(event, dict) and event.get("sessionId") and event.get("type"):
                self.apply_event(file_path, event, store)
                applied += 1
            bytes_consumed += line_bytes

        record_parse(result, applied, (time.perf_counter() - started) * 1000)
        return bytes_consumed

    # ── Event application ──────────────────────────────────────────

    def apply_event(self, file_path: str, event: dict[str, Any], store: SessionStore) -> SessionRecord:
        session_id = str(event["sessionId"])
        event_time = iso_to_epoch_ms(event.get("timestamp"))

        session = store.get_session(session_id)
        if session is None:
            session = self._create_session(file_path, session_id, event, event_time)

        if event_time:
            session.lastActivityAt = event_time
        if event.get("gitBranch"):
            session.gitBranch = str(event["gitBranch"])

        message = event.get("message")
        if isinstance(message, dict):
            role = message.get("role") or event.get("type")
            if role == "user":
                self._apply_user_message(session, message)
            elif role == "assistant":
                self._apply_assistant_message(session, message, event_time)

        event_type = event.get("type")
        if event_type == "summary":
            session.status = "idle"
            session.pendingToolUse = None
            summary = event.get("summary")
            if isinstance(summary, str) and summary:
                session.recentOutput = summary[:RECENT_OUTPUT_MAX_LENGTH]
        elif event_type == "system":
            subtype = event.get("subtype")
            if isinstance(subtype, str) and subtype in _COMPACTION_SUBTYPES:
                self._apply_compaction(session, event, event_time)

        store.set_session(session_id, session)
        return session

    def _create_session(
        self,
        file_path: str,
        session_id: str,
        event: dict[str, Any],
        event_time: Optional[int],
    ) -> SessionRecord:
        cwd = str(event.get("cwd") or "")
        subagent = is_subagent_file(file_path, event)
        created_at = event_time or self.clock()
        return SessionRecord(
            sessionId=session_id,
            filePath=file_path,
            cwd=cwd,
            projectName=_project_name(cwd),
            projectHash=extract_project_hash(file_path),
            gitBranch=event.get("gitBranch") or None,
            startedAt=created_at,
            lastActivityAt=created_at,
            isSubagent=subagent,
            parentSessionId=extract_parent_session_id(file_path) if subagent else None,
        )

    def _apply_user_message(self, session: SessionRecord, message: dict[str, Any]) -> None:
        session.messageCount += 1
        content = message.get("content")
        if isinstance(content, str):
            if not session.goal:
                session.goal = content[:GOAL_MAX_LENGTH]
        elif isinstance(content, list):
            # A tool_result means the pending tool call was approved and ran.
            if any(isinstance(block, ToolResultBlock) for block in parse_content_blocks(content)):
                session.status = "working"
                session.pendingToolUse = None

    def _apply_assistant_message(
        self,
        session: SessionRecord,
        message: dict[str, Any],
        event_time: Optional[int],
    ) -> None:
        session.messageCount += 1
        if message.get("model"):
            session.model = str(message["model"])

        usage = message.get("usage")
        if isinstance(usage, dict):
            self._accumulate_usage(session, usage)

        content = message.get("content")
        if isinstance(content, list):
            has_tool_use = False
            has_text = False
            for block in parse_content_blocks(content):
                if isinstance(block, ToolUseBlock):
                    if block.name and block.id:
                        has_tool_use = True
                        session.pendingToolUse = PendingToolUse(toolName=block.name, toolId=block.id)
                elif isinstance(block, TextBlock):
                    if block.text:
                        has_text = True
                        session.recentOutput = block.text[:RECENT_OUTPUT_MAX_LENGTH]
            if has_tool_use:
                session.status = "waiting_for_approval"
            elif has_text:
                session.status = "working"
        elif isinstance(content, str):
            session.recentOutput = content[:RECENT_OUTPUT_MAX_LENGTH]
            session.status = "working"

        if message.get("stop_reason") is not None:
            session.turnCount += 1
            if session.status != "waiting_for_approval":
                session.status = "waiting_for_input"
            if isinstance(usage, dict):
                self._record_turn(session, usage, event_time)

    def _accumulate_usage(self, session: SessionRecord, usage: dict[str, Any]) -> None:
        tokens = session.tokenUsage
        tokens.inputTokens += _coerce_int(usage.get("input_tokens"))
        tokens.outputTokens += _coerce_int(usage.get("output_tokens"))
        tokens.cacheCreationTokens += _coerce_int(usage.get("cache_creation_input_tokens"))
        tokens.cacheReadTokens += _coerce_int(usage.get("cache_read_input_tokens"))
        cache_creation = usage.get("cache_creation")
        if isinstance(cache_creation, dict):
            tokens.ephemeral5mTokens += _coerce_int(cache_creation.get("ephemeral_5m_input_tokens"))
            tokens.ephemeral1hTokens += _coerce_int(cache_creation.get("ephemeral_1h_input_tokens"))

    def _record_turn(self, session: SessionRecord, usage: dict[str, Any], event_time: Optional[int]) -> None:
        metrics = session.performanceMetrics
        input_tokens = _coerce_int(usage.get("input_tokens"))
        metrics.recentTurns.append(
            TurnMetrics(
                turnNumber=session.turnCount,
                inputTokens=input_tokens,
                outputTokens=_coerce_int(usage.get("output_tokens")),
                cacheReadTokens=_coerce_int(usage.get("cache_read_input_tokens")),
                cacheCreationTokens=_coerce_int(usage.get("cache_creation_input_tokens")),
                timestamp=event_time or self.clock(),
            )
        )
        if len(metrics.recentTurns) > RECENT_TURNS_CAPACITY:
            del metrics.recentTurns[: len(metrics.recentTurns) - RECENT_TURNS_CAPACITY]

        metrics.cacheHitRatio = cache_hit_ratio(metrics.recentTurns)
        metrics.contextWindowUsed = input_tokens
        metrics.contextWindowLimit = context_window_limit(session.model)
        metrics.contextPressure = context_pressure(metrics.contextWindowUsed, metrics.contextWindowLimit)
        refresh_health(session)

    def _apply_compaction(self, session: SessionRecord, event: dict[str, Any], event_time: Optional[int]) -> None:
        kind, metadata_key = _COMPACTION_SUBTYPES[event["subtype"]]
        metadata = event.get(metadata_key)
        if not isinstance(metadata, dict):
            metadata = {}
        tokens_saved = metadata.get("tokensSaved")
        timestamp = event_time or self.clock()

        metrics = session.performanceMetrics
        metrics.compactionEvents.append(
            CompactionEvent(
                type=kind,
                timestamp=timestamp,
                trigger=str(metadata.get("trigger") or "unknown"),
                preTokens=_coerce_int(metadata.get("preTokens")),
                tokensSaved=_coerce_int(tokens_saved) if tokens_saved is not None else None,
                sessionId=session.sessionId,
                parentSessionId=session.parentSessionId,
            )
        )
        metrics.compactionCount += 1
        metrics.lastCompactionAt = timestamp
        refresh_health(session)


_default_parser = JsonlSessionParser()


def parse_jsonl_chunk(file_path: str, new_content: str, store: SessionStore) -> int:
    """Parse newly appended transcript text; returns the bytes safely consumed."""
    return _default_parser.parse(file_path, new_content, store)

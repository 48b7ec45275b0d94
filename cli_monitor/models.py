"""Pydantic models for transcript events and the session records shipped to the server."""
from __future__ import annotations

from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError

SessionStatus = Literal["working", "waiting_for_approval", "waiting_for_input", "idle"]
HealthStatus = Literal["healthy", "warning", "critical"]
AggregateStatus = Literal["nominal", "attention", "idle"]

DEFAULT_CONTEXT_WINDOW_LIMIT = 200_000


# ── Content blocks (transcript input) ───────────────────────────────

class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str = ""


class ToolUseBlock(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: Optional[str] = None
    name: Optional[str] = None


class ToolResultBlock(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str = ""


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock]

_BLOCK_MODELS: dict[str, type[BaseModel]] = {
    "text": TextBlock,
    "tool_use": ToolUseBlock,
    "tool_result": ToolResultBlock,
}


def parse_content_blocks(raw_blocks: list[Any]) -> list[ContentBlock]:
    """Keep only the recognized block kinds; thinking/image/etc. are dropped."""
    blocks: list[ContentBlock] = []
    for raw in raw_blocks:
        if not isinstance(raw, dict):
            continue
        model = _BLOCK_MODELS.get(str(raw.get("type") or ""))
        if model is None:
            continue
        try:
            blocks.append(model.model_validate(raw))
        except ValidationError:
            continue
    return blocks


# ── Session-related models ──────────────────────────────────────────

class TokenUsage(BaseModel):
    inputTokens: int = 0
    outputTokens: int = 0
    cacheCreationTokens: int = 0
    cacheReadTokens: int = 0
    ephemeral5mTokens: int = 0
    ephemeral1hTokens: int = 0


class PendingToolUse(BaseModel):
    toolName: str
    toolId: str


class TurnMetrics(BaseModel):
    turnNumber: int
    inputTokens: int = 0
    outputTokens: int = 0
    cacheReadTokens: int = 0
    cacheCreationTokens: int = 0
    timestamp: int = 0  # epoch ms


class CompactionEvent(BaseModel):
    type: Literal["compact", "microcompact"]
    timestamp: int  # epoch ms
    trigger: str = "unknown"  # "auto" | "manual" | ...
    preTokens: int = 0
    tokensSaved: Optional[int] = None
    sessionId: str
    parentSessionId: Optional[str] = None


class PerformanceMetrics(BaseModel):
    compactionCount: int = 0
    lastCompactionAt: Optional[int] = None
    compactionEvents: list[CompactionEvent] = Field(default_factory=list)
    recentTurns: list[TurnMetrics] = Field(default_factory=list)
    cacheHitRatio: float = 0.0
    contextWindowUsed: int = 0
    contextWindowLimit: int = DEFAULT_CONTEXT_WINDOW_LIMIT
    contextPressure: float = 0.0
    healthStatus: HealthStatus = "healthy"


class SessionRecord(BaseModel):
    sessionId: str
    filePath: str
    cwd: str = ""
    projectName: str = ""
    projectHash: str = ""
    gitBranch: Optional[str] = None
    status: SessionStatus = "working"
    messageCount: int = 0
    turnCount: int = 0
    goal: Optional[str] = None  # first user text, max 200 chars, write-once
    recentOutput: Optional[str] = None  # last assistant text, max 500 chars
    pendingToolUse: Optional[PendingToolUse] = None
    tokenUsage: TokenUsage = Field(default_factory=TokenUsage)
    model: Optional[str] = None
    startedAt: int = 0  # epoch ms
    lastActivityAt: int = 0  # epoch ms
    lastReadOffset: int = 0
    isSubagent: bool = False
    parentSessionId: Optional[str] = None
    performanceMetrics: PerformanceMetrics = Field(default_factory=PerformanceMetrics)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


# ── Server payloads ────────────────────────────────────────────────

class DaemonRegisterPayload(BaseModel):
    daemonId: str
    pid: int
    version: str
    watchPath: str
    capabilities: list[str] = Field(default_factory=list)
    startedAt: int  # epoch ms


class DaemonHeartbeatPayload(BaseModel):
    daemonId: str
    sessionCount: int = 0


class DaemonIngestPayload(BaseModel):
    daemonId: str
    sessions: list[SessionRecord] = Field(default_factory=list)
    removedSessionIds: list[str] = Field(default_factory=list)


class DaemonDeregisterPayload(BaseModel):
    daemonId: str

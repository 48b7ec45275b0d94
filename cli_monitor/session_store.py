"""In-memory session table owned by the daemon process.

Single writer: the parser and the daemon loop run on one driver and the store
does no locking. Nothing is persisted and nothing is evicted; sessions leave
only through remove_session/remove_by_file_path.
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from cli_monitor.models import SessionRecord

logger = logging.getLogger("cli_monitor.store")


class SessionStore:
    def __init__(self) -> None:
        self._sessions: dict[str, SessionRecord] = {}
        self._read_offsets: dict[str, int] = {}
        self._changed: set[str] = set()
        self._removed: set[str] = set()

    # ── Core table ─────────────────────────────────────────────────

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        return self._sessions.get(session_id)

    def set_session(self, session_id: str, session: SessionRecord) -> None:
        self._sessions[session_id] = session
        self._changed.add(session_id)
        self._removed.discard(session_id)

    def get_session_count(self) -> int:
        return len(self._sessions)

    def list_sessions(self) -> list[SessionRecord]:
        return [session.model_copy(deep=True) for session in self._sessions.values()]

    # ── Removal ────────────────────────────────────────────────────

    def remove_session(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        self._read_offsets.pop(session.filePath, None)
        self._changed.discard(session_id)
        self._removed.add(session_id)

    def remove_by_file_path(self, file_path: str) -> int:
        matching = [sid for sid, session in self._sessions.items() if session.filePath == file_path]
        for session_id in matching:
            self.remove_session(session_id)
        self._read_offsets.pop(file_path, None)
        if matching:
            logger.info("Removed %d session(s) for deleted file %s", len(matching), file_path)
        return len(matching)

    # ── Read offsets ───────────────────────────────────────────────

    def get_read_offset(self, file_path: str) -> int:
        return self._read_offsets.get(file_path, 0)

    def set_read_offset(self, file_path: str, offset: int) -> None:
        """Record the offset; sessions whose lastReadOffset moves are queued for the next flush."""
        self._read_offsets[file_path] = offset
        for session_id, session in self._sessions.items():
            if session.filePath == file_path and session.lastReadOffset != offset:
                session.lastReadOffset = offset
                self._changed.add(session_id)

    # ── Change tracking ────────────────────────────────────────────

    def flush_changes(self) -> tuple[list[SessionRecord], list[str]]:
        """Return copies of sessions changed and ids removed since the last flush."""
        updated = [
            self._sessions[session_id].model_copy(deep=True)
            for session_id in sorted(self._changed)
            if session_id in self._sessions
        ]
        removed = sorted(self._removed)
        self._changed.clear()
        self._removed.clear()
        return updated, removed

    def mark_pending_retry(self, updated: Iterable[SessionRecord], removed: Iterable[str]) -> None:
        """Re-queue a batch that failed to ship."""
        for session in updated:
            if session.sessionId in self._sessions:
                self._changed.add(session.sessionId)
        for session_id in removed:
            if session_id not in self._sessions:
                self._removed.add(session_id)

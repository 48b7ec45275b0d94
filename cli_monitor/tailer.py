"""Read newly appended transcript bytes and feed them to the parser.

Offsets are tracked per file in the SessionStore and always land on a line
boundary the parser accepted.
"""
from __future__ import annotations

import errno
import logging
import os
from pathlib import Path
from typing import Iterator, Optional

from cli_monitor import config
from cli_monitor.parsers.sessions import JsonlSessionParser
from cli_monitor.session_store import SessionStore

logger = logging.getLogger("cli_monitor.tailer")


def _skip_continuation_bytes(data: bytes) -> int:
    """Count leading UTF-8 continuation bytes (0b10xxxxxx) left by a mid-character offset."""
    skip = 0
    while skip < len(data) and (data[skip] & 0xC0) == 0x80:
        skip += 1
    return skip


def read_new_content(
    path: Path,
    offset: int,
    max_bytes: int | None = None,
) -> Optional[tuple[int, str]]:
    """Return (start_offset, text) for bytes appended after ``offset``.

    A file smaller than ``offset`` was truncated or replaced and is re-read
    from the start. When more than ``max_bytes`` are pending only the tail is
    read. Returns None when there is nothing new.
    """
    limit = max_bytes if max_bytes is not None else config.MAX_FILE_READ_BYTES
    size = path.stat().st_size
    if size < offset:
        offset = 0
    if size <= offset:
        return None

    pending = size - offset
    start = offset
    if pending > limit:
        logger.warning(
            "File %s has %d pending bytes, reading last %d only", path, pending, limit
        )
        start = size - limit

    with path.open("rb") as handle:
        handle.seek(start)
        data = handle.read(size - start)

    skip = _skip_continuation_bytes(data)
    if skip:
        data = data[skip:]
        start += skip
    # surrogateescape keeps undecodable bytes countable by the parser.
    return start, data.decode("utf-8", errors="surrogateescape")


def is_within_root(path: Path, root: Path) -> bool:
    try:
        return path.resolve().is_relative_to(root.resolve())
    except (OSError, RuntimeError):
        # Symlink loop.
        return False


def process_file(
    path: Path,
    store: SessionStore,
    parser: JsonlSessionParser | None = None,
    *,
    root: Path | None = None,
    max_bytes: int | None = None,
) -> int:
    """Apply new lines of one transcript; returns the bytes consumed.

    With ``root`` set, files whose real path (symlinks resolved) falls outside
    it are skipped.
    """
    if root is not None and not is_within_root(path, root):
        logger.warning("Skipping %s: resolves outside watch directory %s", path, root)
        return 0
    parser = parser or JsonlSessionParser()
    file_path = str(path)
    try:
        chunk = read_new_content(path, store.get_read_offset(file_path), max_bytes)
    except FileNotFoundError:
        store.remove_by_file_path(file_path)
        return 0
    except PermissionError as exc:
        logger.warning("Permission denied reading %s, skipping: %s", file_path, exc)
        return 0
    except OSError as exc:
        if exc.errno == errno.ENOENT:
            store.remove_by_file_path(file_path)
            return 0
        raise

    if chunk is None:
        return 0
    start, text = chunk
    consumed = parser.parse(file_path, text, store)
    store.set_read_offset(file_path, start + consumed)
    return consumed


def iter_jsonl_files(root: Path) -> Iterator[Path]:
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in sorted(filenames):
            if name.endswith(".jsonl"):
                yield Path(dirpath) / name


def scan_existing(root: Path, store: SessionStore, parser: JsonlSessionParser | None = None) -> int:
    """Process every transcript already present under ``root``; returns files read."""
    if not root.exists():
        logger.info("Watch directory %s does not exist yet", root)
        return 0
    parser = parser or JsonlSessionParser()
    count = 0
    for path in iter_jsonl_files(root):
        process_file(path, store, parser, root=root)
        count += 1
    logger.info("Initial scan processed %d transcript file(s) under %s", count, root)
    return count

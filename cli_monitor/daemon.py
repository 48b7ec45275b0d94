"""Daemon lifecycle: register, heartbeat, ship session snapshots, deregister.

File change detection is driven from outside; the daemon performs an initial
scan and exposes ``process_file`` for whatever watcher notifies it.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import uuid
from pathlib import Path
from typing import Optional

from cli_monitor import config
from cli_monitor.client import MonitorClient, TransportError
from cli_monitor.date_utils import now_ms
from cli_monitor.models import DaemonRegisterPayload
from cli_monitor.observability import initialize, shutdown, start_span
from cli_monitor.parsers.sessions import JsonlSessionParser
from cli_monitor.session_store import SessionStore
from cli_monitor.tailer import process_file, scan_existing

logger = logging.getLogger("cli_monitor.daemon")


# ── PID lock ───────────────────────────────────────────────────────

def is_process_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user.
        return True
    return True


def acquire_lock(lock_file: Path | None = None) -> bool:
    """Claim the single-daemon lock; stale locks from dead processes are taken over."""
    lock_path = lock_file or config.LOCK_FILE
    try:
        existing = lock_path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        existing = ""
    except OSError as exc:
        logger.error("Could not read lock file %s: %s", lock_path, exc)
        return False

    if existing:
        try:
            pid = int(existing)
        except ValueError:
            pid = 0
        if pid and pid != os.getpid() and is_process_running(pid):
            return False

    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock_path.write_text(str(os.getpid()), encoding="utf-8")
    except OSError as exc:
        logger.error("Could not write lock file %s: %s", lock_path, exc)
        return False
    return True


def release_lock(lock_file: Path | None = None) -> None:
    lock_path = lock_file or config.LOCK_FILE
    try:
        lock_path.unlink()
    except FileNotFoundError:
        pass


def new_daemon_id() -> str:
    return f"dm_{uuid.uuid4().hex[:16]}"


# ── Daemon ─────────────────────────────────────────────────────────

class Daemon:
    def __init__(
        self,
        client: MonitorClient,
        store: SessionStore | None = None,
        watch_path: Path | None = None,
        *,
        daemon_id: str | None = None,
        parser: JsonlSessionParser | None = None,
        heartbeat_interval: float | None = None,
        ingest_interval: float | None = None,
    ):
        self.client = client
        self.store = store or SessionStore()
        self.watch_path = watch_path or config.WATCH_PATH
        self.daemon_id = daemon_id or new_daemon_id()
        self.parser = parser or JsonlSessionParser()
        self.heartbeat_interval = heartbeat_interval or config.HEARTBEAT_INTERVAL_SECONDS
        self.ingest_interval = ingest_interval or config.INGEST_INTERVAL_SECONDS
        self.started_at = now_ms()
        self._tasks: list[asyncio.Task] = []
        self._ingest_lock = asyncio.Lock()
        self._stopping = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return bool(self._tasks) and not self._stopping.is_set()

    def registration_payload(self) -> DaemonRegisterPayload:
        return DaemonRegisterPayload(
            daemonId=self.daemon_id,
            pid=os.getpid(),
            version=config.VERSION,
            watchPath=str(self.watch_path),
            capabilities=list(config.CAPABILITIES),
            startedAt=self.started_at,
        )

    def process_file(self, path: Path) -> int:
        return process_file(path, self.store, self.parser, root=Path(self.watch_path))

    async def register_with_retry(self) -> bool:
        delay = config.REGISTER_RETRY_INITIAL_SECONDS
        while not self._stopping.is_set():
            try:
                await asyncio.to_thread(self.client.register, self.registration_payload())
                logger.info("Registered daemon %s with %s", self.daemon_id, self.client.base_url)
                return True
            except TransportError as exc:
                logger.error(
                    "Could not connect to monitoring server at %s (%s). Retrying in %.0fs...",
                    self.client.base_url,
                    exc,
                    delay,
                )
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            delay = min(delay * 2, config.REGISTER_RETRY_MAX_SECONDS)
        return False

    async def heartbeat_once(self) -> None:
        try:
            await asyncio.to_thread(self.client.heartbeat, self.daemon_id, self.store.get_session_count())
        except TransportError as exc:
            logger.error("Heartbeat failed: %s", exc)
            # The server may have restarted and forgotten us.
            try:
                await asyncio.to_thread(self.client.register, self.registration_payload())
            except TransportError as retry_exc:
                logger.error("Re-register failed: %s", retry_exc)

    async def ingest_once(self) -> int:
        """Ship pending session changes; returns the number of sessions sent."""
        if self._ingest_lock.locked():
            return 0
        async with self._ingest_lock:
            updated, removed = self.store.flush_changes()
            if not updated and not removed:
                return 0
            with start_span("cli_monitor.ingest", {"sessions": len(updated), "removed": len(removed)}):
                try:
                    await asyncio.to_thread(self.client.ingest, self.daemon_id, updated, removed)
                except TransportError as exc:
                    logger.error("Ingest failed: %s", exc)
                    self.store.mark_pending_retry(updated, removed)
                    return 0
                except Exception:
                    logger.exception("Unexpected error shipping %d session(s)", len(updated))
                    self.store.mark_pending_retry(updated, removed)
                    return 0
            return len(updated)

    async def _every(self, interval: float, step) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                try:
                    await step()
                except Exception as exc:  # noqa: BLE001
                    logger.error("Daemon step %s failed: %s", step.__name__, exc)

    async def start(self) -> bool:
        if self._tasks:
            logger.warning("Daemon already running")
            return True
        if not await self.register_with_retry():
            return False
        await asyncio.to_thread(scan_existing, Path(self.watch_path), self.store, self.parser)
        self._tasks = [
            asyncio.create_task(self._every(self.heartbeat_interval, self.heartbeat_once)),
            asyncio.create_task(self._every(self.ingest_interval, self.ingest_once)),
        ]
        logger.info(
            "Daemon %s watching %s (%d sessions)",
            self.daemon_id,
            self.watch_path,
            self.store.get_session_count(),
        )
        return True

    async def stop(self) -> None:
        if self._stopping.is_set():
            return
        self._stopping.set()
        logger.info("Shutting down daemon %s", self.daemon_id)
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        try:
            await asyncio.to_thread(self.client.deregister, self.daemon_id)
        except TransportError as exc:
            logger.error("Deregister on shutdown failed: %s", exc)

    async def wait_closed(self) -> None:
        await self._stopping.wait()


async def run_daemon(port: int | None = None, watch_path: Path | None = None) -> int:
    """Run until cancelled; returns a process exit code."""
    logging.basicConfig(level=config.LOG_LEVEL)
    if not acquire_lock():
        logger.error("Another daemon instance is already running. Exiting.")
        return 1

    initialize()
    client = MonitorClient(port)
    daemon = Daemon(client, watch_path=watch_path)
    try:
        if await daemon.start():
            await daemon.wait_closed()
    except asyncio.CancelledError:
        pass
    finally:
        await daemon.stop()
        client.close()
        shutdown()
        release_lock()
    return 0


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Snapshot Claude CLI transcripts once at startup and keep the monitoring server "
            "updated with heartbeats. Transcript lines appended later are not picked up; "
            "an external watcher must call Daemon.process_file for them."
        )
    )
    parser.add_argument("--port", type=int, default=config.SERVER_PORT, help="monitoring server port")
    parser.add_argument("--path", type=Path, default=None, help="transcript root to scan once at startup")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    try:
        return asyncio.run(run_daemon(args.port, args.path))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())

"""HTTP client for the monitoring server, guarded by a circuit breaker.

A breaker trips after a run of consecutive failures and then rejects calls
without touching the network until its cooldown elapses. The first call after
the cooldown is a single half-open probe: success closes the circuit, failure
re-opens it immediately.
"""
from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Iterable, Optional

import requests

from cli_monitor import config
from cli_monitor.models import (
    DaemonDeregisterPayload,
    DaemonHeartbeatPayload,
    DaemonIngestPayload,
    DaemonRegisterPayload,
    SessionRecord,
)
from cli_monitor.observability import record_circuit_state, record_transport_call

logger = logging.getLogger("cli_monitor.client")

API_PREFIX = "/api/cli-monitor"


class TransportError(Exception):
    """A call to the monitoring server failed (network error or non-2xx response)."""

    def __init__(
        self,
        message: str,
        *,
        operation: str = "",
        status: Optional[int] = None,
        status_text: str = "",
    ):
        super().__init__(message)
        self.operation = operation
        self.status = status
        self.status_text = status_text


class CircuitOpenError(TransportError):
    """Raised without a network attempt while the circuit is open."""


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreaker:
    """Consecutive-failure breaker; all failure kinds count the same."""

    def __init__(
        self,
        failure_threshold: int | None = None,
        reset_timeout: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ):
        self.failure_threshold = failure_threshold or config.CIRCUIT_FAILURE_THRESHOLD
        self.reset_timeout = reset_timeout if reset_timeout is not None else config.CIRCUIT_RESET_TIMEOUT_SECONDS
        self.clock = clock
        self.logger = logger or logging.getLogger("cli_monitor.client")
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def opened_at(self) -> Optional[float]:
        return self._opened_at

    def before_call(self) -> None:
        """Admit a call or raise CircuitOpenError."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return
            if self._state == CircuitState.OPEN:
                elapsed = self.clock() - (self._opened_at or 0.0)
                if elapsed < self.reset_timeout:
                    raise CircuitOpenError("Circuit breaker is open")
                self._transition(CircuitState.HALF_OPEN)
                self._probe_in_flight = True
                return
            # Half-open admits only the probe.
            if self._probe_in_flight:
                raise CircuitOpenError("Circuit breaker is open")
            self._probe_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            self._failure_count = 0
            self._probe_in_flight = False
            if self._state != CircuitState.CLOSED:
                self._opened_at = None
                self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        with self._lock:
            self._probe_in_flight = False
            if self._state == CircuitState.HALF_OPEN:
                self._open()
                return
            self._failure_count += 1
            if self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._open()

    def _open(self) -> None:
        self._opened_at = self.clock()
        self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        if new_state == self._state:
            return
        self.logger.warning(
            "Circuit breaker %s -> %s (consecutive failures: %d)",
            self._state.value,
            new_state.value,
            self._failure_count,
        )
        self._state = new_state
        record_circuit_state(new_state.value)


class MonitorClient:
    """Posts daemon lifecycle and session snapshots to the monitoring server."""

    def __init__(
        self,
        port: int | None = None,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        session: requests.Session | None = None,
        breaker: CircuitBreaker | None = None,
        logger: logging.Logger | None = None,
    ):
        self.base_url = (base_url or config.server_base_url(port)).rstrip("/")
        self.timeout = timeout if timeout is not None else config.REQUEST_TIMEOUT_SECONDS
        self.session = session or requests.Session()
        self.logger = logger or logging.getLogger("cli_monitor.client")
        self.breaker = breaker or CircuitBreaker(logger=self.logger)

    def get_circuit_state(self) -> str:
        return self.breaker.state.value

    def close(self) -> None:
        self.session.close()

    # ── Operations ─────────────────────────────────────────────────

    def register(self, info: DaemonRegisterPayload | dict[str, Any]) -> None:
        payload = info if isinstance(info, DaemonRegisterPayload) else DaemonRegisterPayload.model_validate(info)
        self._post("register", "Registration failed", payload.model_dump())

    def heartbeat(self, daemon_id: str, session_count: int) -> None:
        payload = DaemonHeartbeatPayload(daemonId=daemon_id, sessionCount=session_count)
        self._post("heartbeat", "Heartbeat failed", payload.model_dump())

    def ingest(
        self,
        daemon_id: str,
        sessions: Iterable[SessionRecord],
        removed_session_ids: Iterable[str],
    ) -> None:
        payload = DaemonIngestPayload(
            daemonId=daemon_id,
            sessions=list(sessions),
            removedSessionIds=list(removed_session_ids),
        )
        self._post("ingest", "Ingest failed", payload.model_dump(exclude_none=True))

    def deregister(self, daemon_id: str) -> None:
        payload = DaemonDeregisterPayload(daemonId=daemon_id)
        self._post("deregister", "Deregister failed", payload.model_dump())

    # ── Transport ──────────────────────────────────────────────────

    def _post(self, operation: str, failure_message: str, body: dict[str, Any]) -> None:
        try:
            self.breaker.before_call()
        except CircuitOpenError as exc:
            exc.operation = operation
            record_transport_call(operation, "rejected")
            raise

        url = f"{self.base_url}{API_PREFIX}/{operation}"
        try:
            response = self.session.post(url, json=body, timeout=self.timeout)
        except requests.RequestException as exc:
            self.breaker.record_failure()
            record_transport_call(operation, "network_error")
            raise TransportError(f"{failure_message}: {exc}", operation=operation) from exc
        except Exception as exc:
            self.breaker.record_failure()
            record_transport_call(operation, "error")
            raise TransportError(f"{failure_message}: {exc}", operation=operation) from exc

        if not response.ok:
            self.breaker.record_failure()
            record_transport_call(operation, "http_error")
            raise TransportError(
                f"{failure_message}: {response.status_code} {response.reason}",
                operation=operation,
                status=response.status_code,
                status_text=response.reason or "",
            )

        self.breaker.record_success()
        record_transport_call(operation, "ok")
        self.logger.debug("POST %s ok (%s)", url, response.status_code)

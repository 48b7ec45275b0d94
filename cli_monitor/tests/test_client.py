import unittest
from unittest.mock import MagicMock

import requests

from cli_monitor.client import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    MonitorClient,
    TransportError,
)
from cli_monitor.models import SessionRecord


class _FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _response(ok: bool = True, status: int = 200, reason: str = "OK") -> MagicMock:
    response = MagicMock()
    response.ok = ok
    response.status_code = status
    response.reason = reason
    return response


def _register_info() -> dict:
    return {
        "daemonId": "dm_test",
        "pid": 123,
        "version": "0.1.0",
        "watchPath": "/tmp",
        "capabilities": [],
        "startedAt": 1736942400000,
    }


class MonitorClientOperationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.http = MagicMock()
        self.http.post.return_value = _response()
        self.client = MonitorClient(3001, session=self.http, timeout=5)

    def test_register_posts_to_register_endpoint(self) -> None:
        self.client.register(_register_info())

        self.http.post.assert_called_once()
        args, kwargs = self.http.post.call_args
        self.assertEqual(args[0], "http://localhost:3001/api/cli-monitor/register")
        self.assertEqual(kwargs["json"]["daemonId"], "dm_test")
        self.assertEqual(kwargs["json"]["watchPath"], "/tmp")
        self.assertEqual(kwargs["timeout"], 5)

    def test_failed_registration_raises_with_status(self) -> None:
        self.http.post.return_value = _response(ok=False, status=500, reason="Internal Server Error")

        with self.assertRaisesRegex(TransportError, "Registration failed") as ctx:
            self.client.register(_register_info())

        self.assertEqual(ctx.exception.status, 500)
        self.assertEqual(ctx.exception.status_text, "Internal Server Error")
        self.assertIn("500 Internal Server Error", str(ctx.exception))

    def test_heartbeat_body(self) -> None:
        self.client.heartbeat("dm_test", 5)

        args, kwargs = self.http.post.call_args
        self.assertTrue(args[0].endswith("/api/cli-monitor/heartbeat"))
        self.assertEqual(kwargs["json"], {"daemonId": "dm_test", "sessionCount": 5})

    def test_ingest_serializes_sessions(self) -> None:
        session = SessionRecord(sessionId="sess-1", filePath="/p/abc/sess-1.jsonl", goal="Fix it")

        self.client.ingest("dm_test", [session], ["sess-old"])

        args, kwargs = self.http.post.call_args
        self.assertTrue(args[0].endswith("/api/cli-monitor/ingest"))
        body = kwargs["json"]
        self.assertEqual(body["removedSessionIds"], ["sess-old"])
        self.assertEqual(body["sessions"][0]["sessionId"], "sess-1")
        self.assertEqual(body["sessions"][0]["goal"], "Fix it")
        self.assertNotIn("pendingToolUse", body["sessions"][0])
        self.assertEqual(body["sessions"][0]["performanceMetrics"]["contextWindowLimit"], 200_000)

    def test_deregister(self) -> None:
        self.client.deregister("dm_test")

        args, kwargs = self.http.post.call_args
        self.assertTrue(args[0].endswith("/api/cli-monitor/deregister"))
        self.assertEqual(kwargs["json"], {"daemonId": "dm_test"})

    def test_network_error_is_wrapped(self) -> None:
        self.http.post.side_effect = requests.ConnectionError("connection refused")

        with self.assertRaises(TransportError) as ctx:
            self.client.heartbeat("dm_test", 0)

        self.assertIsNone(ctx.exception.status)
        self.assertEqual(ctx.exception.operation, "heartbeat")
        self.assertIsInstance(ctx.exception.__cause__, requests.ConnectionError)

    def test_unexpected_error_is_wrapped_and_counted(self) -> None:
        self.http.post.side_effect = ValueError("boom")

        with self.assertRaisesRegex(TransportError, "Ingest failed: boom") as ctx:
            self.client.ingest("dm_test", [], [])

        self.assertEqual(ctx.exception.operation, "ingest")
        self.assertIsInstance(ctx.exception.__cause__, ValueError)
        self.assertEqual(self.client.breaker.failure_count, 1)

    def test_base_url_override(self) -> None:
        client = MonitorClient(base_url="https://monitor.example/", session=self.http)
        client.deregister("dm_test")
        self.assertEqual(self.http.post.call_args[0][0], "https://monitor.example/api/cli-monitor/deregister")


class CircuitBreakerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = _FakeClock()
        self.http = MagicMock()
        self.http.post.side_effect = requests.ConnectionError("connection refused")
        breaker = CircuitBreaker(5, 60, clock=self.clock)
        self.client = MonitorClient(3001, session=self.http, breaker=breaker)

    def _fail(self, times: int) -> None:
        for _ in range(times):
            with self.assertRaises(TransportError):
                self.client.heartbeat("dm_test", 0)

    def _trip(self) -> None:
        self._fail(5)
        self.assertEqual(self.client.get_circuit_state(), "open")

    def test_starts_closed(self) -> None:
        self.assertEqual(self.client.get_circuit_state(), "closed")

    def test_four_failures_keep_circuit_closed(self) -> None:
        self._fail(4)
        self.assertEqual(self.client.get_circuit_state(), "closed")
        self.assertEqual(self.client.breaker.failure_count, 4)

    def test_five_failures_open_circuit(self) -> None:
        self._trip()
        self.assertEqual(self.client.breaker.opened_at, 1000.0)

    def test_http_errors_count_as_failures(self) -> None:
        self.http.post.side_effect = None
        self.http.post.return_value = _response(ok=False, status=503, reason="Service Unavailable")
        self._trip()

    def test_open_circuit_rejects_without_network(self) -> None:
        self._trip()
        self.http.post.reset_mock()

        with self.assertRaisesRegex(CircuitOpenError, "Circuit breaker is open"):
            self.client.heartbeat("dm_test", 0)

        self.http.post.assert_not_called()

    def test_success_resets_failure_count(self) -> None:
        self._fail(2)
        self.http.post.side_effect = None
        self.http.post.return_value = _response()
        self.client.heartbeat("dm_test", 0)
        self.assertEqual(self.client.breaker.failure_count, 0)

        self.http.post.side_effect = requests.ConnectionError("fail")
        self._fail(2)
        self.assertEqual(self.client.get_circuit_state(), "closed")

    def test_still_open_before_timeout(self) -> None:
        self._trip()
        self.clock.advance(59)
        with self.assertRaises(CircuitOpenError):
            self.client.heartbeat("dm_test", 0)

    def test_successful_probe_closes_circuit(self) -> None:
        self._trip()
        self.clock.advance(61)
        self.http.post.reset_mock()
        self.http.post.side_effect = None
        self.http.post.return_value = _response()

        self.client.heartbeat("dm_test", 0)

        self.http.post.assert_called_once()
        self.assertEqual(self.client.get_circuit_state(), "closed")
        self.assertEqual(self.client.breaker.failure_count, 0)

    def test_failed_probe_reopens_immediately(self) -> None:
        self._trip()
        self.clock.advance(61)

        with self.assertRaises(TransportError) as ctx:
            self.client.heartbeat("dm_test", 0)
        self.assertNotIsInstance(ctx.exception, CircuitOpenError)

        self.assertEqual(self.client.get_circuit_state(), "open")
        self.assertEqual(self.client.breaker.opened_at, 1061.0)
        self.http.post.reset_mock()
        with self.assertRaises(CircuitOpenError):
            self.client.heartbeat("dm_test", 0)
        self.http.post.assert_not_called()


class HalfOpenProbeTests(unittest.TestCase):
    def test_only_one_probe_is_admitted(self) -> None:
        clock = _FakeClock()
        breaker = CircuitBreaker(1, 60, clock=clock)
        breaker.record_failure()
        self.assertEqual(breaker.state, CircuitState.OPEN)

        clock.advance(60)
        breaker.before_call()
        self.assertEqual(breaker.state, CircuitState.HALF_OPEN)
        with self.assertRaises(CircuitOpenError):
            breaker.before_call()

        breaker.record_success()
        self.assertEqual(breaker.state, CircuitState.CLOSED)
        breaker.before_call()


if __name__ == "__main__":
    unittest.main()

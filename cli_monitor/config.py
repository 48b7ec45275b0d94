"""CLI Monitor daemon configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


VERSION = "0.1.0"

# Claude CLI transcripts live under ~/.claude/projects/{projectHash}/{sessionId}.jsonl
CLAUDE_HOME = Path.home() / ".claude"
WATCH_PATH = Path(os.getenv("CLI_MONITOR_WATCH_PATH", str(CLAUDE_HOME / "projects")))
LOCK_FILE = Path(os.getenv("CLI_MONITOR_LOCK_FILE", str(CLAUDE_HOME / ".cli-monitor.lock")))

# Monitoring server
SERVER_SCHEME = os.getenv("CLI_MONITOR_SERVER_SCHEME", "http")
SERVER_HOST = os.getenv("CLI_MONITOR_SERVER_HOST", "localhost")
SERVER_PORT = _env_int("CLI_MONITOR_SERVER_PORT", 3001)
REQUEST_TIMEOUT_SECONDS = _env_float("CLI_MONITOR_REQUEST_TIMEOUT_SECONDS", 10.0)

# Circuit breaker
CIRCUIT_FAILURE_THRESHOLD = _env_int("CLI_MONITOR_CIRCUIT_FAILURE_THRESHOLD", 5)
CIRCUIT_RESET_TIMEOUT_SECONDS = _env_float("CLI_MONITOR_CIRCUIT_RESET_TIMEOUT_SECONDS", 60.0)

# Daemon loops
HEARTBEAT_INTERVAL_SECONDS = _env_float("CLI_MONITOR_HEARTBEAT_INTERVAL_SECONDS", 10.0)
INGEST_INTERVAL_SECONDS = _env_float("CLI_MONITOR_INGEST_INTERVAL_SECONDS", 0.5)
REGISTER_RETRY_INITIAL_SECONDS = _env_float("CLI_MONITOR_REGISTER_RETRY_INITIAL_SECONDS", 1.0)
REGISTER_RETRY_MAX_SECONDS = _env_float("CLI_MONITOR_REGISTER_RETRY_MAX_SECONDS", 30.0)
CAPABILITIES = ["watch", "parse", "subagents"]

# Parser limits
MAX_LINE_BYTES = _env_int("CLI_MONITOR_MAX_LINE_BYTES", 1_000_000)
MAX_FILE_READ_BYTES = _env_int("CLI_MONITOR_MAX_FILE_READ_BYTES", 100 * 1024 * 1024)

# Logging / observability
LOG_LEVEL = os.getenv("CLI_MONITOR_LOG_LEVEL", "INFO").upper()
OTEL_ENABLED = _env_bool("CLI_MONITOR_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("CLI_MONITOR_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("CLI_MONITOR_OTEL_SERVICE_NAME", "cli-monitor")
PROM_PORT = _env_int("CLI_MONITOR_PROM_PORT", 0)


def server_base_url(port: int | None = None) -> str:
    return f"{SERVER_SCHEME}://{SERVER_HOST}:{port or SERVER_PORT}"

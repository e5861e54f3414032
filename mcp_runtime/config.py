"""
Runtime configuration, resolved from the environment.

Settings are read when load_config() is called, never at import time,
so tests and host applications can adjust the environment first.

Environment:
    MCP_DEBUG=1      verbose launch logging ([debug] lines, INFO console output)
    MCP_LOG_DIR      explicit directory for per-server log files
    XDG_STATE_HOME   state root used when MCP_LOG_DIR is not set
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

APP_NAME = "mcp-runtime"

DEFAULT_TIMEOUT_MS = 5_000
DEFAULT_RETRIES = 3
DEFAULT_BACKOFF_MS = 250


@dataclass(frozen=True)
class RuntimeConfig:
    """Process-wide settings shared by the launcher and the controller."""
    log_dir: Path
    debug: bool = False


def resolve_log_dir(env: dict[str, str] | None = None) -> Path:
    """
    Work out where per-server logs live.

    One directory is shared by every server; each id gets its own
    <id>.log file inside it.
    """
    env = os.environ if env is None else env

    override = env.get("MCP_LOG_DIR")
    if override:
        return Path(override).expanduser()

    state_root = env.get("XDG_STATE_HOME") or str(Path.home() / ".local" / "state")
    return Path(state_root).expanduser() / APP_NAME / "mcp"


def load_config(env: dict[str, str] | None = None) -> RuntimeConfig:
    """Build a RuntimeConfig from environment variables."""
    env = os.environ if env is None else env
    return RuntimeConfig(
        log_dir=resolve_log_dir(env),
        debug=env.get("MCP_DEBUG") == "1",
    )

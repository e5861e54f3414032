"""Shared fixtures for the MCP runtime tests."""

from pathlib import Path

import pytest

from mcp_runtime.config import RuntimeConfig


@pytest.fixture
def runtime_config(tmp_path: Path) -> RuntimeConfig:
    """Runtime settings that keep every log file under tmp_path."""
    return RuntimeConfig(log_dir=tmp_path / "logs")

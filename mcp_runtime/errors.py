"""
Handshake error hierarchy.

Every error records the attempt number it happened on, so the controller
can report which attempt a failure belongs to:

    McpProtocolError          generic handshake failure (optional cause)
    ├── McpTimeoutError       no valid frame in time, or stdout ended first
    └── McpInvalidFrameError  malformed / wrong version / missing or mismatched id
"""

from __future__ import annotations

from typing import Any


class McpProtocolError(Exception):
    """Base class for handshake failures."""

    def __init__(self, message: str, attempt: int, cause: Any = None):
        super().__init__(message)
        self.message = message
        self.attempt = attempt
        self.cause = cause

    def __str__(self) -> str:
        return f"{self.message} (attempt {self.attempt})"


class McpTimeoutError(McpProtocolError):
    """No valid response frame arrived within the handshake timeout."""

    def __init__(self, message: str, attempt: int):
        super().__init__(message, attempt)


class McpInvalidFrameError(McpProtocolError):
    """The server answered with a frame that is not a usable response."""

    def __init__(self, message: str, attempt: int, frame: str | None = None):
        super().__init__(message, attempt)
        # Raw offending text, kept for diagnostics
        self.frame = frame

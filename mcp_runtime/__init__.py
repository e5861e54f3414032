"""
MCP Runtime — attach to stdio tool servers with a verified handshake.

Architecture:
    ┌──────────────┐  request line   ┌──────────────┐
    │ McpController │ ─────────────► │  Tool Server  │
    │  (asyncio)   │ ◄───────────── │  (subprocess) │
    └──────────────┘  response line  └──────────────┘
            │
            └── <log_dir>/<id>.log   banner, raw output, status, exit

Each tool server is a child process speaking line-delimited JSON-RPC 2.0
on stdin/stdout. Before the server is used, one handshake request must be
answered with a matching, non-error response.

    McpController.start_server()   status events, exit events, registry
      └─ attach_with_retry()       N attempts, exponential backoff
           ├─ launch_server()      spawn + durable per-id log
           └─ perform_handshake()  request line vs. timeout race
"""

from mcp_runtime.config import RuntimeConfig, load_config
from mcp_runtime.controller import McpController, StartResult, StartServerOptions
from mcp_runtime.errors import McpInvalidFrameError, McpProtocolError, McpTimeoutError
from mcp_runtime.events import EventBus, ExitEvent, StatusEvent
from mcp_runtime.launcher import LaunchedServer, LaunchOptions, launch_server
from mcp_runtime.protocol import (
    AttachResult,
    HandshakeOptions,
    JsonRpcRequest,
    JsonRpcResponse,
    attach_with_retry,
    perform_handshake,
    race,
)

__all__ = [
    "AttachResult",
    "EventBus",
    "ExitEvent",
    "HandshakeOptions",
    "JsonRpcRequest",
    "JsonRpcResponse",
    "LaunchOptions",
    "LaunchedServer",
    "McpController",
    "McpInvalidFrameError",
    "McpProtocolError",
    "McpTimeoutError",
    "RuntimeConfig",
    "StartResult",
    "StartServerOptions",
    "StatusEvent",
    "attach_with_retry",
    "launch_server",
    "load_config",
    "perform_handshake",
    "race",
]

"""Helpers shared by the MCP runtime tests."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

from mcp_runtime.controller import StartServerOptions
from mcp_runtime.protocol import HandshakeOptions, JsonRpcRequest

SERVER_SCRIPT = Path(__file__).parent / "servers" / "handshake_server.py"

HANDSHAKE_REQUEST = JsonRpcRequest(
    method="initialize",
    id="handshake",
    params={"client": "test"},
)


def server_options(
    server_id: str,
    mode: str,
    timeout_ms: int = 5_000,
    retries: int = 1,
    backoff_ms: int = 10,
    env: dict[str, str] | None = None,
) -> StartServerOptions:
    """StartServerOptions for the scriptable test server in the given mode."""
    return StartServerOptions(
        id=server_id,
        command=sys.executable,
        args=[str(SERVER_SCRIPT)],
        env={"HANDSHAKE_MODE": mode, **(env or {})},
        handshake=HandshakeOptions(
            request=HANDSHAKE_REQUEST,
            timeout_ms=timeout_ms,
            retries=retries,
            backoff_ms=backoff_ms,
        ),
    )


class FakeServer:
    """
    Stand-in for LaunchedServer in unit tests.

    `replies` are pushed onto stdout as raw chunks as soon as the request
    is sent; with close=True stdout then ends.
    """

    def __init__(self, replies: list[bytes] | None = None, close: bool = True):
        self.id = "fake"
        self.process = object()
        self.log_path = Path("/tmp/fake.log")
        self.status = "starting"
        self.statuses: list[str] = []
        self.sent: list[bytes] = []
        self.dispose_calls = 0
        self.capture_stopped = False
        self._replies = list(replies or [])
        self._close = close
        self._chunks: asyncio.Queue = asyncio.Queue()

    @property
    def disposed(self) -> bool:
        return self.dispose_calls > 0

    def update_status(self, status: str) -> None:
        self.status = status
        self.statuses.append(status)

    def dispose(self) -> None:
        self.dispose_calls += 1

    async def send(self, data: bytes) -> None:
        self.sent.append(data)
        for reply in self._replies:
            self._chunks.put_nowait(reply)
        if self._close:
            self._chunks.put_nowait(None)

    async def read_stdout(self) -> bytes | None:
        chunk = await self._chunks.get()
        if chunk is None:
            self._chunks.put_nowait(None)
        return chunk

    def stop_capture(self) -> None:
        self.capture_stopped = True


def ok_reply(request_id: str = "handshake") -> bytes:
    return (
        b'{"jsonrpc": "2.0", "id": "' + request_id.encode() + b'", "result": {"ok": true}}\n'
    )

"""
Handshake protocol and retry coordinator.

The handshake is a single JSON-RPC 2.0 exchange over the child's stdio:
one request line goes to stdin, one response line is expected on stdout.
Writing the request and reading that line are raced against a timeout;
whichever settles first wins and the other is cancelled.

attach_with_retry() drives several launch → handshake attempts with
exponential backoff, disposing every attempt that fails.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from mcp_runtime.config import DEFAULT_BACKOFF_MS, DEFAULT_RETRIES, DEFAULT_TIMEOUT_MS
from mcp_runtime.errors import McpInvalidFrameError, McpProtocolError, McpTimeoutError
from mcp_runtime.launcher import LaunchedServer

logger = logging.getLogger(__name__)

T = TypeVar("T")

JSONRPC_VERSION = "2.0"


@dataclass(frozen=True)
class JsonRpcRequest:
    """JSON-RPC 2.0 request."""
    method: str
    id: int | str
    params: Any = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "jsonrpc": JSONRPC_VERSION,
            "id": self.id,
            "method": self.method,
        }
        if self.params is not None:
            payload["params"] = self.params
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JsonRpcRequest":
        if data.get("jsonrpc", JSONRPC_VERSION) != JSONRPC_VERSION:
            raise ValueError(f"Unsupported jsonrpc version: {data.get('jsonrpc')!r}")
        if data.get("id") is None:
            raise ValueError("Handshake request needs an id")
        return cls(method=data["method"], id=data["id"], params=data.get("params"))


@dataclass(frozen=True)
class JsonRpcResponse:
    """JSON-RPC 2.0 response."""
    id: int | str
    result: Any = None
    error: Any = None
    jsonrpc: str = JSONRPC_VERSION

    @classmethod
    def from_dict(cls, parsed: dict[str, Any]) -> "JsonRpcResponse":
        return cls(
            id=parsed.get("id"),
            result=parsed.get("result"),
            error=parsed.get("error"),
            jsonrpc=parsed.get("jsonrpc"),
        )

    @property
    def is_error(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class HandshakeOptions:
    """Per-call handshake settings. Times are in milliseconds."""
    request: JsonRpcRequest
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    retries: int = DEFAULT_RETRIES
    backoff_ms: int = DEFAULT_BACKOFF_MS

    def __post_init__(self):
        if self.retries < 1:
            raise ValueError(f"retries must be at least 1, got {self.retries}")
        if self.timeout_ms < 0:
            raise ValueError(f"timeout_ms must not be negative, got {self.timeout_ms}")
        if self.backoff_ms < 0:
            raise ValueError(f"backoff_ms must not be negative, got {self.backoff_ms}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HandshakeOptions":
        """Accept the camelCase shape used by host configuration."""
        request = data["request"]
        if isinstance(request, dict):
            request = JsonRpcRequest.from_dict(request)
        return cls(
            request=request,
            timeout_ms=data.get("timeoutMs", DEFAULT_TIMEOUT_MS),
            retries=data.get("retries", DEFAULT_RETRIES),
            backoff_ms=data.get("backoffMs", DEFAULT_BACKOFF_MS),
        )

    def backoff_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-indexed)."""
        return self.backoff_ms * 2 ** (attempt - 1) / 1000


@dataclass
class AttachResult:
    """A verified, running server. The caller owns `process` from here on."""
    process: asyncio.subprocess.Process
    response: JsonRpcResponse
    attempt: int
    log_path: str
    server: LaunchedServer


# ============================================================
# FIRST-SETTLED-WINS
# ============================================================

async def race(first: Awaitable[T], second: Awaitable[T]) -> T:
    """
    Run two awaitables and settle with whichever finishes first.

    The loser is cancelled and awaited before returning, so no timer or
    reader task outlives the race. If both finish in the same loop
    iteration, `first` takes precedence.
    """
    tasks = [asyncio.ensure_future(first), asyncio.ensure_future(second)]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    winner = tasks[0] if tasks[0] in done else tasks[1]
    return winner.result()


async def _expire(timeout_ms: int, attempt: int) -> Any:
    await asyncio.sleep(timeout_ms / 1000)
    raise McpTimeoutError("timed out waiting for handshake response", attempt)


# ============================================================
# FRAME READER
# ============================================================

def parse_frame(frame: str, attempt: int) -> dict[str, Any]:
    """
    Validate one candidate response line.

    Raises:
        McpInvalidFrameError: not JSON, not a JSON-RPC 2.0 object, or no id.
    """
    try:
        parsed = json.loads(frame)
    except json.JSONDecodeError as e:
        raise McpInvalidFrameError(
            f"failed to parse handshake response: {e}", attempt, frame
        ) from e

    if not isinstance(parsed, dict) or parsed.get("jsonrpc") != JSONRPC_VERSION:
        raise McpInvalidFrameError("invalid jsonrpc version", attempt, frame)
    if parsed.get("id") is None:
        raise McpInvalidFrameError("missing id in handshake response", attempt, frame)
    return parsed


async def read_frame(launched: LaunchedServer, attempt: int) -> dict[str, Any]:
    """Read stdout until the first non-blank line and validate it."""
    buffer = bytearray()
    while True:
        chunk = await launched.read_stdout()
        if chunk is None:
            raise McpTimeoutError("stream ended before handshake completed", attempt)
        buffer.extend(chunk)

        while True:
            newline = buffer.find(b"\n")
            if newline == -1:
                break
            frame = buffer[:newline].decode("utf-8", errors="replace").strip()
            del buffer[:newline + 1]
            if frame:
                return parse_frame(frame, attempt)


# ============================================================
# HANDSHAKE
# ============================================================

def ids_match(received: Any, expected: Any) -> bool:
    """Id equality that never treats a JSON boolean as the number 1 or 0."""
    if isinstance(received, bool) != isinstance(expected, bool):
        return False
    return received == expected


async def _exchange(
    launched: LaunchedServer,
    request: JsonRpcRequest,
    attempt: int,
) -> dict[str, Any]:
    await launched.send((request.to_json() + "\n").encode("utf-8"))
    return await read_frame(launched, attempt)


async def perform_handshake(
    launched: LaunchedServer,
    options: HandshakeOptions,
    attempt: int,
) -> JsonRpcResponse:
    """
    Send the handshake request and wait for a matching, successful reply.

    Writing the request and reading the reply share one deadline. A reply
    with the wrong id fails the attempt outright; later frames are not
    examined. Once the exchange settles, stdout is no longer queued for
    reading and only goes to the log.

    Raises:
        McpTimeoutError: no frame within options.timeout_ms, or stdout ended.
        McpInvalidFrameError: malformed frame or mismatched id.
        McpProtocolError: the server answered with an error object.
    """
    request = options.request
    try:
        parsed = await race(
            _exchange(launched, request, attempt),
            _expire(options.timeout_ms, attempt),
        )
    finally:
        launched.stop_capture()
    response = JsonRpcResponse.from_dict(parsed)

    if not ids_match(response.id, request.id):
        raise McpInvalidFrameError(
            f"handshake response id {response.id!r} did not match request id {request.id!r}",
            attempt,
            json.dumps(parsed),
        )
    if response.is_error:
        raise McpProtocolError("server rejected handshake", attempt, response.error)

    launched.update_status("attached")
    return response


# ============================================================
# RETRY COORDINATOR
# ============================================================

LaunchFactory = Callable[[], "Awaitable[LaunchedServer] | LaunchedServer"]


async def attach_with_retry(
    factory: LaunchFactory,
    options: HandshakeOptions,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> AttachResult:
    """
    Launch and handshake until one attempt succeeds or retries run out.

    Args:
        factory: Produces a fresh LaunchedServer per call (sync or async).
        options: Request, timeout, retry count and backoff base.
        sleep: Backoff sleeper, in seconds. Replaceable in tests.

    Returns:
        AttachResult for the first attempt that handshakes successfully.

    Raises:
        McpProtocolError: after the last attempt fails; `cause` is that
            attempt's error.
    """
    for attempt in range(1, options.retries + 1):
        launched: LaunchedServer | None = None
        try:
            launched = factory()
            if inspect.isawaitable(launched):
                launched = await launched
            launched.update_status("starting")
            response = await perform_handshake(launched, options, attempt)
        except asyncio.CancelledError:
            if launched is not None:
                launched.update_status("failed")
                launched.dispose()
            raise
        except Exception as e:
            logger.warning(f"Handshake attempt {attempt}/{options.retries} failed: {e}")
            if launched is not None:
                launched.update_status("failed")
                launched.dispose()
            if attempt >= options.retries:
                raise McpProtocolError("failed to establish handshake", attempt, e) from e
            await sleep(options.backoff_for(attempt))
            continue

        logger.info(f"Handshake with {launched.id} succeeded on attempt {attempt}")
        return AttachResult(
            process=launched.process,
            response=response,
            attempt=attempt,
            log_path=str(launched.log_path),
            server=launched,
        )

    # HandshakeOptions guarantees retries >= 1, so the loop always returns or raises
    raise AssertionError("unreachable")

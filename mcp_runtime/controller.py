"""
MCP Controller — public entry point for attaching to tool servers.

The controller wraps the retry coordinator, turns attempt-level outcomes
into a coarse per-id status stream, and tracks the process after attach.

Usage:
    controller = McpController()
    controller.subscribe("status", lambda e: print(e.id, e.status, e.attempt))
    controller.subscribe("exit", lambda e: print(e.id, "exited", e.code))

    result = await controller.start_server(StartServerOptions(
        id="calculator",
        command=sys.executable,
        args=["-m", "calculator_server"],
        handshake=HandshakeOptions(
            request=JsonRpcRequest(method="initialize", id="handshake"),
        ),
    ))
    print(result.log_path)

    await controller.stop_all()

Status stream, per id and per start_server() call:

    starting ──► attached
        └──────► failed
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from mcp_runtime.config import RuntimeConfig, load_config
from mcp_runtime.events import EventBus, ExitEvent, Listener, StatusEvent
from mcp_runtime.launcher import LaunchedServer, LaunchOptions, launch_server
from mcp_runtime.protocol import HandshakeOptions, attach_with_retry

logger = logging.getLogger(__name__)


@dataclass
class StartServerOptions:
    """Launch descriptor plus handshake settings for one server."""
    id: str
    command: str
    handshake: HandshakeOptions
    args: list[str] = field(default_factory=list)
    cwd: str | None = None
    env: dict[str, str] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StartServerOptions":
        """Build options from the camelCase host configuration shape."""
        handshake = data["handshake"]
        if isinstance(handshake, dict):
            handshake = HandshakeOptions.from_dict(handshake)
        return cls(
            id=data["id"],
            command=data["command"],
            handshake=handshake,
            args=[str(a) for a in data.get("args") or []],
            cwd=data.get("cwd"),
            env={k: str(v) for k, v in (data.get("env") or {}).items() if v is not None},
        )

    def launch_options(self) -> LaunchOptions:
        return LaunchOptions(
            id=self.id,
            command=self.command,
            args=list(self.args),
            cwd=self.cwd,
            env=self.env,
        )


@dataclass(frozen=True)
class StartResult:
    id: str
    log_path: str


class McpController:
    """
    Starts tool servers and reports their lifecycle.

    Responsibilities:
    - Publish "starting" / "attached" / "failed" status events
    - Publish one "exit" event when an attached server's process ends
    - Keep attached servers by id so they can be stopped later
    """

    def __init__(self, config: RuntimeConfig | None = None):
        self._config = config
        self._events = EventBus()
        self._servers: dict[str, LaunchedServer] = {}

    # ── event streams ─────────────────────────────────────

    def subscribe(self, kind: str, listener: Listener) -> Callable[[], None]:
        """Listen to the "status" or "exit" stream. Returns an unsubscribe callable."""
        return self._events.subscribe(kind, listener)

    def once(self, kind: str, listener: Listener) -> Callable[[], None]:
        return self._events.once(kind, listener)

    def _debug(self) -> bool:
        return self._resolve_config().debug

    def _resolve_config(self) -> RuntimeConfig:
        return self._config or load_config()

    def _emit_status(self, event: StatusEvent) -> None:
        log = logger.info if self._debug() else logger.debug
        log(f"status {event.id}: {event.status} (attempt {event.attempt})")
        if event.error is not None:
            logger.error(f"{event.id} failed: {event.error}")
        self._events.publish("status", event)

    # ── lifecycle ─────────────────────────────────────────

    async def start_server(self, options: StartServerOptions) -> StartResult:
        """
        Launch a server and wait until its handshake succeeds.

        Returns:
            StartResult with the id and the path of its log file.

        Raises:
            McpProtocolError: every attempt failed. The error is re-raised
                unchanged after a "failed" status event is published.
        """
        server_id = options.id
        self._emit_status(StatusEvent(id=server_id, status="starting", attempt=1))

        if self.is_running(server_id):
            logger.warning(f"Server {server_id} already running, stopping first")
            await self.stop(server_id)

        config = self._resolve_config()
        launch_config = options.launch_options()

        try:
            result = await attach_with_retry(
                lambda: launch_server(launch_config, config),
                options.handshake,
            )
        except Exception as e:
            attempt = getattr(e, "attempt", None) or 1
            self._emit_status(
                StatusEvent(id=server_id, status="failed", attempt=attempt, error=e)
            )
            raise

        self._emit_status(
            StatusEvent(id=server_id, status="attached", attempt=result.attempt)
        )

        server = result.server
        self._servers[server_id] = server
        server.on_exit(
            lambda code, sig: self._handle_exit(server_id, server, code, sig)
        )

        return StartResult(id=server_id, log_path=result.log_path)

    def _handle_exit(
        self,
        server_id: str,
        server: LaunchedServer,
        code: int | None,
        sig: str | None,
    ) -> None:
        log = logger.info if self._debug() else logger.debug
        log(f"{server_id} exited: code={code} signal={sig}")
        # A restart may already have replaced this entry
        if self._servers.get(server_id) is server:
            del self._servers[server_id]
        self._events.publish("exit", ExitEvent(id=server_id, code=code, signal=sig))

    async def stop(self, server_id: str, grace_s: float = 5.0) -> None:
        """Stop an attached server. Unknown or stopped ids are ignored."""
        server = self._servers.pop(server_id, None)
        if server is None:
            return
        await server.terminate(grace_s)
        logger.info(f"Stopped {server_id}")

    async def stop_all(self) -> None:
        """Stop every attached server."""
        for server_id in list(self._servers.keys()):
            await self.stop(server_id)

    def is_running(self, server_id: str) -> bool:
        """Check if a specific server is attached and its process alive."""
        server = self._servers.get(server_id)
        return server is not None and not server.exited and not server.disposed

    def list_servers(self) -> dict[str, bool]:
        """All attached servers and whether each is still running."""
        return {sid: self.is_running(sid) for sid in self._servers}

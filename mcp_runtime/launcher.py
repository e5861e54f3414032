"""
Process launcher — spawns one tool server attempt and logs everything it does.

The launcher knows nothing about JSON-RPC. It:
  - spawns the child with stdin/stdout/stderr all piped
  - appends a launch banner and every raw output chunk to <log_dir>/<id>.log
  - hands stdout chunks to the handshake reader until stop_capture(),
    after which stdout only goes to the log
  - records the exit code/signal and notifies one-shot exit listeners

Log file layout (append-only, shared by every attempt for the same id):

    ==== Launch 2026-01-01T12:00:00.000000+00:00 ====
    [debug] command: ...        (MCP_DEBUG=1 only)
    [status] starting
    [stdout] {"jsonrpc":"2.0",...}
    [stderr] ...
    [status] attached
    [exit] code=0 signal=null
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Callable

from mcp_runtime.config import RuntimeConfig, load_config
from mcp_runtime.events import EventBus, ServerStatus

logger = logging.getLogger(__name__)

# Bytes per read on the child's output pipes
CHUNK_SIZE = 64 * 1024

# How long the exit watcher waits for the output pumps to drain
DRAIN_TIMEOUT_S = 1.0

ExitCallback = Callable[[int | None, str | None], None]


@dataclass
class LaunchOptions:
    """How to spawn a tool server. id names the log file."""
    id: str
    command: str
    args: list[str] = field(default_factory=list)
    cwd: str | None = None
    env: dict[str, str] | None = None


def describe_returncode(returncode: int | None) -> tuple[int | None, str | None]:
    """Split a Popen-style return code into (exit code, signal name)."""
    if returncode is None:
        return None, None
    if returncode < 0:
        try:
            return None, signal.Signals(-returncode).name
        except ValueError:
            return None, str(-returncode)
    return returncode, None


def _null(value: object) -> str:
    return "null" if value is None else str(value)


class LaunchedServer:
    """
    One spawned attempt.

    Owns the child process and its log stream until dispose() is called
    (failed attempt) or ownership passes to the caller (attached).
    """

    def __init__(
        self,
        server_id: str,
        process: asyncio.subprocess.Process | None,
        log_path: Path,
        log_file: BinaryIO,
        debug: bool = False,
    ):
        self.id = server_id
        self.process = process
        self.log_path = log_path
        self.status: ServerStatus = "starting"
        self._log_file: BinaryIO | None = log_file
        self._debug = debug
        self._stdout_chunks: asyncio.Queue[bytes | None] = asyncio.Queue()
        # stdout is queued for readers only until stop_capture(); the log always gets it
        self._capturing = True
        self._events = EventBus()
        self._exit_info: tuple[int | None, str | None] | None = None
        self._disposed = False
        self._pumps: list[asyncio.Task] = []
        self._watcher: asyncio.Task | None = None

    # ── lifecycle ─────────────────────────────────────────

    def _start(self) -> None:
        """Begin forwarding output and watching for exit."""
        if self.process is None:
            # Spawn failed: there will never be any output
            self._stdout_chunks.put_nowait(None)
            return

        self._pumps = [
            asyncio.create_task(self._pump(self.process.stdout, "stdout")),
            asyncio.create_task(self._pump(self.process.stderr, "stderr")),
        ]
        self._watcher = asyncio.create_task(self._watch_exit())

    async def _pump(self, reader: asyncio.StreamReader, channel: str) -> None:
        prefix = f"[{channel}] ".encode()
        try:
            while True:
                chunk = await reader.read(CHUNK_SIZE)
                if not chunk:
                    break
                self._write_log(prefix + chunk)
                if channel == "stdout" and self._capturing:
                    self._stdout_chunks.put_nowait(chunk)
        finally:
            if channel == "stdout" and self._capturing:
                self._stdout_chunks.put_nowait(None)

    async def _watch_exit(self) -> None:
        returncode = await self.process.wait()
        # Let buffered output reach the log before the exit line
        await asyncio.wait(self._pumps, timeout=DRAIN_TIMEOUT_S)

        code, sig = describe_returncode(returncode)
        self._exit_info = (code, sig)
        self._write_log(f"\n[exit] code={_null(code)} signal={_null(sig)}\n")
        self._close_log()

        log = logger.info if self._debug else logger.debug
        log(f"Server {self.id} exited: code={code} signal={sig}")

        self._events.publish("exit", (code, sig))

    # ── log file ──────────────────────────────────────────

    def _write_log(self, data: bytes | str) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        if self._log_file is not None:
            self._log_file.write(data)
            self._log_file.flush()
            return
        # Stream already closed on exit: late status lines still belong in the log
        with open(self.log_path, "ab") as late:
            late.write(data)

    def _close_log(self) -> None:
        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None

    # ── public surface ────────────────────────────────────

    @property
    def exited(self) -> bool:
        return self._exit_info is not None

    @property
    def exit_info(self) -> tuple[int | None, str | None] | None:
        return self._exit_info

    @property
    def disposed(self) -> bool:
        return self._disposed

    def update_status(self, next_status: ServerStatus) -> None:
        """Record a status transition in memory and in the log."""
        if self.status != "starting" and next_status != self.status:
            logger.warning(
                f"Ignoring status change {self.status} -> {next_status} for {self.id}"
            )
            return

        self.status = next_status
        self._write_log(f"[status] {next_status}\n")

        log = logger.info if self._debug else logger.debug
        log(f"{self.id} -> {next_status}")

    async def send(self, data: bytes) -> None:
        """
        Write raw bytes to the child's stdin.

        A dead or never-spawned child is not an error here: the failure is
        logged and surfaces later as an ended output stream.
        """
        if self.process is None or self.process.stdin is None:
            self._write_log("[error] cannot write to stdin: process was not spawned\n")
            return
        try:
            self.process.stdin.write(data)
            await self.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            self._write_log(f"[error] write to stdin failed: {e!r}\n")

    async def read_stdout(self) -> bytes | None:
        """Next raw chunk from stdout, or None once the stream has ended."""
        chunk = await self._stdout_chunks.get()
        if chunk is None:
            # Keep reporting end-of-stream to later readers
            self._stdout_chunks.put_nowait(None)
        return chunk

    def stop_capture(self) -> None:
        """
        Stop queueing stdout for read_stdout(); output still goes to the log.

        Unread chunks are dropped. Once stopped, read_stdout() reports
        end-of-stream.
        """
        if not self._capturing:
            return
        self._capturing = False
        while not self._stdout_chunks.empty():
            self._stdout_chunks.get_nowait()
        self._stdout_chunks.put_nowait(None)

    @property
    def capturing(self) -> bool:
        return self._capturing

    def on_exit(self, callback: ExitCallback) -> Callable[[], None]:
        """
        Call callback(code, signal) once, when the process exits.

        If it already exited, the callback is scheduled right away with the
        recorded exit info. Returns a callable that cancels the registration.
        """
        if self._exit_info is not None:
            handle = asyncio.get_running_loop().call_soon(callback, *self._exit_info)
            return handle.cancel
        return self._events.once("exit", lambda info: callback(*info))

    def dispose(self) -> None:
        """Kill the child if it is still running. Safe to call repeatedly."""
        if self._disposed:
            return
        self._disposed = True

        if self.process is None:
            self._close_log()
            return

        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass

    async def terminate(self, grace_s: float = 5.0) -> None:
        """Ask the child to stop, escalating to SIGKILL after grace_s."""
        if self.process is None or self.process.returncode is not None:
            self._disposed = True
            return

        self.process.terminate()
        try:
            await asyncio.wait_for(self.process.wait(), timeout=grace_s)
        except asyncio.TimeoutError:
            logger.warning(f"{self.id} ignored SIGTERM, killing")
            self.dispose()
            await self.process.wait()
        self._disposed = True

    async def wait_closed(self) -> None:
        """Wait until the exit line is written and the log is closed."""
        if self._watcher is not None:
            await self._watcher


async def launch_server(
    options: LaunchOptions,
    config: RuntimeConfig | None = None,
) -> LaunchedServer:
    """
    Spawn one attempt of a tool server.

    Args:
        options: Command line, working directory and extra environment.
        config: Runtime settings; read from the environment when omitted.

    Returns:
        The LaunchedServer for this attempt. Spawn errors (e.g. command not
        found) are written to the log instead of raised.

    Raises:
        OSError: if the log directory or log file cannot be created.
    """
    config = config or load_config()

    config.log_dir.mkdir(parents=True, exist_ok=True)
    log_path = config.log_dir / f"{options.id}.log"
    log_file = open(log_path, "ab")

    timestamp = datetime.now(timezone.utc).isoformat()
    log_file.write(f"\n==== Launch {timestamp} ====\n".encode("utf-8"))

    cwd = options.cwd or os.getcwd()
    if config.debug:
        lines = [
            f"[debug] command: {options.command} {' '.join(options.args)}",
            f"[debug] cwd: {cwd}",
        ]
        if options.env:
            lines.append(f"[debug] env: {json.dumps(options.env)}")
        log_file.write(("\n".join(lines) + "\n").encode("utf-8"))
        logger.info(
            f"Launching {options.id}: "
            + json.dumps({
                "command": options.command,
                "args": options.args,
                "cwd": cwd,
                "env": options.env or {},
            }, indent=2)
        )
    log_file.flush()

    try:
        process = await asyncio.create_subprocess_exec(
            options.command,
            *options.args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=options.cwd,
            env={**os.environ, **(options.env or {})},
        )
    except OSError as e:
        logger.error(f"Failed to spawn {options.id} ({options.command}): {e}")
        log_file.write(f"\n[error] {traceback.format_exc()}\n".encode("utf-8"))
        log_file.flush()
        process = None
    except BaseException:
        log_file.close()
        raise

    server = LaunchedServer(
        options.id,
        process,
        log_path,
        log_file,
        debug=config.debug,
    )
    server._start()
    return server

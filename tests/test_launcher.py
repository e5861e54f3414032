"""Tests for the process launcher, using real child processes."""

from __future__ import annotations

import asyncio
import sys
from dataclasses import replace

import pytest

from mcp_runtime.launcher import LaunchOptions, describe_returncode, launch_server
from tests.utils import SERVER_SCRIPT


def script_options(server_id: str, code: str, env: dict[str, str] | None = None) -> LaunchOptions:
    return LaunchOptions(id=server_id, command=sys.executable, args=["-c", code], env=env)


async def collect_stdout(server) -> bytes:
    data = b""
    while True:
        chunk = await server.read_stdout()
        if chunk is None:
            return data
        data += chunk


@pytest.mark.asyncio
async def test_launch_creates_log_with_banner(runtime_config):
    server = await launch_server(script_options("banner", "pass"), runtime_config)
    await server.wait_closed()

    assert server.log_path == runtime_config.log_dir / "banner.log"
    content = server.log_path.read_text()
    assert content.startswith("\n==== Launch ")
    assert "[exit] code=0 signal=null" in content
    assert "[debug]" not in content


@pytest.mark.asyncio
async def test_launch_appends_across_attempts(runtime_config):
    for _ in range(2):
        server = await launch_server(script_options("append", "pass"), runtime_config)
        await server.wait_closed()

    assert server.log_path.read_text().count("==== Launch ") == 2


@pytest.mark.asyncio
async def test_output_is_forwarded_with_channel_prefix(runtime_config):
    code = (
        "import sys\n"
        "sys.stdout.write('hello out\\n'); sys.stdout.flush()\n"
        "sys.stderr.write('hello err\\n'); sys.stderr.flush()\n"
    )
    server = await launch_server(script_options("channels", code), runtime_config)

    assert await collect_stdout(server) == b"hello out\n"
    await server.wait_closed()

    content = server.log_path.read_text()
    assert "[stdout] hello out\n" in content
    assert "[stderr] hello err\n" in content
    assert content.index("[stderr] hello err") < content.index("[exit]")


@pytest.mark.asyncio
async def test_send_reaches_child_stdin(runtime_config):
    code = "import sys; sys.stdout.write(sys.stdin.readline().upper()); sys.stdout.flush()"
    server = await launch_server(script_options("stdin", code), runtime_config)

    await server.send(b"ping\n")

    assert await collect_stdout(server) == b"PING\n"
    await server.wait_closed()


@pytest.mark.asyncio
async def test_update_status_is_logged_and_monotonic(runtime_config):
    server = await launch_server(script_options("status", "pass"), runtime_config)
    server.update_status("starting")
    server.update_status("failed")
    server.update_status("attached")

    assert server.status == "failed"
    server.dispose()
    await server.wait_closed()

    content = server.log_path.read_text()
    assert "[status] starting\n" in content
    assert "[status] failed\n" in content
    assert "[status] attached" not in content


@pytest.mark.asyncio
async def test_status_after_exit_still_reaches_log(runtime_config):
    server = await launch_server(script_options("late", "pass"), runtime_config)
    await server.wait_closed()

    server.update_status("failed")

    assert server.log_path.read_text().endswith("[status] failed\n")


@pytest.mark.asyncio
async def test_dispose_is_idempotent(runtime_config):
    options = LaunchOptions(
        id="dispose",
        command=sys.executable,
        args=[str(SERVER_SCRIPT)],
        env={"HANDSHAKE_MODE": "silent"},
    )
    server = await launch_server(options, runtime_config)
    exits: list[tuple] = []
    server.on_exit(lambda code, sig: exits.append((code, sig)))

    server.dispose()
    server.dispose()
    await server.wait_closed()
    await asyncio.sleep(0)

    assert exits == [(None, "SIGKILL")]
    assert server.disposed
    assert "[exit] code=null signal=SIGKILL" in server.log_path.read_text()


@pytest.mark.asyncio
async def test_on_exit_after_exit_fires_immediately(runtime_config):
    server = await launch_server(script_options("late-exit", "raise SystemExit(3)"), runtime_config)
    await server.wait_closed()

    fired = asyncio.get_running_loop().create_future()
    server.on_exit(lambda code, sig: fired.set_result((code, sig)))

    assert await asyncio.wait_for(fired, timeout=1) == (3, None)


@pytest.mark.asyncio
async def test_spawn_error_is_logged_not_raised(runtime_config):
    options = LaunchOptions(id="missing", command="/nonexistent/mcp-server-binary")
    server = await launch_server(options, runtime_config)

    assert server.process is None
    assert await server.read_stdout() is None
    await server.send(b"ignored\n")
    server.dispose()
    server.dispose()

    content = server.log_path.read_text()
    assert "[error]" in content
    assert "FileNotFoundError" in content


@pytest.mark.asyncio
async def test_debug_mode_logs_launch_details(runtime_config):
    config = replace(runtime_config, debug=True)
    server = await launch_server(
        script_options("debug", "pass", env={"EXTRA": "1"}), config
    )
    await server.wait_closed()

    content = server.log_path.read_text()
    assert f"[debug] command: {sys.executable} -c pass" in content
    assert "[debug] cwd: " in content
    assert '[debug] env: {"EXTRA": "1"}' in content


@pytest.mark.asyncio
async def test_unwritable_log_dir_raises(tmp_path, runtime_config):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    config = replace(runtime_config, log_dir=blocker / "logs")

    with pytest.raises(OSError):
        await launch_server(script_options("nolog", "pass"), config)


def test_describe_returncode():
    assert describe_returncode(0) == (0, None)
    assert describe_returncode(2) == (2, None)
    assert describe_returncode(-9) == (None, "SIGKILL")
    assert describe_returncode(None) == (None, None)


@pytest.mark.asyncio
async def test_stop_capture_drops_queued_output(runtime_config):
    code = "import sys; sys.stdout.write('line\\n' * 100); sys.stdout.flush()"
    server = await launch_server(script_options("capture", code), runtime_config)
    await server.wait_closed()

    server.stop_capture()
    server.stop_capture()

    assert not server.capturing
    assert await server.read_stdout() is None
    assert server._stdout_chunks.qsize() == 1
    assert server.log_path.read_text().count("line\n") == 100


@pytest.mark.asyncio
async def test_spawn_failure_outside_oserror_closes_log(runtime_config, monkeypatch):
    from mcp_runtime import launcher

    opened = []
    real_open = open

    def tracking_open(*args, **kwargs):
        handle = real_open(*args, **kwargs)
        opened.append(handle)
        return handle

    async def broken_exec(*args, **kwargs):
        raise ValueError("embedded null byte")

    monkeypatch.setattr(launcher, "open", tracking_open, raising=False)
    monkeypatch.setattr(launcher.asyncio, "create_subprocess_exec", broken_exec)

    with pytest.raises(ValueError, match="embedded null byte"):
        await launch_server(script_options("nul", "pass"), runtime_config)

    assert len(opened) == 1
    assert opened[0].closed

import asyncio
import os
import signal
import sys
from pathlib import Path

import pytest

from netssh.cli import _exec
from netssh.command import Command
from netssh.dial import dial
from netssh.endpoint import Endpoint
from netssh.errors import CommandExitError, ProtocolError
from netssh.serve import listen

ROOT = Path(__file__).resolve().parents[1]

# Stands in for "ssh user@host" with a forced "netssh proxy" command on the far side.
FAKE_SSH = """#!{python}
import sys
sys.path.insert(0, {root!r})
from netssh.cli import main
sys.exit(main(["proxy", "--sock", {sock!r}]))
"""

HANGING_SSH = """#!{python}
import time
time.sleep(30)
"""


def write_script(path: str, text: str) -> str:
    with open(path, "w") as f:
        f.write(text)
    os.chmod(path, 0o755)
    return path


@pytest.fixture
def fake_ssh(sock_path):
    path = os.path.join(os.path.dirname(sock_path), "fake-ssh")
    return write_script(path, FAKE_SSH.format(python=sys.executable, root=str(ROOT), sock=sock_path))


def endpoint_for(ssh_command: str) -> Endpoint:
    return Endpoint(host="localhost", user="tunnel", identity_file="/dev/null", ssh_command=ssh_command)


@pytest.mark.asyncio
async def test_tunnel_round_trip_and_clean_exit(sock_path, fake_ssh):
    async with listen(sock_path) as listener:
        accept = asyncio.create_task(listener.accept())
        conn = await asyncio.wait_for(dial(endpoint_for(fake_ssh)), 10)
        async with conn:
            server = await asyncio.wait_for(accept, 10)

            await conn.write(b"ping")
            assert await asyncio.wait_for(server.readexactly(4), 10) == b"ping"
            await server.write(b"pong")
            assert await asyncio.wait_for(conn.readexactly(4), 10) == b"pong"

            await server.close()
            # the proxy exits once it has the status byte, which ends the ssh stream
            assert await asyncio.wait_for(conn.read(), 10) == b""
            assert conn.cmd.returncode == 0


@pytest.mark.asyncio
async def test_abnormal_server_close_fails_the_ssh_command(sock_path, fake_ssh):
    async with listen(sock_path) as listener:
        accept = asyncio.create_task(listener.accept())
        conn = await asyncio.wait_for(dial(endpoint_for(fake_ssh)), 10)
        async with conn:
            server = await asyncio.wait_for(accept, 10)
            server.mark_abnormal()
            await server.close()

            with pytest.raises(CommandExitError) as excinfo:
                await asyncio.wait_for(conn.read(), 10)
            assert excinfo.value.returncode == 1


@pytest.mark.asyncio
async def test_dial_without_server_reports_remote_configuration(fake_ssh):
    with pytest.raises(ProtocolError, match="remote configuration"):
        await asyncio.wait_for(dial(endpoint_for(fake_ssh)), 10)


@pytest.mark.asyncio
async def test_dial_timeout_kills_ssh(sock_path):
    script = write_script(
        os.path.join(os.path.dirname(sock_path), "hanging-ssh"),
        HANGING_SSH.format(python=sys.executable),
    )
    started = []

    async def start(program, args, env):
        cmd = await Command.start(program, args, env)
        started.append(cmd)
        return cmd

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(dial(endpoint_for(script), command_factory=start), 0.5)

    (cmd,) = started
    assert cmd.cancelled()
    assert cmd.returncode == -signal.SIGKILL


@pytest.mark.asyncio
async def test_serve_bridges_connection_to_command(sock_path, fake_ssh):
    upper = [sys.executable, "-c", "import sys; sys.stdout.write(sys.stdin.read().upper())"]

    async with listen(sock_path) as listener:
        server = asyncio.create_task(listener.serve(lambda conn: _exec(conn, upper)))
        conn = await asyncio.wait_for(dial(endpoint_for(fake_ssh)), 10)
        async with conn:
            await conn.write(b"hello tunnel")
            conn.close_write()
            assert await asyncio.wait_for(conn.readexactly(12), 10) == b"HELLO TUNNEL"
            assert await asyncio.wait_for(conn.read(), 10) == b""
            assert conn.cmd.returncode == 0

        listener.close()
        await asyncio.wait_for(server, 10)

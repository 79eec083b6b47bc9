import asyncio
import os
import socket
import sys
from typing import Optional

from netssh.context import Logger, context_log
from netssh.errors import AbnormalTerminationError
from netssh.messages import PROXY_ERROR_MSG, STATUS_OK
from netssh.unix.fdpass import send_fds

_STATUS_READ_SIZE = 16


def _write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        view = view[os.write(fd, view):]


async def _read_status(sock: socket.socket) -> bytes:
    loop = asyncio.get_running_loop()
    status = bytearray()
    while True:
        data = await loop.sock_recv(sock, _STATUS_READ_SIZE)
        if not data:
            return bytes(status)
        # anything beyond two bytes is abnormal no matter what follows
        status.extend(data[: 2 - len(status)])


async def proxy(
    server: str,
    *,
    log: Optional[Logger] = None,
    stdin: Optional[int] = None,
    stdout: Optional[int] = None,
) -> None:
    """
    Hand this process's stdin and stdout to the netssh server listening on ``server``.

    This is what runs as the forced ssh command. Once the server took over the
    descriptors, the proxy only waits for the server's status byte.
    The process calling proxy() must exit with a nonzero status if it raises
    and with status 0 if it returns.

    If the server cannot be reached or the hand-off fails, the proxy error banner
    is written to stdout so that the dialing side fails with a ProtocolError
    rather than a timeout.

    Args:
        server: Path of the server's Unix domain socket.
        log: Logger, defaults to the context logger. Must not write to stdout.
        stdin: Descriptor to hand off as stdin, defaults to this process's stdin.
        stdout: Descriptor to hand off as stdout, defaults to this process's stdout.

    Raises:
        OSError: If connecting to the server or passing the descriptors failed.
        AbnormalTerminationError: If the server did not report normal termination.
    """
    log = context_log(log)
    stdin = sys.stdin.fileno() if stdin is None else stdin
    stdout = sys.stdout.fileno() if stdout is None else stdout
    loop = asyncio.get_running_loop()

    def try_send_proxy_error() -> None:
        log.debug("writing proxy error to stdout")
        try:
            _write_all(stdout, PROXY_ERROR_MSG)
        except OSError as e:
            log.debug("error writing proxy error: %s", e)

    log.debug("connecting to server")
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.setblocking(False)
    try:
        await loop.sock_connect(sock, server)
    except OSError as e:
        log.debug("error: %s", e)
        sock.close()
        try_send_proxy_error()
        raise

    with sock:
        log.debug("passing stdin and stdout fds to server")
        try:
            await send_fds(sock, [stdin, stdout])
        except OSError as e:
            log.debug("error: %s", e)
            try_send_proxy_error()
            raise

        log.debug("wait for end of connection")
        try:
            status = await _read_status(sock)
        except OSError as e:
            log.debug("error waiting for exit code: %s", e)
            raise

    if status != bytes([STATUS_OK]):
        log.debug("server indicates abnormal termination: %r", status)
        raise AbnormalTerminationError(f"server indicates abnormal termination: {status!r}")

    log.debug("server indicates normal termination")

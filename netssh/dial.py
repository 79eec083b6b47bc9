import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Protocol

from netssh.command.command import Command
from netssh.context import Logger, context_log
from netssh.endpoint import Endpoint
from netssh.errors import ChannelError, ProtocolError
from netssh.messages import BANNER_MSG, BEGIN_MSG, MESSAGE_LEN, PROXY_ERROR_MSG

NETWORK = "SSH"


class Channel(Protocol):
    """The process-backed duplex channel dial() talks through. Command implements it."""

    @property
    def pid(self) -> int: ...

    async def read(self, n: int = ...) -> bytes: ...

    async def readexactly(self, n: int) -> bytes: ...

    async def write(self, data: bytes) -> None: ...

    async def close(self) -> None: ...

    def close_write(self) -> None: ...

    def kill(self) -> None: ...

    def cancel(self) -> None: ...

    def close_at_deadline(self, deadline: float) -> None: ...


CommandFactory = Callable[[str, List[str], Dict[str, str]], Awaitable[Channel]]


@dataclass(frozen=True)
class Addr:
    pid: Optional[int]
    network: str = NETWORK

    def __str__(self) -> str:
        if self.pid is None:
            return "unknown"
        return f"pid={self.pid}"


class SshConn:
    """
    Client side of an established tunnel.

    Reads, writes and close() go straight to the ssh process. There are no read or
    write deadlines; kill() and close_at_deadline() bound the connection's lifetime instead.
    """

    def __init__(self, cmd: Channel):
        self._cmd = cmd

    def __repr__(self) -> str:
        return f"<SshConn {self.remote_addr()}>"

    @property
    def cmd(self) -> Channel:
        """The underlying ssh command. Use at your own risk."""
        return self._cmd

    def local_addr(self) -> Addr:
        return Addr(self._cmd.pid)

    def remote_addr(self) -> Addr:
        return Addr(self._cmd.pid)

    async def read(self, n: int = Command.DEFAULT_READ_CHUNK_SIZE) -> bytes:
        return await self._cmd.read(n)

    async def readexactly(self, n: int) -> bytes:
        return await self._cmd.readexactly(n)

    async def write(self, data: bytes) -> None:
        await self._cmd.write(data)

    async def close(self) -> None:
        await self._cmd.close()

    def close_write(self) -> None:
        self._cmd.close_write()

    def kill(self) -> None:
        self._cmd.kill()

    def close_at_deadline(self, deadline: float) -> None:
        self._cmd.close_at_deadline(deadline)

    async def __aenter__(self) -> "SshConn":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


async def _handshake(cmd: Channel, log: Logger) -> None:
    log.debug("reading banner")
    try:
        resp = await cmd.readexactly(MESSAGE_LEN)
    except Exception as e:
        raise ChannelError(e, "read banner") from e

    if resp == PROXY_ERROR_MSG:
        raise ProtocolError("proxy error, check remote configuration")
    if resp != BANNER_MSG:
        raise ProtocolError(f"unknown banner message: {resp!r}")

    log.debug("sending begin message")
    try:
        await cmd.write(BEGIN_MSG)
    except Exception as e:
        raise ChannelError(e, "send begin message") from e


async def _drain(task: asyncio.Task) -> None:
    try:
        await asyncio.wait({task})
    except asyncio.CancelledError:
        task.cancel()
        raise
    if not task.cancelled():
        task.exception()


async def dial(
    endpoint: Endpoint,
    *,
    log: Optional[Logger] = None,
    command_factory: Optional[CommandFactory] = None,
) -> SshConn:
    """
    Connect to the remote endpoint, where ssh is expected to run the proxy.

    The banner exchange runs in a background task while the caller waits for it.
    If the caller is cancelled first (task cancellation, asyncio.wait_for or
    asyncio.timeout), the ssh command is cancelled, the handshake task is drained
    and the cancellation propagates unchanged. Once dial() returns, cancelling the
    caller no longer affects the connection.

    Args:
        endpoint: The ssh endpoint.
        log: Logger, defaults to the context logger.
        command_factory: Starts the ssh command, defaults to Command.start.

    Returns:
        The established connection.

    Raises:
        ChannelError: If the ssh process failed during the handshake.
        ProtocolError: If the remote side sent an unexpected banner.
    """
    log = context_log(log)
    start = command_factory or Command.start

    program, args, env = endpoint.cmd_args()
    log.debug("starting %s %s", program, " ".join(args))
    cmd = await start(program, args, env)

    handshake = asyncio.create_task(_handshake(cmd, log))
    try:
        await asyncio.wait({handshake})
    except asyncio.CancelledError:
        log.debug("dial cancelled, cancelling ssh command")
        # a cancelled command fails the pending handshake read or write
        cmd.cancel()
        try:
            await _drain(handshake)
        finally:
            # a repeated cancellation must not skip reaping the process
            await asyncio.shield(cmd.close())
        raise

    err = handshake.exception()
    if err is not None:
        log.debug("handshake failed: %s", err)
        cmd.cancel()
        await cmd.close()
        raise err

    log.debug("handshake complete")
    return SshConn(cmd)

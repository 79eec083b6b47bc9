import asyncio
import errno
import os
import socket
import struct
from typing import Awaitable, Callable, Optional, Set

from netssh.context import Logger, context_log
from netssh.deadline import Deadline, run_until
from netssh.dial import Addr
from netssh.errors import ProtocolError, StreamIOError
from netssh.messages import BANNER_MSG, BEGIN_MSG, STATUS_ABNORMAL, STATUS_OK
from netssh.unix.fdpass import recv_fds
from netssh.unix.streams import FdStream

FD_LABELS = ("netssh-proxy-stdin", "netssh-proxy-stdout")

_PEERCRED = struct.Struct("3i")


def _peer_pid(sock: socket.socket) -> Optional[int]:
    so_peercred = getattr(socket, "SO_PEERCRED", None)
    if so_peercred is None:
        return None
    try:
        pid, _uid, _gid = _PEERCRED.unpack(sock.getsockopt(socket.SOL_SOCKET, so_peercred, _PEERCRED.size))
    except (OSError, struct.error):
        return None
    return pid or None


class ServeConn:
    """
    Server side of an established tunnel.

    Reads come from the proxy's stdin, writes go to the proxy's stdout; the proxy
    itself is no longer in the data path. The control socket to the proxy only
    carries the status byte written on close(), which becomes the proxy's exit status.
    """

    DEFAULT_READ_CHUNK_SIZE = FdStream.DEFAULT_READ_CHUNK_SIZE

    def __init__(self, stdin: FdStream, stdout: FdStream, control: socket.socket, log: Optional[Logger] = None):
        self._stdin = stdin
        self._stdout = stdout
        self._control = control
        self._log = context_log(log)
        self._read_deadline = Deadline()
        self._write_deadline = Deadline()
        self._status = STATUS_OK
        self._closed = False
        self._peer_pid = _peer_pid(control)

    def __repr__(self) -> str:
        return f"<ServeConn {self.remote_addr()}{' closed' if self._closed else ''}>"

    def local_addr(self) -> Addr:
        return Addr(self._peer_pid)

    def remote_addr(self) -> Addr:
        return Addr(self._peer_pid)

    @property
    def status(self) -> int:
        """The status byte close() will send to the proxy."""
        return self._status

    def mark_abnormal(self) -> None:
        """Make close() report abnormal termination to the proxy."""
        self._status = STATUS_ABNORMAL

    def is_closed(self) -> bool:
        return self._closed

    def _io_error(self, e: Exception, op: str) -> StreamIOError:
        if not isinstance(e, TimeoutError):
            self.mark_abnormal()
        return StreamIOError(e, op)

    async def read(self, n: int = DEFAULT_READ_CHUNK_SIZE) -> bytes:
        """
        Read up to ``n`` bytes.

        Returns:
            The data read, b"" if the peer closed the stream.

        Raises:
            StreamIOError: For any other failure, including an expired read deadline.
        """
        try:
            return await self._read_deadline.run(self._stdin.read(n))
        except Exception as e:
            raise self._io_error(e, "read") from e

    async def readexactly(self, n: int) -> bytes:
        try:
            return await self._read_deadline.run(self._stdin.readexactly(n))
        except asyncio.IncompleteReadError:
            raise
        except Exception as e:
            raise self._io_error(e, "read") from e

    async def write(self, data: bytes) -> None:
        """
        Write all of ``data``.

        Raises:
            StreamIOError: For any failure, including an expired write deadline.
        """
        try:
            await self._write_deadline.run(self._stdout.write(data))
        except Exception as e:
            raise self._io_error(e, "write") from e

    def close_write(self) -> None:
        """Close the writing half; the peer reads end-of-stream."""
        self._stdout.close()

    def _check_deadline_settable(self) -> None:
        if self._closed:
            raise StreamIOError(OSError(errno.EBADF, "connection is closed"), "set deadline")

    def set_read_deadline(self, when: Optional[float]) -> None:
        """
        Fail pending and future reads once the event loop time reaches ``when``. None clears the deadline.
        """
        self._check_deadline_settable()
        self._read_deadline.set(when)

    def set_write_deadline(self, when: Optional[float]) -> None:
        self._check_deadline_settable()
        self._write_deadline.set(when)

    def set_deadline(self, when: Optional[float]) -> None:
        """
        Set both deadlines. Both are attempted; the first failure is raised.
        """
        first: Optional[Exception] = None
        for setter in (self.set_write_deadline, self.set_read_deadline):
            try:
                setter(when)
            except Exception as e:
                if first is None:
                    first = e
        if first is not None:
            raise first

    async def close(self) -> None:
        """
        Close both streams, report the status byte to the proxy and close the control socket.

        Closing the streams and sending the status byte are best effort; only a
        failure to close the control socket is raised.
        """
        if self._closed:
            return
        self._closed = True
        self._read_deadline.clear()
        self._write_deadline.clear()

        for stream in (self._stdin, self._stdout):
            try:
                stream.close()
            except Exception as e:
                self._log.debug("error closing %s: %s", getattr(stream, "name", stream), e)

        try:
            await asyncio.get_running_loop().sock_sendall(self._control, bytes([self._status]))
        except Exception as e:
            self._log.debug("error sending status byte %d: %s", self._status, e)

        self._control.close()

    async def __aenter__(self) -> "ServeConn":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.mark_abnormal()
        await self.close()


class Listener:
    """
    Accepts connections from proxies on a Unix domain socket.

    Every accept() is independent: a peer that fails the hand-off or the handshake
    only fails its own accept() call.
    """

    def __init__(self, sock: socket.socket, path: str, log: Optional[Logger] = None):
        self._sock = sock
        self._path = path
        self._log = log
        self._closed = False
        self._closing = asyncio.Event()

    def set_log(self, log: Optional[Logger]) -> None:
        self._log = log

    @property
    def addr(self) -> str:
        return self._path

    def is_closed(self) -> bool:
        return self._closed

    async def _accept_socket(self) -> socket.socket:
        loop = asyncio.get_running_loop()
        unixconn, _ = await run_until(
            loop.sock_accept(self._sock),
            self._closing,
            lambda: ConnectionAbortedError(errno.ECONNABORTED, "listener closed"),
            discard=lambda accepted: accepted[0].close(),
        )
        return unixconn

    async def accept(self) -> ServeConn:
        """
        Accept one proxy connection and complete the handshake.

        Raises:
            ProtocolError: If the proxy did not pass two descriptors or the begin message was wrong or missing.
            StreamIOError: If sending the banner or reading the begin message failed.
            ConnectionAbortedError: If the listener was closed.
        """
        log = context_log(self._log)
        log.debug("accepting")
        unixconn = await self._accept_socket()
        return await self._handshake(unixconn, log)

    async def _handshake(self, unixconn: socket.socket, log: Logger) -> ServeConn:
        log.debug("receive stdin and stdout fds")
        try:
            files = await recv_fds(unixconn, len(FD_LABELS), FD_LABELS)
        except BaseException:
            unixconn.close()
            raise

        log.debug("building connection")
        try:
            stdin = FdStream(files[0].fd, files[0].label)
            stdout = FdStream(files[1].fd, files[1].label)
        except BaseException:
            for f in files:
                f.close()
            unixconn.close()
            raise
        conn = ServeConn(stdin, stdout, unixconn, log)

        try:
            await conn.write(BANNER_MSG)
        except BaseException as e:
            log.debug("error sending banner message: %s", e)
            await self._abort(conn, log)
            raise

        try:
            begin = await conn.readexactly(len(BEGIN_MSG))
        except asyncio.IncompleteReadError as e:
            log.debug("error reading begin message: %s", e)
            await self._abort(conn, log)
            raise ProtocolError(f"begin message not received, got {e.partial!r}") from e
        except BaseException as e:
            log.debug("error reading begin message: %s", e)
            await self._abort(conn, log)
            raise

        if begin != BEGIN_MSG:
            await self._abort(conn, log)
            raise ProtocolError(f"unknown begin message: {begin!r}")

        log.debug("handshake complete")
        return conn

    @staticmethod
    async def _abort(conn: ServeConn, log: Logger) -> None:
        conn.mark_abnormal()
        try:
            await conn.close()
        except OSError as e:
            log.debug("error closing connection: %s", e)

    async def serve(self, handler: Callable[[ServeConn], Awaitable[None]]) -> None:
        """
        Accept connections until the listener is closed, running ``handler`` for each in its own task.

        The descriptor hand-off and the handshake run in the connection's task, so a
        peer that stalls or fails them does not hold up later peers; failures are logged.
        Handshakes still in progress are aborted when the listener closes. The connection
        is closed when the handler returns; if the handler raises, the proxy is told the
        session ended abnormally.
        """
        log = context_log(self._log)
        handlers: Set[asyncio.Task] = set()

        async def run(unixconn: socket.socket) -> None:
            try:
                conn = await run_until(
                    self._handshake(unixconn, log),
                    self._closing,
                    lambda: ConnectionAbortedError(errno.ECONNABORTED, "listener closed"),
                    discard=lambda ready: self._abort(ready, log),
                )
            except (ProtocolError, StreamIOError, OSError) as e:
                unixconn.close()
                if not self._closed:
                    log.warning("handshake failed: %s", e)
                return
            async with conn:
                await handler(conn)

        def done(task: asyncio.Task) -> None:
            handlers.discard(task)
            if not task.cancelled() and task.exception() is not None:
                log.error("connection handler failed: %s", task.exception())

        try:
            while not self._closed:
                log.debug("accepting")
                try:
                    unixconn = await self._accept_socket()
                except ConnectionAbortedError:
                    if self._closed:
                        break
                    raise
                except OSError as e:
                    if self._closed:
                        break
                    log.warning("accept failed: %s", e)
                    continue
                task = asyncio.create_task(run(unixconn))
                handlers.add(task)
                task.add_done_callback(done)
        except asyncio.CancelledError:
            for task in handlers:
                task.cancel()
            raise
        finally:
            if handlers:
                await asyncio.gather(*handlers, return_exceptions=True)

    def close(self) -> None:
        """Stop accepting, close the socket and remove the socket file."""
        if self._closed:
            return
        self._closed = True
        self._closing.set()
        try:
            asyncio.get_running_loop().remove_reader(self._sock.fileno())
        except RuntimeError:
            pass
        self._sock.close()
        try:
            os.unlink(self._path)
        except FileNotFoundError:
            pass

    async def __aenter__(self) -> "Listener":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


def listen(path: str, *, log: Optional[Logger] = None, backlog: int = 100) -> Listener:
    """
    Bind and listen on the Unix domain socket ``path``.

    Raises:
        OSError: If the socket cannot be bound, e.g. because ``path`` exists.
    """
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.bind(path)
        sock.listen(backlog)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return Listener(sock, path, log)

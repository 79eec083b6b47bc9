import asyncio
import errno
import os
from typing import Set

from netssh.unix.poll import wait_readable, wait_writable


class FdStream:
    """
    Non-blocking asyncio reads and writes on a raw file descriptor (pipe, socket or fifo).

    The stream owns the descriptor and closes it in close(). Operations pending at
    that moment fail with an EBADF OSError.
    """

    DEFAULT_READ_CHUNK_SIZE = 8192

    def __init__(self, fd: int, name: str):
        os.set_blocking(fd, False)
        self._fd = fd
        self.name = name
        self._closed = False
        self._waiters: Set[asyncio.Future] = set()

    def __repr__(self) -> str:
        return f"<FdStream {self.name} fd={self._fd}{' closed' if self._closed else ''}>"

    def fileno(self) -> int:
        return self._fd

    def is_closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise OSError(errno.EBADF, f"{self.name} is closed")

    async def read(self, n: int = DEFAULT_READ_CHUNK_SIZE) -> bytes:
        """
        Read up to ``n`` bytes. Returns b"" at end-of-stream.
        """
        while True:
            self._check_open()
            try:
                return os.read(self._fd, n)
            except (BlockingIOError, InterruptedError):
                await wait_readable(self._fd, self._waiters)

    async def readexactly(self, n: int) -> bytes:
        buf = bytearray()
        while len(buf) < n:
            chunk = await self.read(n - len(buf))
            if not chunk:
                raise asyncio.IncompleteReadError(bytes(buf), n)
            buf.extend(chunk)
        return bytes(buf)

    async def write(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            self._check_open()
            try:
                written = os.write(self._fd, view)
            except (BlockingIOError, InterruptedError):
                await wait_writable(self._fd, self._waiters)
                continue
            view = view[written:]

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        loop = asyncio.get_running_loop()
        loop.remove_reader(self._fd)
        loop.remove_writer(self._fd)
        for waiter in list(self._waiters):
            if not waiter.done():
                waiter.set_exception(OSError(errno.EBADF, f"{self.name} is closed"))
        os.close(self._fd)

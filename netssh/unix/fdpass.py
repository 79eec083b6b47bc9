"""
Kernel-assisted file descriptor hand-off over Unix domain stream sockets.

Descriptors travel as an SCM_RIGHTS control message attached to a single dummy
data byte. This only works on POSIX platforms.
"""
import os
import socket
from dataclasses import dataclass
from typing import List, Sequence

from netssh.errors import ProtocolError
from netssh.unix.poll import wait_readable, wait_writable

_DUMMY = b"\x00"
_RECV_FLAGS = getattr(socket, "MSG_CMSG_CLOEXEC", 0)


@dataclass
class ReceivedFd:
    fd: int
    label: str

    def close(self) -> None:
        os.close(self.fd)


async def send_fds(sock: socket.socket, fds: Sequence[int]) -> None:
    """
    Send ``fds`` to the peer of the non-blocking socket ``sock`` in one message.
    """
    while True:
        try:
            socket.send_fds(sock, [_DUMMY], list(fds))
            return
        except (BlockingIOError, InterruptedError):
            await wait_writable(sock.fileno())


async def recv_fds(sock: socket.socket, count: int, labels: Sequence[str]) -> List[ReceivedFd]:
    """
    Receive exactly ``count`` descriptors from the peer of the non-blocking socket ``sock``.

    Args:
        sock: The connected socket.
        count: The number of descriptors the peer must send.
        labels: Diagnostic names for the descriptors, in order.

    Returns:
        The received descriptors, in the order the peer sent them.

    Raises:
        ProtocolError: If the peer closed the connection or sent a different number of descriptors.
            Any descriptors received are closed before raising.
    """
    if len(labels) != count:
        raise ValueError(f"need {count} labels, got {len(labels)}")

    while True:
        try:
            # one extra slot to catch surplus descriptors
            msg, fds, flags, _ = socket.recv_fds(sock, len(_DUMMY), count + 1, _RECV_FLAGS)
            break
        except (BlockingIOError, InterruptedError):
            await wait_readable(sock.fileno())

    if len(fds) == count and not flags & socket.MSG_CTRUNC:
        return [ReceivedFd(fd, label) for fd, label in zip(fds, labels)]

    for fd in fds:
        os.close(fd)
    if not msg and not fds:
        raise ProtocolError("peer closed the connection before passing file descriptors")
    raise ProtocolError(f"expected {count} file descriptors ({', '.join(labels)}), received {len(fds)}")

from .fdpass import ReceivedFd, recv_fds, send_fds
from .streams import FdStream

__all__ = ['FdStream', 'ReceivedFd', 'recv_fds', 'send_fds']

"""
netssh: byte stream tunnels over ssh whose data path bypasses the forced command
through file descriptor hand-off.
"""

from .endpoint import Endpoint
from .messages import BANNER_MSG, BEGIN_MSG, PROXY_ERROR_MSG, MESSAGE_LEN
from .errors import (
    NetsshError,
    ChannelError,
    ProtocolError,
    StreamIOError,
    CommandExitError,
    CommandCancelledError,
    AbnormalTerminationError,
)
from .context import context_log, context_with_log
from .command.command import Command
from .dial import Addr, SshConn, dial
from .proxy import proxy
from .serve import Listener, ServeConn, listen

__all__ = [
    # Configuration
    'Endpoint',

    # Handshake framing
    'BANNER_MSG',
    'BEGIN_MSG',
    'PROXY_ERROR_MSG',
    'MESSAGE_LEN',

    # Errors
    'NetsshError',
    'ChannelError',
    'ProtocolError',
    'StreamIOError',
    'CommandExitError',
    'CommandCancelledError',
    'AbnormalTerminationError',

    # Logging
    'context_log',
    'context_with_log',

    # Client side
    'Command',
    'Addr',
    'SshConn',
    'dial',

    # Remote side
    'proxy',

    # Server side
    'Listener',
    'ServeConn',
    'listen',
]

__version__ = "0.1.0"

import signal
from typing import Optional


class NetsshError(Exception):
    """Base class for all netssh errors."""


class CommandExitError(NetsshError):
    """Raised by a Command whose process exited with a nonzero status or was killed by a signal."""

    def __init__(self, returncode: int, stderr: bytes = b""):
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"command terminated {self.status_text()}")

    @property
    def signaled(self) -> bool:
        return self.returncode < 0

    def status_text(self) -> str:
        if not self.signaled:
            return f"(exit status {self.returncode})"
        try:
            return f"({signal.Signals(-self.returncode).name})"
        except ValueError:
            return f"(signal {-self.returncode})"


class CommandCancelledError(NetsshError):
    """Raised by Command I/O that was interrupted by Command.cancel()."""

    def __init__(self, message: str = "command context cancelled"):
        super().__init__(message)


class ChannelError(NetsshError):
    """
    Wraps a failure of the ssh process backing a connection.

    str() presents a one-line message unless ssh wrote more than one line to stderr.
    """

    def __init__(self, cause: BaseException, while_activity: str):
        self.cause = cause
        self.while_activity = while_activity
        super().__init__(cause, while_activity)

    def __str__(self) -> str:
        if isinstance(self.cause, EOFError):
            # the command reports EOF on exit status 0, but ssh is not expected to do that
            return "ssh exited unexpectedly with exit status 0"

        if not isinstance(self.cause, CommandExitError):
            return f"ssh: {self.cause}"

        status = self.cause.status_text()
        stderr = self.cause.stderr.strip().decode("utf-8", errors="replace")
        if not stderr:
            return f"ssh terminated without stderr output {status}"
        if "\n" not in stderr:
            return f"ssh: '{stderr}' {status}"
        return f"ssh {status}\n{stderr}"


class ProtocolError(NetsshError):
    """Raised when the handshake between dial, proxy and accept side is out of sync."""

    def __init__(self, what: str):
        self.what = what
        super().__init__(what)


class StreamIOError(NetsshError):
    """
    Raised by ServeConn for read errors other than end-of-stream and for any write error.

    Lets callers tell "peer closed" (EOF) from "transport broke".
    """

    def __init__(self, cause: BaseException, op: Optional[str] = None):
        self.cause = cause
        self.op = op
        super().__init__(f"{op} failed: {cause}" if op else str(cause))

    @property
    def timeout(self) -> bool:
        return isinstance(self.cause, TimeoutError)


class AbnormalTerminationError(NetsshError):
    """Raised by the proxy when the server does not report normal termination."""

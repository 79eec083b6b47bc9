import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional, Union

Logger = Union[logging.Logger, logging.LoggerAdapter]

current_log: ContextVar[Optional[Logger]] = ContextVar("netssh_log", default=None)

_discard_log = logging.getLogger("netssh.discard")
_discard_log.addHandler(logging.NullHandler())
_discard_log.propagate = False


def context_log(log: Optional[Logger] = None) -> Logger:
    """
    Resolve the logger for a netssh operation.

    An explicitly passed logger wins, then the one installed with context_with_log().
    Without either, output is silently discarded.
    """
    if log is not None:
        return log
    log = current_log.get()
    if log is None:
        return _discard_log
    return log


@contextmanager
def context_with_log(log: Logger) -> Iterator[Logger]:
    token = current_log.set(log)
    try:
        yield log
    finally:
        current_log.reset(token)

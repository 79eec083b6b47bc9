import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")


async def run_until(
    aw: Awaitable[T],
    event: asyncio.Event,
    error: Callable[[], BaseException],
    discard: Optional[Callable[[T], Any]] = None,
) -> T:
    """
    Await ``aw`` unless ``event`` is set first.

    If the event wins, ``aw`` is cancelled and awaited before ``error()`` is raised,
    so no operation outlives the call.

    Args:
        aw: The operation to run.
        event: The event that aborts the operation.
        error: Factory for the exception raised when the event wins.
        discard: Releases a result that ``aw`` produced anyway after the event won,
            e.g. a socket accepted in the same loop iteration. May return an awaitable.

    Returns:
        The result of ``aw``.
    """
    if event.is_set():
        if asyncio.iscoroutine(aw):
            aw.close()
        raise error()

    op = asyncio.ensure_future(aw)
    fired = asyncio.ensure_future(event.wait())
    try:
        done, _ = await asyncio.wait({op, fired}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        op.cancel()
        raise
    finally:
        fired.cancel()

    if op in done:
        return op.result()

    op.cancel()
    try:
        result = await op
    except (asyncio.CancelledError, Exception):
        raise error() from None
    if discard is not None:
        released = discard(result)
        if inspect.isawaitable(released):
            await released
    raise error()


class Deadline:
    """
    An absolute deadline for one I/O direction, expressed in event loop time (loop.time()).

    Operations run through run() fail with TimeoutError once the deadline passes,
    including operations that were already pending when the deadline was set.
    """

    def __init__(self):
        self._when: Optional[float] = None
        self._handle: Optional[asyncio.TimerHandle] = None
        self._expired = asyncio.Event()

    @property
    def when(self) -> Optional[float]:
        return self._when

    def expired(self) -> bool:
        return self._expired.is_set()

    def set(self, when: Optional[float]) -> None:
        """
        Set the deadline, replacing any earlier one. None clears it.
        """
        self.clear()
        if when is None:
            return
        self._when = when
        loop = asyncio.get_running_loop()
        if when <= loop.time():
            self._expired.set()
        else:
            self._handle = loop.call_at(when, self._expired.set)

    def clear(self) -> None:
        if self._handle:
            self._handle.cancel()
            self._handle = None
        self._when = None
        self._expired.clear()

    async def run(self, aw: Awaitable[T]) -> T:
        return await run_until(aw, self._expired, lambda: TimeoutError("i/o deadline exceeded"))

import asyncio
from typing import Callable, Optional, Set


async def _wait_ready(
    fd: int,
    add: Callable[..., None],
    remove: Callable[[int], bool],
    waiters: Optional[Set[asyncio.Future]] = None,
) -> None:
    loop = asyncio.get_running_loop()
    future = loop.create_future()

    def on_ready() -> None:
        if not future.done():
            future.set_result(None)

    add(fd, on_ready)
    if waiters is not None:
        waiters.add(future)
    try:
        await future
    finally:
        # a future failed by the owner means the descriptor is already unregistered and closed
        if future.cancelled() or future.exception() is None:
            remove(fd)
        if waiters is not None:
            waiters.discard(future)


async def wait_readable(fd: int, waiters: Optional[Set[asyncio.Future]] = None) -> None:
    """
    Wait until ``fd`` is readable, using the running loop's selector.

    Futures are registered in ``waiters`` while pending so that an owner closing
    the descriptor can fail them instead of leaving them blocked forever.
    """
    loop = asyncio.get_running_loop()
    await _wait_ready(fd, loop.add_reader, loop.remove_reader, waiters)


async def wait_writable(fd: int, waiters: Optional[Set[asyncio.Future]] = None) -> None:
    loop = asyncio.get_running_loop()
    await _wait_ready(fd, loop.add_writer, loop.remove_writer, waiters)

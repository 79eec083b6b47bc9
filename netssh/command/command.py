import asyncio
import logging
from contextlib import suppress
from typing import Dict, List, Optional

from netssh.deadline import run_until
from netssh.errors import CommandCancelledError, CommandExitError

logger = logging.getLogger(__name__)


class Command:
    """
    A spawned process exposed as a duplex byte stream.

    Writes go to the process's stdin, reads come from its stdout. stderr is captured
    in the background so that a failed process can be reported with its diagnostics.

    The command owns its own cancellation scope: cancel() kills the process and
    makes pending and future reads and writes fail with CommandCancelledError,
    independent of the task that started the command.
    """

    DEFAULT_READ_CHUNK_SIZE = 8192
    STDERR_LIMIT = 64 * 1024
    CLOSE_GRACE = 1.0
    TERMINATE_TIMEOUT = 4.0

    def __init__(self, process: asyncio.subprocess.Process):
        self._process = process
        self._stderr = bytearray()
        self._stderr_task = asyncio.create_task(self._stderr_loop())
        self._cancelled = asyncio.Event()
        self._closed = False
        self._deadline_handle: Optional[asyncio.TimerHandle] = None
        self._deadline_task: Optional[asyncio.Task] = None

    @classmethod
    async def start(cls, program: str, args: List[str], env: Optional[Dict[str, str]] = None) -> "Command":
        """
        Start ``program`` with ``args`` and return a Command attached to it.
        """
        process = await asyncio.create_subprocess_exec(
            program,
            *args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        logger.debug("started %s with pid %d", program, process.pid)
        return cls(process)

    def __repr__(self) -> str:
        return f"<Command pid={self.pid} returncode={self.returncode}>"

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    @property
    def stderr_output(self) -> bytes:
        return bytes(self._stderr)

    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def _stderr_loop(self) -> None:
        while True:
            try:
                data = await self._process.stderr.read(self.DEFAULT_READ_CHUNK_SIZE)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.debug("error reading stderr of pid %d: %s", self.pid, e)
                break
            if not data:
                break
            self._stderr.extend(data)
            if len(self._stderr) > self.STDERR_LIMIT:
                del self._stderr[: len(self._stderr) - self.STDERR_LIMIT]

    async def _guard(self, aw):
        return await run_until(aw, self._cancelled, CommandCancelledError)

    async def _exit_error(self) -> Optional[CommandExitError]:
        returncode = await self._process.wait()
        # stderr reaches EOF once the process is gone, unless a child inherited it
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(asyncio.shield(self._stderr_task), timeout=1.0)
        if returncode == 0:
            return None
        return CommandExitError(returncode, self.stderr_output)

    async def read(self, n: int = DEFAULT_READ_CHUNK_SIZE) -> bytes:
        """
        Read up to ``n`` bytes from the process's stdout.

        Returns:
            The data read, or b"" at end-of-stream if the process exited with status 0.

        Raises:
            CommandExitError: If stdout ended and the process exited abnormally.
            CommandCancelledError: If the command was cancelled.
        """
        data = await self._guard(self._process.stdout.read(n))
        if data:
            return data
        err = await self._guard(self._exit_error())
        if err:
            raise err
        return b""

    async def readexactly(self, n: int) -> bytes:
        """
        Read exactly ``n`` bytes from the process's stdout.

        Raises:
            asyncio.IncompleteReadError: If stdout ended early and the process exited with status 0.
            CommandExitError: If stdout ended early and the process exited abnormally.
            CommandCancelledError: If the command was cancelled.
        """
        try:
            return await self._guard(self._process.stdout.readexactly(n))
        except asyncio.IncompleteReadError:
            err = await self._guard(self._exit_error())
            if err:
                raise err
            raise

    async def write(self, data: bytes) -> None:
        """
        Write ``data`` to the process's stdin and wait until it is flushed.
        """
        if self._cancelled.is_set():
            raise CommandCancelledError()
        try:
            self._process.stdin.write(data)
            await self._guard(self._process.stdin.drain())
        except (BrokenPipeError, ConnectionResetError):
            if self.returncode:
                raise CommandExitError(self.returncode, self.stderr_output)
            raise

    def close_write(self) -> None:
        """Close the process's stdin so that it reads end-of-stream."""
        stdin = self._process.stdin
        if stdin and not stdin.is_closing():
            stdin.close()

    def kill(self) -> None:
        """Terminate the process immediately."""
        if self._process.returncode is None:
            with suppress(ProcessLookupError):
                self._process.kill()

    def cancel(self) -> None:
        """
        Cancel the command: kill the process and fail pending and future I/O.
        """
        self._cancelled.set()
        self.kill()

    def close_at_deadline(self, deadline: float) -> None:
        """
        Schedule close() at event loop time ``deadline`` without waiting for it.

        A later call replaces the previous schedule.
        """
        if self._deadline_handle:
            self._deadline_handle.cancel()
        loop = asyncio.get_running_loop()
        self._deadline_handle = loop.call_at(deadline, self._close_at_deadline)

    def _close_at_deadline(self) -> None:
        self._deadline_handle = None
        logger.debug("deadline reached, closing pid %d", self.pid)
        self._deadline_task = asyncio.ensure_future(self.close())

    async def wait(self) -> int:
        return await self._process.wait()

    async def close(self) -> None:
        """
        Close stdin, give the process CLOSE_GRACE seconds to exit on its own,
        then terminate it and wait for it to exit.
        """
        if self._closed:
            return
        self._closed = True

        if self._deadline_handle:
            self._deadline_handle.cancel()
            self._deadline_handle = None

        self.close_write()

        if self._process.returncode is None:
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._process.wait(), timeout=self.CLOSE_GRACE)

        if self._process.returncode is None:
            with suppress(ProcessLookupError):
                self._process.terminate()
            try:
                await asyncio.wait_for(self._process.wait(), timeout=self.TERMINATE_TIMEOUT)
            except asyncio.TimeoutError:
                logger.debug("pid %d did not terminate, killing it", self.pid)
                self.kill()
                await self._process.wait()

        if not self._stderr_task.done():
            self._stderr_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._stderr_task

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional, Tuple

from netssh.context import Logger
from netssh.dial import SshConn, dial
from netssh.endpoint import Endpoint
from netssh.errors import NetsshError
from netssh.proxy import proxy
from netssh.serve import ServeConn, listen

LOG_FORMAT = "%(asctime)s.%(msecs)03d %(filename)s:%(lineno)d %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"
CHUNK_SIZE = 8192


def _file_log(path: str) -> Logger:
    log = logging.getLogger("netssh.proxy.file")
    handler = logging.FileHandler(path, mode="a")
    handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
    log.addHandler(handler)
    log.setLevel(logging.DEBUG)
    log.propagate = False
    return log


def _stderr_log(verbose: bool) -> Logger:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        stream=sys.stderr,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
    )
    return logging.getLogger("netssh")


async def _open_stdio() -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, sys.stdin)
    transport, writer_protocol = await loop.connect_write_pipe(asyncio.streams.FlowControlMixin, sys.stdout)
    writer = asyncio.StreamWriter(transport, writer_protocol, reader, loop)
    return reader, writer


async def _run_proxy(args: argparse.Namespace) -> int:
    log = _file_log(args.log) if args.log else None
    try:
        await proxy(args.sock, log=log)
    except (OSError, NetsshError) as e:
        if log:
            log.error("proxy failed: %s", e)
        return 1
    return 0


async def _bridge_stdio(conn: SshConn) -> None:
    reader, writer = await _open_stdio()

    async def upstream() -> None:
        while True:
            data = await reader.read(CHUNK_SIZE)
            if not data:
                break
            await conn.write(data)
        conn.close_write()

    async def downstream() -> None:
        while True:
            data = await conn.read(CHUNK_SIZE)
            if not data:
                break
            writer.write(data)
            await writer.drain()

    up = asyncio.create_task(upstream())
    try:
        await downstream()
    finally:
        up.cancel()
        await asyncio.gather(up, return_exceptions=True)


async def _run_connect(args: argparse.Namespace) -> int:
    log = _stderr_log(args.verbose)
    endpoint = Endpoint(
        host=args.host,
        user=args.user,
        port=args.port,
        identity_file=args.identity,
        ssh_command=args.ssh_command,
        options=tuple(args.option),
    )
    log.debug("dialing %r, timeout %s", endpoint, args.dial_timeout)
    try:
        conn = await asyncio.wait_for(dial(endpoint, log=log), timeout=args.dial_timeout)
    except asyncio.TimeoutError:
        log.error("dial timeout exceeded")
        return 1
    except (OSError, NetsshError) as e:
        log.error("dial failed: %s", e)
        return 1

    async with conn:
        try:
            await _bridge_stdio(conn)
        except (OSError, NetsshError) as e:
            log.error("connection failed: %s", e)
            return 1
    return 0


async def _echo(conn: ServeConn) -> None:
    while True:
        data = await conn.read()
        if not data:
            break
        await conn.write(data)


async def _exec(conn: ServeConn, argv: List[str]) -> None:
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
    )

    async def upstream() -> None:
        while True:
            data = await conn.read()
            if not data:
                break
            process.stdin.write(data)
            await process.stdin.drain()
        process.stdin.close()

    async def downstream() -> None:
        while True:
            data = await process.stdout.read(CHUNK_SIZE)
            if not data:
                break
            await conn.write(data)
        conn.close_write()

    try:
        await asyncio.gather(upstream(), downstream())
    finally:
        if process.returncode is None:
            process.terminate()
        if await process.wait() != 0:
            conn.mark_abnormal()


async def _run_serve(args: argparse.Namespace) -> int:
    log = _stderr_log(args.verbose)
    try:
        os.remove(args.sock)
    except FileNotFoundError:
        pass
    except OSError as e:
        log.error("cannot remove (stale?) socket we want to bind to: %s", e)
        return 1

    log.debug("listening on %s", args.sock)
    listener = listen(args.sock, log=log)

    async def handle(conn: ServeConn) -> None:
        log.info("accepted connection from %s", conn.remote_addr())
        if args.exec:
            await _exec(conn, args.exec)
        else:
            await _echo(conn)

    async with listener:
        await listener.serve(handle)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="netssh", description="Byte stream tunnels over ssh with descriptor hand-off")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("proxy", help="proxy command to be run from the authorized_keys file")
    p.add_argument("--sock", required=True, help="unix socket of the netssh server")
    p.add_argument("--log", help="log file (proxy must not log to stdio)")
    p.set_defaults(run=_run_proxy)

    c = sub.add_parser("connect", help="connect to a server over ssh and bridge it to stdin/stdout")
    c.add_argument("--ssh.host", dest="host", required=True)
    c.add_argument("--ssh.user", dest="user", required=True)
    c.add_argument("--ssh.port", dest="port", type=int, default=22)
    c.add_argument("--ssh.identity", dest="identity", required=True)
    c.add_argument("--ssh.command", dest="ssh_command", help="ssh binary to use instead of 'ssh'")
    c.add_argument("--ssh.option", dest="option", action="append", default=[], help="extra ssh -o option, repeatable")
    c.add_argument("--dial-timeout", type=float, default=None, help="seconds")
    c.add_argument("-v", "--verbose", action="store_true")
    c.set_defaults(run=_run_connect)

    s = sub.add_parser("serve", help="accept proxy connections and echo or bridge them to a command")
    s.add_argument("--sock", required=True, help="unix socket to listen on, replaced if it exists")
    s.add_argument("--exec", nargs=argparse.REMAINDER, help="command to bridge each connection to")
    s.add_argument("-v", "--verbose", action="store_true")
    s.set_defaults(run=_run_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(args.run(args))
    except KeyboardInterrupt:
        return 130

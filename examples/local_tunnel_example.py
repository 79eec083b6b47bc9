"""
Example running both ends of a netssh tunnel on one machine.

Instead of a real ssh connection, a small shim script plays the part of
"ssh user@host" whose authorized_keys entry forces ``netssh proxy``. The
server side echoes upper-cased lines back to the client.
"""

import asyncio
import logging
import os
import sys
import tempfile

from netssh import Endpoint, ServeConn, dial, listen

SHIM = """#!{python}
import sys
from netssh.cli import main
sys.exit(main(["proxy", "--sock", {sock!r}]))
"""


async def shout(conn: ServeConn) -> None:
    print(f"Server: connection from proxy {conn.remote_addr()}")
    while True:
        data = await conn.read()
        if not data:
            break
        await conn.write(data.upper())


async def main():
    logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")

    with tempfile.TemporaryDirectory(prefix="netssh") as tmp:
        sock = os.path.join(tmp, "server.sock")
        shim = os.path.join(tmp, "ssh")
        with open(shim, "w") as f:
            f.write(SHIM.format(python=sys.executable, sock=sock))
        os.chmod(shim, 0o755)

        async with listen(sock, log=logging.getLogger("server")) as listener:
            server = asyncio.create_task(listener.serve(shout))

            endpoint = Endpoint(host="localhost", user=os.environ.get("USER", "me"), ssh_command=shim)
            conn = await asyncio.wait_for(dial(endpoint, log=logging.getLogger("client")), timeout=10)
            async with conn:
                for line in (b"hello\n", b"tunnel\n"):
                    await conn.write(line)
                    reply = await conn.readexactly(len(line))
                    print(f"Client: sent {line!r}, got {reply!r}")
                conn.close_write()
                await conn.read()
                print(f"Client: ssh exited with status {conn.cmd.returncode}")

            listener.close()
            await server


if __name__ == "__main__":
    asyncio.run(main())

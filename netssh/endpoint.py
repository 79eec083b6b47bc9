from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

DEFAULT_SSH_COMMAND = "ssh"


@dataclass(frozen=True)
class Endpoint:
    """
    Where and how to reach the remote proxy command.

    The remote account is expected to run ``netssh proxy`` as forced command,
    so no remote command is appended to the ssh command line.
    """

    host: str
    user: str
    port: int = 22
    identity_file: str = ""
    ssh_command: Optional[str] = None
    options: Tuple[str, ...] = field(default_factory=tuple)

    def cmd_args(self) -> Tuple[str, List[str], Dict[str, str]]:
        """
        Build the ssh command line.

        Returns:
            A tuple of (program, args, env). env is always empty.
        """
        cmd = self.ssh_command or DEFAULT_SSH_COMMAND

        args = [
            "-p", str(self.port),
            "-T",
            "-i", self.identity_file,
            "-o", "BatchMode=yes",
        ]
        for option in self.options:
            args.extend(["-o", option])
        args.append(f"{self.user}@{self.host}")

        return cmd, args, {}

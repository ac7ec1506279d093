"""Local and remote command execution."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import shlex
import subprocess
from typing import Optional, Protocol, Sequence

from .logging_utils import log_event

__all__ = [
    "CommandError",
    "CommandOutput",
    "CommandRunner",
    "LocalRunner",
    "SshRunner",
    "run_checked",
]


@dataclass
class CommandOutput:
    """Minimal command result container for dependency injection."""

    stdout: str
    returncode: int = 0
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner(Protocol):
    def __call__(
        self, cmd: Sequence[str], *, input: Optional[str] = None
    ) -> CommandOutput:  # pragma: no cover - protocol
        ...


class CommandError(RuntimeError):
    """Raised when a command exits with a non-zero status."""

    def __init__(self, cmd: Sequence[str], result: CommandOutput) -> None:
        self.cmd = list(cmd)
        self.result = result
        message = f"command {shlex.join(self.cmd)} exited with status {result.returncode}"
        detail = (result.stderr or result.stdout).strip()
        if detail:
            message += f": {detail.splitlines()[-1]}"
        super().__init__(message)

    @property
    def returncode(self) -> int:
        return self.result.returncode


class LocalRunner:
    """Run commands on the current host."""

    def __call__(
        self, cmd: Sequence[str], *, input: Optional[str] = None
    ) -> CommandOutput:
        log_event("oci_nixos.commands.start", command=list(cmd), target="local")
        completed = subprocess.run(
            list(cmd),
            input=input,
            capture_output=True,
            text=True,
            check=False,
        )
        log_event(
            "oci_nixos.commands.finished",
            command=list(cmd),
            target="local",
            returncode=completed.returncode,
        )
        return CommandOutput(
            stdout=completed.stdout,
            returncode=completed.returncode,
            stderr=completed.stderr,
        )


@dataclass
class SshRunner:
    """Run commands on a remote host through the ``ssh`` client.

    The remote command is shell-quoted so argument boundaries survive the
    round trip through the remote login shell. When ``sudo`` is set the
    command runs through ``sudo -n``; OCI images log in as an unprivileged
    user with passwordless sudo.
    """

    host: str
    user: str = "opc"
    port: int = 22
    private_key: Optional[Path] = None
    sudo: bool = True
    connect_timeout: int = 10
    ssh_executable: str = "ssh"

    def ssh_command(self, cmd: Sequence[str]) -> list[str]:
        remote = shlex.join(list(cmd))
        if self.sudo:
            remote = f"sudo -n {remote}"
        ssh_cmd = [
            self.ssh_executable,
            "-o",
            "BatchMode=yes",
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "UserKnownHostsFile=/dev/null",
            "-o",
            f"ConnectTimeout={self.connect_timeout}",
        ]
        if self.private_key is not None:
            ssh_cmd.extend(["-i", str(self.private_key)])
        ssh_cmd.extend(["-p", str(self.port), f"{self.user}@{self.host}", remote])
        return ssh_cmd

    def __call__(
        self, cmd: Sequence[str], *, input: Optional[str] = None
    ) -> CommandOutput:
        ssh_cmd = self.ssh_command(cmd)
        log_event(
            "oci_nixos.commands.start",
            command=list(cmd),
            target=f"{self.user}@{self.host}:{self.port}",
        )
        completed = subprocess.run(
            ssh_cmd,
            input=input,
            capture_output=True,
            text=True,
            check=False,
        )
        log_event(
            "oci_nixos.commands.finished",
            command=list(cmd),
            target=f"{self.user}@{self.host}:{self.port}",
            returncode=completed.returncode,
        )
        return CommandOutput(
            stdout=completed.stdout,
            returncode=completed.returncode,
            stderr=completed.stderr,
        )


def run_checked(
    runner: CommandRunner, cmd: Sequence[str], *, input: Optional[str] = None
) -> CommandOutput:
    """Run *cmd* through *runner* and raise :class:`CommandError` on failure."""

    result = runner(cmd, input=input)
    if result.returncode != 0:
        raise CommandError(cmd, result)
    return result

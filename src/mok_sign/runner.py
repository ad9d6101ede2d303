"""External process execution.

Every collaborator the workflow drives (apt, mokutil, modinfo, zstd, xz,
sign-file) is invoked through a :class:`CommandRunner`, so components can be
exercised against a simulated runner and a synthetic filesystem.
"""

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Sequence, Union

logger = logging.getLogger(__name__)

# Exit status reported when the executable does not exist, as a shell would
COMMAND_NOT_FOUND = 127

Arg = Union[str, Path]


@dataclass
class CommandResult:
    """Outcome of one external command."""

    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """Whether the command exited successfully."""
        return self.returncode == 0


class CommandRunner(Protocol):
    """Protocol for external command execution."""

    def run(
        self,
        args: Sequence[Arg],
        *,
        stdout_path: Optional[Path] = None,
        interactive: bool = False,
        env: Optional[dict[str, str]] = None,
    ) -> CommandResult:
        """Run a command to completion."""
        ...

    def which(self, name: str) -> Optional[str]:
        """Locate an executable on PATH."""
        ...


class SystemRunner:
    """Runs commands with :mod:`subprocess`."""

    def run(
        self,
        args: Sequence[Arg],
        *,
        stdout_path: Optional[Path] = None,
        interactive: bool = False,
        env: Optional[dict[str, str]] = None,
    ) -> CommandResult:
        """Run a command and wait for it.

        Args:
            args: Command and arguments
            stdout_path: Redirect binary stdout into this file
            interactive: Inherit the terminal instead of capturing output
            env: Extra environment variables

        Returns:
            CommandResult; a missing executable yields returncode 127
        """
        argv = [str(a) for a in args]
        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)

        logger.debug("exec: %s", " ".join(argv))

        try:
            if interactive:
                proc = subprocess.run(argv, env=full_env, check=False)
                result = CommandResult(argv, proc.returncode)
            elif stdout_path is not None:
                with open(stdout_path, "wb") as out:
                    proc = subprocess.run(
                        argv,
                        stdout=out,
                        stderr=subprocess.PIPE,
                        env=full_env,
                        check=False,
                    )
                result = CommandResult(
                    argv,
                    proc.returncode,
                    stderr=proc.stderr.decode(errors="replace"),
                )
            else:
                proc = subprocess.run(
                    argv,
                    capture_output=True,
                    text=True,
                    env=full_env,
                    check=False,
                )
                result = CommandResult(argv, proc.returncode, proc.stdout, proc.stderr)
        except FileNotFoundError:
            logger.debug("not found: %s", argv[0])
            return CommandResult(argv, COMMAND_NOT_FOUND, stderr=f"{argv[0]}: not found")

        if not result.ok:
            logger.debug("exit %d: %s", result.returncode, result.stderr.strip())
        return result

    def which(self, name: str) -> Optional[str]:
        """Locate an executable, including the sbin directories."""
        path = os.environ.get("PATH", "") + ":/sbin:/usr/sbin:/usr/local/sbin"
        return shutil.which(name, path=path)

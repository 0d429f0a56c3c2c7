"""Async execution of host commands.

Route lookups, ``networksetup`` calls and engine stats queries all go through
``CommandRunner`` so they share timeout handling and can be replaced by a fake
in tests.
"""

import asyncio
import contextlib
import shutil
from dataclasses import dataclass

from loguru import logger

from vless_tunnel.core.exceptions import CommandError


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one command.

    Attributes:
        returncode: Process exit status
        stdout: Decoded standard output
        stderr: Decoded standard error
    """

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Run host commands with a timeout and captured output."""

    async def run(self, *argv: str, timeout: float | None = None) -> CommandResult:
        """Run a command to completion.

        Args:
            *argv: Program and arguments
            timeout: Seconds before the command is killed

        Returns:
            CommandResult: Exit status and decoded output

        Raises:
            CommandError: If the program is missing, cannot start or times out
        """
        if shutil.which(argv[0]) is None:
            raise CommandError(f"Executable not found: {argv[0]}")

        logger.debug(f"Running: {' '.join(argv)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CommandError(f"Could not run {argv[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            raise CommandError(f"Timeout running: {' '.join(argv)}") from None
        finally:
            # Timed out or cancelled: do not leave the child behind
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()

        return CommandResult(
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=stdout.decode(errors="ignore"),
            stderr=stderr.decode(errors="ignore"),
        )

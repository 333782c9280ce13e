"""System command runner implementation."""

import asyncio

from kplane.core.logging import get_logger
from kplane.system.command import Command, CommandError

logger = get_logger(__name__)


class System:
    """System implementation that executes commands on the local machine.

    This class implements the Worker protocol. Every call owns its own
    subprocess and output buffers; nothing is shared between invocations.
    """

    def __init__(self, trace: bool = False) -> None:
        """Initialize the System.

        Args:
            trace: Enable trace output for all commands
        """
        self._trace = trace

    async def run(self, cmd: Command) -> bytes:
        """Execute a command and return its standard output.

        Args:
            cmd: Command to execute

        Returns:
            Standard output as bytes

        Raises:
            CommandError: If the command exits non-zero or cannot be started
        """
        command_string = cmd.command_string

        logger.debug("Starting command", command=command_string)

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd.full_command,
                stdin=asyncio.subprocess.PIPE if cmd.stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CommandError(command_string, 127, str(e), action=cmd.action) from e

        try:
            stdout, stderr = await process.communicate(cmd.stdin)
        except asyncio.CancelledError:
            # Kill and reap the child.
            if process.returncode is None:
                process.kill()
            await process.wait()
            raise

        if self._trace:
            self._print_trace(command_string, stdout, stderr)

        if process.returncode != 0:
            # Prefer stderr for diagnostics, fall back to stdout for tools that
            # report errors there.
            output = stderr.decode("utf-8", errors="replace").strip()
            if not output:
                output = stdout.decode("utf-8", errors="replace").strip()
            returncode = process.returncode if process.returncode is not None else 1
            raise CommandError(command_string, returncode, output, action=cmd.action)

        logger.debug("Finished command", command=command_string)

        return stdout

    def _print_trace(self, command: str, stdout: bytes, stderr: bytes) -> None:
        """Print trace output for a command.

        Args:
            command: The command that was executed
            stdout: Captured standard output
            stderr: Captured standard error
        """
        print(f"\n\033[1;32;4mCommand:\033[0m \033[1m{command}\033[0m")
        output = (stdout + stderr).decode("utf-8", errors="replace")
        if output:
            print(f"\033[1;32mOutput:\033[0m\n{output}")

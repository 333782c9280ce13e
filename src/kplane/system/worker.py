"""Worker protocol for system operations."""

from typing import Protocol, runtime_checkable

from kplane.system.command import Command


@runtime_checkable
class Worker(Protocol):
    """Protocol for a system that can execute external commands.

    This protocol defines the interface that all system implementations must follow,
    allowing for both real system operations and mocked implementations for testing.
    """

    async def run(self, cmd: Command) -> bytes:
        """Execute a command and return its standard output.

        Args:
            cmd: Command to execute

        Returns:
            Standard output as bytes

        Raises:
            CommandError: If the command fails
        """
        ...

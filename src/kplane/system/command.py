"""Command models for system execution."""

import shlex
from dataclasses import dataclass, field
from shutil import which

from kplane.core.errors import KplaneError


@dataclass
class Command:
    """Represents an external command to be executed by kplane.

    Attributes:
        executable: The command to execute
        args: Arguments to pass to the executable
        stdin: Optional bytes piped to the command's standard input
        action: Short label used to prefix error messages (e.g. "kubectl apply")
    """

    executable: str
    args: list[str] = field(default_factory=list)
    stdin: bytes | None = field(default=None, repr=False)
    action: str = ""

    @property
    def full_command(self) -> list[str]:
        """Build the full command with the resolved executable path.

        Returns:
            List of command components
        """
        # Resolve executable path (similar to Go's exec.LookPath).
        executable_path = which(self.executable)
        if executable_path is None:
            executable_path = self.executable

        return [executable_path, *self.args]

    @property
    def command_string(self) -> str:
        """Build the command as a properly escaped shell string.

        Returns:
            Shell-escaped command string
        """
        return shlex.join([self.executable, *self.args])


class CommandError(KplaneError):
    """Raised when a command execution fails.

    Attributes:
        command: The command that failed
        returncode: Exit code from the command
        output: Diagnostic output of the command, trimmed of whitespace
        action: Label of the operation that ran the command
    """

    def __init__(self, command: str, returncode: int, output: str, action: str = "") -> None:
        """Initialize CommandError.

        Args:
            command: The command that failed
            returncode: Exit code from the command
            output: Diagnostic output (stderr, or stdout when stderr is empty)
            action: Label of the operation that ran the command
        """
        self.command = command
        self.returncode = returncode
        self.output = output.strip()
        self.action = action
        if action and self.output:
            message = f"{action}: {self.output}"
        elif self.output:
            message = f"Command failed with exit code {returncode}: {command}: {self.output}"
        else:
            message = f"Command failed with exit code {returncode}: {command}"
        super().__init__(message)


class NotInstalledError(KplaneError):
    """Raised when a required external binary is not on PATH.

    Attributes:
        binary: Name of the missing binary
        hint: Where to get it from
    """

    def __init__(self, binary: str, hint: str = "") -> None:
        self.binary = binary
        self.hint = hint
        message = f"{binary} is not installed"
        if hint:
            message = f"{message}; install from {hint}"
        super().__init__(message)


def require_command(binary: str, hint: str = "") -> None:
    """Check that a binary exists on the system PATH.

    Args:
        binary: Name of the executable
        hint: Install location reported when it is missing

    Raises:
        NotInstalledError: If the binary is not found
    """
    if which(binary) is None:
        raise NotInstalledError(binary, hint)

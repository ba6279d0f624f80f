"""Command execution for the firewall binaries.

Provides:
- Binary path resolution
- Safe command execution with output capture
- Timeout support
- Dry-run mode support
"""

import shlex
import shutil
import subprocess
from dataclasses import dataclass
from typing import Optional, Sequence

from bouncer.core.context import ExecutionContext
from bouncer.core.exceptions import ExecutionError, PrerequisiteError


@dataclass
class CommandResult:
    """Result of a command execution."""
    command: list[str]
    return_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        """Check if command succeeded."""
        return self.return_code == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, for matching error messages."""
        return "\n".join(s.strip() for s in (self.stdout, self.stderr) if s.strip())


def resolve_binary(name: str) -> str:
    """Resolve a binary name to an absolute path.

    Args:
        name: Executable name (e.g. "ipset")

    Returns:
        Absolute path of the executable

    Raises:
        PrerequisiteError: If the binary is not on PATH
    """
    path = shutil.which(name)
    if path is None:
        raise PrerequisiteError(
            f"unable to find {name}",
            hint=f"Install {name} or add it to PATH",
        )
    return path


class CommandExecutor:
    """Command execution with dry-run support and output capture.

    Features:
    - Dry-run mode shows what would happen
    - Output capture for processing
    - Timeout support
    """

    def __init__(self, ctx: ExecutionContext, *, timeout: Optional[int] = None) -> None:
        """Initialize executor with context.

        Args:
            ctx: Execution context with flags
            timeout: Default timeout in seconds for every command
        """
        self.ctx = ctx
        self.timeout = timeout

    def run(
        self,
        command: Sequence[str],
        *,
        description: Optional[str] = None,
        check: bool = True,
        timeout: Optional[int] = None,
    ) -> CommandResult:
        """Execute a command.

        Args:
            command: Command as list of strings
            description: Human-readable description for logging
            check: Raise exception on non-zero exit
            timeout: Command timeout in seconds (overrides the default)

        Returns:
            CommandResult with output

        Raises:
            ExecutionError: If the command fails and check=True, times out,
                or cannot be started
        """
        command = list(command)
        timeout = timeout if timeout is not None else self.timeout

        if description:
            self.ctx.console.step(description)

        cmd_display = shlex.join(command)
        self.ctx.console.command(cmd_display)

        if self.ctx.dry_run:
            self.ctx.console.dry_run_msg(f"Run: {cmd_display}")
            return CommandResult(
                command=command,
                return_code=0,
                stdout="",
                stderr="",
            )

        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise ExecutionError(
                f"Command timed out after {timeout}s: {description or cmd_display}",
                command=cmd_display,
            )
        except OSError as e:
            raise ExecutionError(
                f"Cannot execute: {cmd_display}",
                command=cmd_display,
                details=[str(e)],
            ) from e

        cmd_result = CommandResult(
            command=command,
            return_code=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
        )

        if check and result.returncode != 0:
            raise ExecutionError(
                f"Command failed: {description or cmd_display}",
                command=cmd_display,
                return_code=result.returncode,
                stderr=result.stderr,
            )

        return cmd_result

"""Structured commands and their results.

Commands are never built by string interpolation: each one is a binary
plus an ordered argument list. The session layer quotes every argument
individually, so values such as a rule source or comment reach the
remote binary verbatim.
"""

import shlex
from dataclasses import dataclass, field
from typing import Optional

from fwa.core.exceptions import ExecutionError, ExecutionKind


SUDO_PREFIX = ("sudo", "-n")


@dataclass(frozen=True)
class Command:
    """A single remote command.

    Attributes:
        binary: Program to run (e.g. "ufw")
        argv: Arguments, one entry per argument
        needs_elevated_privilege: Run through sudo unless already root
        mutating: Changes firewall state (logged before it runs)
        description: Human-readable description for logs
    """
    binary: str
    argv: tuple[str, ...] = ()
    needs_elevated_privilege: bool = True
    mutating: bool = True
    description: Optional[str] = field(default=None, compare=False)

    def to_argv(self, *, elevate: bool = False) -> list[str]:
        """Full argument vector, optionally prefixed with sudo."""
        args = [self.binary, *self.argv]
        if elevate and self.needs_elevated_privilege:
            return [*SUDO_PREFIX, *args]
        return args

    def display(self) -> str:
        """Literal command text as it will run (without sudo)."""
        return shlex.join(self.to_argv())

    def __str__(self) -> str:
        return self.display()


def read_only(binary: str, *argv: str, elevated: bool = True) -> Command:
    """Build a command that only inspects state."""
    return Command(binary, tuple(argv), needs_elevated_privilege=elevated, mutating=False)


def mutating(binary: str, *argv: str, description: Optional[str] = None) -> Command:
    """Build a command that changes firewall state."""
    return Command(binary, tuple(argv), needs_elevated_privilege=True, mutating=True,
                   description=description)


@dataclass
class CommandResult:
    """Result of a command execution."""
    command: Command
    return_code: int
    stdout: str
    stderr: str
    dry_run: bool = False

    @property
    def success(self) -> bool:
        """Check if command succeeded."""
        return self.return_code == 0

    def check(self) -> "CommandResult":
        """Raise ExecutionError(NON_ZERO_EXIT) unless the command succeeded."""
        if not self.success:
            raise ExecutionError(
                f"Command failed: {self.command.display()}",
                kind=ExecutionKind.NON_ZERO_EXIT,
                command=self.command.display(),
                return_code=self.return_code,
                stderr=self.stderr.strip() or None,
            )
        return self

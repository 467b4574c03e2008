"""Turn a shell-style command line into something asyncio can spawn.

Plain commands are tokenized (quotes respected) and executed directly.
Commands containing shell operators (&&, ||, |, >, <, ;, &) or a leading
NAME=value assignment only mean something to a shell, so they are handed
verbatim to the platform shell instead.
"""

from __future__ import annotations

import re
import shlex
import sys
from dataclasses import dataclass, field

from mcpgate.utils.exceptions import CommandError

_SHELL_OPERATORS = ("&&", "||", "|", ">", "<", ";", "&")
_ENV_ASSIGNMENT_PREFIX = re.compile(r"^\s*\w+=\S*\s+")


@dataclass(frozen=True)
class ParsedCommand:
    """Binary plus argument list, ready for create_subprocess_exec."""

    binary: str
    arguments: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.binary

    @property
    def argv(self) -> list[str]:
        return [self.binary, *self.arguments]

    def display(self) -> str:
        return shlex.join(self.argv) if self.binary else ""


def platform_shell() -> tuple[str, str]:
    """Return (shell binary, flag that makes it run one command string)."""
    if sys.platform == "win32":
        return "cmd", "/c"
    return "/bin/sh", "-c"


def needs_shell(command: str) -> bool:
    """True when the command only has correct semantics under a shell."""
    if any(op in command for op in _SHELL_OPERATORS):
        return True
    return bool(_ENV_ASSIGNMENT_PREFIX.match(command))


def parse_command(command: str | None) -> ParsedCommand:
    """
    Split a command string into binary and arguments.

    Empty or whitespace-only input yields an empty ParsedCommand; callers
    must treat that as "nothing to spawn".
    """
    if not command or not command.strip():
        return ParsedCommand(binary="", arguments=[])

    if needs_shell(command):
        shell, flag = platform_shell()
        return ParsedCommand(binary=shell, arguments=[flag, command])

    try:
        parts = shlex.split(command, posix=True)
    except ValueError as e:
        raise CommandError(f"Cannot parse command: {e}", command=command) from e
    if not parts:
        return ParsedCommand(binary="", arguments=[])
    return ParsedCommand(binary=parts[0], arguments=parts[1:])


def require_command(command: str | None) -> ParsedCommand:
    """Parse and fail with a descriptive error when there is nothing to spawn."""
    parsed = parse_command(command)
    if parsed.is_empty:
        raise CommandError("Command is required: nothing to spawn", command=command or "")
    return parsed

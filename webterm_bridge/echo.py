"""Command echo filter — drops the shell's echo of the command just typed.

Heuristic and best effort: only the first non-empty line of the first
output chunk after a write is inspected.  Prompts spanning several lines
are not recognised.
"""

from __future__ import annotations

import re
from typing import Optional

# ANSI escape sequence pattern
_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[a-zA-Z]|\x1b\].*?(?:\x07|\x1b\\)|\x1b\([A-Z0-9]")

_PROMPT_SUFFIXES = ("$ ", "# ", "> ", ": ")
# "user@host:~/dir$ cmd" style: everything up to the last prompt char
_PROMPT_PREFIX_RE = re.compile(r"^[^$#>:]*[$#>:]\s*")


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences from text."""
    return _ANSI_RE.sub("", text)


def is_echo_line(line: str, command: str) -> bool:
    line = line.strip()
    if not line or not command:
        return False
    if line == command:
        return True
    if any(line.endswith(suffix + command) for suffix in _PROMPT_SUFFIXES):
        return True
    return command in line and _PROMPT_PREFIX_RE.sub("", line, count=1) == command


def filter_echo(data: str, command: str) -> tuple[str, bool]:
    """Remove the echoed ``command`` line from ``data``.

    Returns ``(output, inspected)``.  ``inspected`` is True once a
    non-empty line was looked at, whether or not it matched, which is the
    caller's cue to forget the pending command.
    """
    if not command or not data:
        return data, False
    raw_lines = data.splitlines(keepends=True)
    clean_lines = strip_ansi(data).splitlines()
    if len(raw_lines) != len(clean_lines):
        # An escape sequence swallowed a line break; leave output untouched
        return data, True
    for index, clean in enumerate(clean_lines):
        if not clean.strip():
            continue
        if is_echo_line(clean, command):
            del raw_lines[index]
            return "".join(raw_lines), True
        return data, True
    return data, False


def pending_command(data: str) -> Optional[str]:
    """The command a write submits, if it ends with a line terminator."""
    if not data or not data.endswith(("\n", "\r")):
        return None
    command = data.replace("\r", "").replace("\n", "").strip()
    return command or None

"""
Chat command parser for the relay.

Commands start with ! and are case-insensitive:
- !stop, !kill, !escape
- !stats (alias !cost)
- !compact
- !permissions [auto|interactive]
- !cd <path>
- !help

Anything else, including unknown !words, is a regular message for Claude.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import List

PERMISSION_MODES = ("auto", "interactive")


class CommandType(str, Enum):
    # Session control
    STOP = "stop"
    ESCAPE = "escape"
    KILL = "kill"
    COMPACT = "compact"
    CD = "cd"
    PERMISSIONS = "permissions"

    # Info
    STATS = "stats"
    HELP = "help"

    # Not a command - regular message
    MESSAGE = "message"


@dataclass
class ParsedCommand:
    """Result of parsing a chat message."""

    type: CommandType
    text: str  # Original text, or the argument string for commands
    args: List[str]


def parse_command(text: str) -> ParsedCommand:
    """
    Parse a chat message into a command or regular message.

    Examples:
        "!stop" -> CommandType.STOP
        "!cd ~/src/app" -> CommandType.CD with text="~/src/app"
        "!cd" -> CommandType.MESSAGE (missing path)
        "!permissions auto" -> CommandType.PERMISSIONS with text="auto"
        "fix the build" -> CommandType.MESSAGE
    """
    text = (text or "").strip()
    m = re.match(r"^!(\w+)(?:\s+(.*))?$", text, re.DOTALL)
    if not m:
        return ParsedCommand(type=CommandType.MESSAGE, text=text, args=[])

    name = m.group(1).lower()
    arg_str = (m.group(2) or "").strip()
    cmd_type = _map_command(name)

    if cmd_type == CommandType.CD:
        if not arg_str:
            return ParsedCommand(type=CommandType.MESSAGE, text=text, args=[])
        return ParsedCommand(type=cmd_type, text=arg_str, args=[arg_str])
    if cmd_type == CommandType.PERMISSIONS:
        mode = arg_str.lower()
        if mode and mode not in PERMISSION_MODES:
            return ParsedCommand(type=CommandType.MESSAGE, text=text, args=[])
        return ParsedCommand(type=cmd_type, text=mode, args=[mode] if mode else [])
    if cmd_type == CommandType.MESSAGE or arg_str:
        # Bare commands only; "!stop the server" is a sentence for Claude.
        return ParsedCommand(type=CommandType.MESSAGE, text=text, args=[])
    return ParsedCommand(type=cmd_type, text="", args=[])


def _map_command(name: str) -> CommandType:
    mapping = {
        "stop": CommandType.STOP,
        "escape": CommandType.ESCAPE,
        "kill": CommandType.KILL,
        "compact": CommandType.COMPACT,
        "cd": CommandType.CD,
        "permissions": CommandType.PERMISSIONS,
        "stats": CommandType.STATS,
        "cost": CommandType.STATS,
        "help": CommandType.HELP,
    }
    return mapping.get(name, CommandType.MESSAGE)


def format_help() -> str:
    return """| Command | Description |
|---------|-------------|
| `!stop` | Stop the session for this thread |
| `!escape` | Interrupt the current response (SIGINT) |
| `!kill` | Force-kill the session process |
| `!compact` | Ask Claude to compact its context |
| `!stats` / `!cost` | Show token usage and cost |
| `!cd <path>` | Set the working directory for the next new session |
| `!permissions [auto or interactive]` | Show or set the permission mode for the next new session |
| `!help` | Show this help |"""

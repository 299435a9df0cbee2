from __future__ import annotations

import json
from typing import Any, Dict, Optional

from ..contracts.v1.events import ToolUse

TOOL_ICONS: Dict[str, str] = {
    "Bash": "🔧",
    "Read": "📖",
    "Edit": "✏️",
    "Write": "📝",
    "WebFetch": "🌐",
    "WebSearch": "🌐",
    "Glob": "🔍",
    "Grep": "🔍",
    "Task": "👥",
    "AskUserQuestion": "❓",
}
DEFAULT_TOOL_ICON = "⚙️"

# Which input field is worth showing for well-known tools.
_DETAIL_KEYS: Dict[str, str] = {
    "Bash": "command",
    "Read": "file_path",
    "Edit": "file_path",
    "Write": "file_path",
    "WebFetch": "url",
    "WebSearch": "query",
    "Grep": "pattern",
    "Glob": "pattern",
}


def tool_detail(name: str, tool_input: Optional[Dict[str, Any]]) -> Optional[str]:
    data = tool_input or {}
    key = _DETAIL_KEYS.get(name)
    if key is not None:
        v = data.get(key)
        return str(v) if v else None
    compact = {k: v for k, v in data.items() if v is not None}
    if not compact:
        return None
    return json.dumps(compact, ensure_ascii=False, separators=(",", ":"))


def format_tool_use(tool_use: ToolUse) -> str:
    """Render a tool call as a chat line: icon, tool name, and a fenced detail block."""
    icon = TOOL_ICONS.get(tool_use.name, DEFAULT_TOOL_ICON)
    detail = tool_detail(tool_use.name, tool_use.input)
    if detail:
        return f"{icon} `{tool_use.name}`\n```\n{detail}\n```"
    return f"{icon} `{tool_use.name}`"

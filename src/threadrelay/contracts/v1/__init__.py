from __future__ import annotations

from .events import SystemMessage, ToolUse
from .session import PersistedSession

__all__ = [
    "PersistedSession",
    "SystemMessage",
    "ToolUse",
]

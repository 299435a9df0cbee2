from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ToolUse(BaseModel):
    """A `tool_use` content block emitted by the assistant."""
    id: str = ""
    name: str = ""
    input: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore", frozen=True)


class SystemMessage(BaseModel):
    """A `system` event that carried a human-readable message."""
    subtype: Optional[str] = None
    message: str

    model_config = ConfigDict(extra="ignore", frozen=True)

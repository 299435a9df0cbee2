from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import utc_now_iso


class PersistedSession(BaseModel):
    """Snapshot of a thread's CLI session, written to sessions.json for resume."""
    v: int = 1
    claude_session_id: str
    channel_id: Optional[str] = None
    working_dir: Optional[str] = None
    started_at: str = Field(default_factory=utc_now_iso)
    last_activity_at: str = Field(default_factory=utc_now_iso)
    is_paused: bool = False
    message_count: int = 0
    total_cost: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0

    model_config = ConfigDict(extra="ignore")

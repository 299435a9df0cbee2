"""
Base class for chat platform adapters.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class InboundMessage:
    """A user post normalized for the relay."""
    channel_id: str
    thread_id: str
    post_id: str
    user_id: str
    username: str
    text: str


@dataclass
class ThreadPost:
    """One post of an existing thread, oldest first when listed."""
    post_id: str
    user_id: str
    message: str
    is_bot: bool = False


class ChatAdapter(ABC):
    """
    Abstract base class for chat platform adapters.

    The streaming path only needs create_post / update_post / send_typing;
    the relay loop additionally polls for inbound posts.
    """

    platform: str = "unknown"

    @abstractmethod
    def connect(self) -> bool:
        """
        Verify credentials and prepare for polling.
        Returns True if successful.
        """

    @abstractmethod
    def disconnect(self) -> None:
        """Stop polling."""

    @abstractmethod
    def poll(self) -> List[InboundMessage]:
        """Return new user posts since the previous poll, oldest first."""

    @abstractmethod
    def create_post(self, channel_id: str, message: str, root_id: Optional[str] = None) -> Optional[str]:
        """Create a post (a reply when root_id is set). Returns the new post id, or None on failure."""

    @abstractmethod
    def update_post(self, post_id: str, message: str) -> bool:
        """Replace a post's message."""

    @abstractmethod
    def send_typing(self, channel_id: str, parent_id: Optional[str] = None) -> bool:
        """Show the typing indicator in a channel or thread."""

    def get_username(self, user_id: str) -> str:
        return user_id

    def get_thread_posts(self, thread_id: str) -> List[ThreadPost]:
        """Posts of a thread, oldest first. Adapters without history return []."""
        return []

    def reply(self, channel_id: str, thread_id: str, text: str) -> bool:
        return self.create_post(channel_id, text, root_id=thread_id) is not None

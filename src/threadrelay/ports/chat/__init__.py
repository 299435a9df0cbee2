"""
Chat Port

Binds the relay to a chat platform (Mattermost). Each top-level post in a
watched channel starts a thread; replies in the thread continue the same
Claude session.
"""

from .adapters import ChatAdapter, InboundMessage, MattermostAdapter
from .commands import CommandType, ParsedCommand, parse_command

__all__ = ["ChatAdapter", "InboundMessage", "MattermostAdapter", "CommandType", "ParsedCommand", "parse_command"]

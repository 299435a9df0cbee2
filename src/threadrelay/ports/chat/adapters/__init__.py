"""
Chat Platform Adapters

- Mattermost: REST API v4, inbound by polling channel posts
"""

from .base import ChatAdapter, InboundMessage, ThreadPost
from .mattermost import MattermostAdapter

__all__ = ["ChatAdapter", "InboundMessage", "MattermostAdapter", "ThreadPost"]

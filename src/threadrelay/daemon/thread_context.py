"""Thread history for sessions that start without Claude-side memory.

A fresh session created for a thread that already has posts (earlier replies,
command output, a session that was stopped or swept as idle) gets the thread
transcript prepended to the first message.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from ..ports.chat.adapters.base import ChatAdapter, ThreadPost
from ..util.format import short_id

logger = logging.getLogger("threadrelay.thread_context")

MAX_PRIOR_POSTS = 20


def format_transcript(posts: List[ThreadPost], text: str) -> str:
    transcript = "\n\n".join(f"{'Claude' if p.is_bot else 'User'}: {p.message}" for p in posts)
    return (
        "Here is the conversation so far in this thread:\n\n"
        f"{transcript}\n\n---\n\nUser's latest message: {text}"
    )


def build_contextual_message(
    adapter: ChatAdapter,
    thread_id: str,
    text: str,
    *,
    post_id: Optional[str] = None,
    max_posts: int = MAX_PRIOR_POSTS,
) -> str:
    """Return text prefixed with up to max_posts earlier posts of the thread, or text unchanged."""
    try:
        posts = adapter.get_thread_posts(thread_id)
    except Exception as e:
        logger.warning(f"Cannot fetch history for thread {short_id(thread_id)}: {e}")
        return text
    prior = [
        p for p in posts
        if p.message.strip() and p.message != text and not (post_id and p.post_id == post_id)
    ]
    prior = prior[-max_posts:] if max_posts > 0 else []
    if not prior:
        return text
    logger.info(f"Prepending {len(prior)} prior post(s) to new session for thread {short_id(thread_id)}")
    return format_transcript(prior, text)

"""Per-thread admission control.

A thread is "claimed" while one message is in flight to its Claude session.
Messages arriving for a claimed thread are buffered and handed out one at a
time as each turn completes.
"""
from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Optional, Set

from ..util.time import utc_now_iso


@dataclass
class QueuedMessage:
    """A chat message waiting for its thread's session to become free."""
    thread_id: str
    text: str
    channel_id: str = ""
    username: str = ""
    post_id: str = ""
    ts: str = field(default_factory=utc_now_iso)


class MessageQueue:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._processing: Set[str] = set()
        self._pending: Dict[str, Deque[QueuedMessage]] = {}

    def try_claim(self, thread_id: str) -> bool:
        """Claim the thread for processing; False if it is already claimed."""
        with self._lock:
            if thread_id in self._processing:
                return False
            self._processing.add(thread_id)
            return True

    def claim_or_enqueue(self, msg: QueuedMessage) -> bool:
        """Claim the thread for msg (True), or buffer msg behind the current claim (False).

        One lock covers both, so a turn finishing in between cannot release
        the claim and leave msg buffered with nobody to drain it.
        """
        with self._lock:
            if msg.thread_id not in self._processing:
                self._processing.add(msg.thread_id)
                return True
            self._pending.setdefault(msg.thread_id, deque()).append(msg)
            return False

    def enqueue(self, msg: QueuedMessage) -> None:
        with self._lock:
            self._pending.setdefault(msg.thread_id, deque()).append(msg)

    def dequeue(self, thread_id: str) -> Optional[QueuedMessage]:
        """Pop the next buffered message, or release the claim when none is left.

        Both happen under one lock so a concurrent enqueue cannot slip between
        "buffer empty" and "claim released" and get stranded.
        """
        with self._lock:
            msgs = self._pending.get(thread_id)
            if msgs:
                msg = msgs.popleft()
                if not msgs:
                    self._pending.pop(thread_id, None)
                return msg
            self._pending.pop(thread_id, None)
            self._processing.discard(thread_id)
            return None

    def release(self, thread_id: str) -> None:
        """Drop the claim and any buffered messages for the thread."""
        with self._lock:
            self._processing.discard(thread_id)
            self._pending.pop(thread_id, None)

    def is_processing(self, thread_id: str) -> bool:
        with self._lock:
            return thread_id in self._processing

    def pending_count(self, thread_id: str) -> int:
        with self._lock:
            return len(self._pending.get(thread_id) or ())

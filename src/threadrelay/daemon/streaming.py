"""Streams one assistant turn into a chat thread.

The first piece of output creates a reply post; later output edits it, with
edits coalesced so a burst of chunks becomes at most one update per debounce
window. A typing indicator runs until the first output arrives.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import List, Optional

from ..contracts.v1.events import ToolUse
from ..ports.chat.adapters.base import ChatAdapter
from ..util.format import short_id
from .tool_format import format_tool_use

logger = logging.getLogger("threadrelay.streaming")

DEBOUNCE_SECONDS = 0.3
TYPING_INTERVAL_SECONDS = 3.0
SEGMENT_SEPARATOR = "\n\n"


@dataclass
class Segment:
    kind: str  # "text" | "tool"
    text: str


class StreamingResponse:
    def __init__(
        self,
        *,
        thread_id: str,
        channel_id: str,
        adapter: ChatAdapter,
        debounce_seconds: float = DEBOUNCE_SECONDS,
        typing_interval_seconds: float = TYPING_INTERVAL_SECONDS,
    ) -> None:
        self.thread_id = thread_id
        self.channel_id = channel_id
        self.adapter = adapter
        self.debounce_seconds = float(debounce_seconds)
        self.typing_interval_seconds = float(typing_interval_seconds)

        # Guards everything below; the debounce timer takes it too.
        self._lock = threading.Lock()
        self._segments: List[Segment] = []
        self._full_text = ""
        self._post_id: Optional[str] = None
        self._last_update_at = 0.0
        self._timer: Optional[threading.Timer] = None
        # Bumped whenever the pending timer is replaced or cancelled; a timer that fires late sees a newer value.
        self._timer_gen = 0
        self._typing_stop: Optional[threading.Event] = None
        self._create_failed = False
        self._finalized = False

    @property
    def post_id(self) -> Optional[str]:
        with self._lock:
            return self._post_id

    @property
    def full_text(self) -> str:
        with self._lock:
            return self._full_text

    @property
    def create_failed(self) -> bool:
        with self._lock:
            return self._create_failed

    @property
    def finalized(self) -> bool:
        with self._lock:
            return self._finalized

    # ---------------------------------------------------------------- typing

    def start_typing(self) -> None:
        with self._lock:
            if self._typing_stop is not None or self._finalized:
                return
            stop = threading.Event()
            self._typing_stop = stop
        t = threading.Thread(
            target=self._typing_loop, args=(stop,), name=f"threadrelay-typing:{short_id(self.thread_id)}", daemon=True
        )
        t.start()

    def stop_typing(self) -> None:
        with self._lock:
            self._stop_typing_locked()

    def _stop_typing_locked(self) -> None:
        stop = self._typing_stop
        self._typing_stop = None
        if stop is not None:
            stop.set()

    def _typing_loop(self, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                self.adapter.send_typing(self.channel_id, parent_id=self.thread_id)
            except Exception as e:
                logger.warning(f"Typing error (thread {short_id(self.thread_id)}): {e}")
                return
            stop.wait(self.typing_interval_seconds)

    # ---------------------------------------------------------------- events

    def on_text(self, text: str) -> None:
        self._append(Segment(kind="text", text=text))

    def on_tool_use(self, tool_use: ToolUse) -> None:
        # Questions are answered through the permission server, not shown inline.
        if tool_use.name == "AskUserQuestion":
            return
        self._append(Segment(kind="tool", text=format_tool_use(tool_use)))

    def _append(self, segment: Segment) -> None:
        try:
            with self._lock:
                if self._finalized:
                    return
                self._segments.append(segment)
                self._full_text = self._join()
                self._stop_typing_locked()
                if self._create_failed:
                    return
                if self._post_id is None:
                    self._create_initial_post()
                else:
                    self._schedule_update()
        except Exception:
            logger.exception(f"Streaming error (thread {short_id(self.thread_id)})")

    def on_complete(self, stats_line: Optional[str] = None) -> None:
        try:
            with self._lock:
                self._finalize(stats_line)
        except Exception:
            logger.exception(f"Completion error (thread {short_id(self.thread_id)})")

    # ---------------------------------------------------------------- internals (lock held)

    def _join(self) -> str:
        return SEGMENT_SEPARATOR.join(s.text for s in self._segments)

    def _create_initial_post(self) -> None:
        try:
            post_id = self.adapter.create_post(self.channel_id, self._full_text, root_id=self.thread_id)
        except Exception as e:
            logger.warning(f"create_post raised for thread {short_id(self.thread_id)}: {e}")
            post_id = None
        if not post_id:
            self._create_failed = True
            logger.error(
                f"Failed to create post for thread {short_id(self.thread_id)}; dropping the rest of this response",
                extra={"thread_id": self.thread_id, "channel_id": self.channel_id},
            )
            return
        self._post_id = post_id
        self._last_update_at = time.monotonic()

    def _schedule_update(self) -> None:
        elapsed = time.monotonic() - self._last_update_at
        if elapsed >= self.debounce_seconds:
            self._update_post()
            return
        if self._timer is not None:
            return
        self._timer_gen += 1
        timer = threading.Timer(self.debounce_seconds - elapsed, self._on_debounce_timer, args=(self._timer_gen,))
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _on_debounce_timer(self, gen: int) -> None:
        try:
            with self._lock:
                if gen != self._timer_gen:
                    return
                self._timer = None
                if self._finalized or self._post_id is None:
                    return
                self._update_post()
        except Exception:
            logger.exception(f"Debounced update failed (thread {short_id(self.thread_id)})")

    def _cancel_timer(self) -> None:
        timer = self._timer
        self._timer = None
        self._timer_gen += 1
        if timer is not None:
            timer.cancel()

    def _update_post(self) -> None:
        self._cancel_timer()
        if self._post_id is None:
            return
        self.adapter.update_post(self._post_id, self._full_text)
        self._last_update_at = time.monotonic()

    def _finalize(self, stats_line: Optional[str]) -> None:
        if self._finalized:
            return
        self._finalized = True
        self._stop_typing_locked()
        self._cancel_timer()
        if self._create_failed or self._post_id is None:
            return

        footer = f"\n\n---\n{stats_line}" if stats_line else ""
        has_tool = any(s.kind == "tool" for s in self._segments)
        last_text = None
        for i in range(len(self._segments) - 1, -1, -1):
            if self._segments[i].kind == "text":
                last_text = i
                break

        if not has_tool or last_text is None:
            self._full_text = self._full_text + footer
            self._update_post()
            return

        # Tool calls were interleaved: move the final answer into its own post so it notifies.
        answer = self._segments.pop(last_text)
        self._full_text = self._join()
        if self._full_text:
            self._update_post()
        try:
            new_id = self.adapter.create_post(self.channel_id, answer.text + footer, root_id=self.thread_id)
        except Exception as e:
            logger.warning(f"create_post raised for final answer (thread {short_id(self.thread_id)}): {e}")
            new_id = None
        if not new_id:
            logger.error(f"Failed to post final answer for thread {short_id(self.thread_id)}")

"""Relay core: chat posts in, streamed Claude replies out.

Handles:
- Inbound: allowed-user filtering, ! commands, per-thread admission
- Turns: session lookup/creation, streaming response wiring, completion
- Housekeeping: idle session sweep, startup resume, shutdown pause
"""
from __future__ import annotations

import logging
import os
import signal
import threading
from pathlib import Path
from typing import Dict, Optional

from ..config import RelayConfig
from ..contracts.v1.events import SystemMessage, ToolUse
from ..kernel.message_queue import MessageQueue, QueuedMessage
from ..ports.chat.adapters.base import ChatAdapter, InboundMessage
from ..ports.chat.commands import CommandType, ParsedCommand, format_help, parse_command
from ..runners.claude import ClaudeSession, MessageContent, SessionListener, SessionStats
from ..util.format import format_number, short_id
from ..util.time import seconds_since
from .sessions import SessionConfig, SessionManager
from .streaming import StreamingResponse
from .thread_context import build_contextual_message

logger = logging.getLogger("threadrelay.relay")

IDLE_CHECK_INTERVAL_SECONDS = 300.0
POLL_INTERVAL_SECONDS = 1.0


def format_stats_line(stats: SessionStats) -> Optional[str]:
    """Footer for a finished reply, e.g. "12,345 tokens · 42% context"."""
    total = stats.total_tokens
    if total <= 0:
        return None
    parts = [f"{format_number(total)} tokens"]
    pct = stats.context_percent()
    if pct is not None:
        parts.append(f"{pct:.0f}% context")
    return " · ".join(parts)


def format_stats_table(stats: SessionStats) -> str:
    total_in = stats.total_input_tokens
    total_out = stats.total_output_tokens
    lines = ["#### :bar_chart: Session Stats", "| Metric | Value |", "|--------|-------|"]
    lines.append(
        f"| **Total tokens** | {format_number(total_in + total_out)} "
        f"(in: {format_number(total_in)}, out: {format_number(total_out)}) |"
    )
    pct = stats.context_percent()
    if pct is not None:
        lines.append(f"| **Context used** | {pct:.1f}% of {format_number(stats.context_window)} |")
    if stats.model_id:
        lines.append(f"| **Model** | `{stats.model_id}` |")
    ttft = stats.time_to_first_token()
    if ttft is not None:
        lines.append(f"| **Last TTFT** | {ttft:.1f}s |")
    tps = stats.tokens_per_second()
    if tps is not None:
        lines.append(f"| **Last speed** | {tps:.0f} tok/s |")
    lines.append(f"| **Cost** | ${stats.total_cost:.4f} |")
    return "\n".join(lines)


class _TurnListener(SessionListener):
    """Routes one turn's session events into its StreamingResponse."""

    def __init__(self, relay: "Relay", thread_id: str, response: StreamingResponse) -> None:
        self.relay = relay
        self.thread_id = thread_id
        self.response = response

    def on_text(self, text: str) -> None:
        self.response.on_text(text)

    def on_system(self, event: SystemMessage) -> None:
        self.response.on_text(event.message)

    def on_tool_use(self, tool_use: ToolUse) -> None:
        self.response.on_tool_use(tool_use)

    def on_complete(self, session: ClaudeSession) -> None:
        self.relay.handle_turn_complete(self.thread_id, session, self.response)


class Relay:
    def __init__(
        self,
        *,
        config: RelayConfig,
        adapter: ChatAdapter,
        sessions: SessionManager,
        queue: Optional[MessageQueue] = None,
    ) -> None:
        self.config = config
        self.adapter = adapter
        self.sessions = sessions
        self.queue = queue or MessageQueue()

        self._lock = threading.Lock()
        self._active: Dict[str, StreamingResponse] = {}
        self._working_dirs: Dict[str, str] = {}
        self._permission_modes: Dict[str, bool] = {}
        self._running = False
        self._stop = threading.Event()
        self._idle_thread: Optional[threading.Thread] = None

    # ---------------------------------------------------------------- inbound

    def handle_inbound(self, msg: InboundMessage) -> None:
        if not self.config.is_allowed(msg.username):
            logger.debug(f"Ignoring message from non-allowed user: {msg.username}")
            return
        parsed = parse_command(msg.text)
        if parsed.type == CommandType.MESSAGE:
            self.enqueue_message(
                QueuedMessage(
                    thread_id=msg.thread_id,
                    text=msg.text,
                    channel_id=msg.channel_id,
                    username=msg.username,
                    post_id=msg.post_id,
                )
            )
            return
        self.handle_command(msg, parsed)

    def enqueue_message(self, msg: QueuedMessage) -> None:
        if self.queue.claim_or_enqueue(msg):
            self.process_message(msg)
        else:
            logger.debug(
                f"Thread {short_id(msg.thread_id)} busy; queued ({self.queue.pending_count(msg.thread_id)} pending)"
            )

    def resolve_working_dir(self, thread_id: str, channel_id: Optional[str]) -> str:
        with self._lock:
            override = self._working_dirs.get(thread_id)
        return override or self.config.working_dir_for_channel(channel_id) or os.getcwd()

    def process_message(self, msg: QueuedMessage) -> bool:
        thread_id = msg.thread_id
        channel_id = msg.channel_id or self.config.channel_id
        sent = False
        try:
            # A session id that changes across get_or_create means a brand new session with no memory.
            prior_id = self.sessions.claude_session_id_for(thread_id)
            with self._lock:
                skip_permissions = self._permission_modes.get(thread_id)
            session = self.sessions.get_or_create(
                thread_id,
                SessionConfig(
                    channel_id=channel_id,
                    working_dir=self.resolve_working_dir(thread_id, channel_id),
                    username=msg.username or None,
                    skip_permissions=skip_permissions,
                ),
            )
            content: MessageContent = msg.text
            if session.session_id != prior_id:
                content = build_contextual_message(self.adapter, thread_id, msg.text, post_id=msg.post_id or None)
            response = StreamingResponse(thread_id=thread_id, channel_id=channel_id, adapter=self.adapter)
            with self._lock:
                self._active[thread_id] = response
            response.start_typing()
            session.set_listener(_TurnListener(self, thread_id, response))
            sent = session.send_message(content)
            if sent:
                self.sessions.touch(thread_id)
        except Exception:
            logger.exception(f"Error processing message for thread {short_id(thread_id)}", extra={"thread_id": thread_id})
        finally:
            if not sent:
                self._drop_active(thread_id)
                self.queue.release(thread_id)
        return sent

    def process_next_queued(self, thread_id: str) -> None:
        msg = self.queue.dequeue(thread_id)
        if msg is not None:
            self.process_message(msg)

    def handle_turn_complete(self, thread_id: str, session: ClaudeSession, response: StreamingResponse) -> None:
        with self._lock:
            current = self._active.get(thread_id)
            if current is response:
                self._active.pop(thread_id, None)
        if current is not response:
            # The turn was stopped; the thread's claim now belongs to whoever came next.
            logger.warning(f"Completion for thread {short_id(thread_id)} without an active response (likely stopped)")
            response.stop_typing()
            return
        response.on_complete(format_stats_line(session.stats))
        logger.info(session.stats.format_summary(f"Thread {short_id(thread_id)} complete"), extra={"thread_id": thread_id})
        self.sessions.save_stats(thread_id)
        self.process_next_queued(thread_id)

    def _drop_active(self, thread_id: str) -> None:
        with self._lock:
            response = self._active.pop(thread_id, None)
        if response is not None:
            response.stop_typing()

    # ---------------------------------------------------------------- commands

    def handle_command(self, msg: InboundMessage, parsed: ParsedCommand) -> None:
        thread_id = msg.thread_id
        logger.info(f"Command {parsed.type.value} in thread {short_id(thread_id)}", extra={"command": parsed.type.value})
        if parsed.type == CommandType.STOP:
            self._handle_stop(msg)
        elif parsed.type == CommandType.KILL:
            self._handle_kill(msg)
        elif parsed.type == CommandType.ESCAPE:
            self._handle_escape(msg)
        elif parsed.type == CommandType.COMPACT:
            self._handle_compact(msg)
        elif parsed.type == CommandType.STATS:
            self._handle_stats(msg)
        elif parsed.type == CommandType.CD:
            self._handle_cd(msg, parsed.text)
        elif parsed.type == CommandType.PERMISSIONS:
            self._handle_permissions(msg, parsed.text)
        elif parsed.type == CommandType.HELP:
            self._reply(msg, format_help())

    def _reply(self, msg: InboundMessage, text: str) -> None:
        self.adapter.reply(msg.channel_id, msg.thread_id, text)

    def _stop_thread(self, thread_id: str) -> None:
        self._drop_active(thread_id)
        self.queue.release(thread_id)

    def _handle_stop(self, msg: InboundMessage) -> None:
        self._stop_thread(msg.thread_id)
        self.sessions.stop_session(msg.thread_id)
        self._reply(msg, ":stop_sign: Session stopped.")

    def _handle_kill(self, msg: InboundMessage) -> None:
        session = self.sessions.get(msg.thread_id)
        pid = session.pid if session is not None else None
        if pid is not None and session is not None and session.is_alive():
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
        self._stop_thread(msg.thread_id)
        self.sessions.stop_session(msg.thread_id)
        self._reply(msg, ":skull: Session killed.")

    def _handle_escape(self, msg: InboundMessage) -> None:
        session = self.sessions.get(msg.thread_id)
        if session is not None and session.interrupt():
            self._reply(msg, ":warning: Interrupted.")
        else:
            self._reply(msg, "No active session to interrupt.")

    def _handle_compact(self, msg: InboundMessage) -> None:
        self.enqueue_message(
            QueuedMessage(
                thread_id=msg.thread_id,
                text="/compact",
                channel_id=msg.channel_id,
                username=msg.username,
                post_id=msg.post_id,
            )
        )

    def _handle_stats(self, msg: InboundMessage) -> None:
        session = self.sessions.get(msg.thread_id)
        if session is not None:
            self._reply(msg, format_stats_table(session.stats))
            return
        rec = self.sessions.persisted_session_for(msg.thread_id)
        if rec is None:
            self._reply(msg, "No session for this thread.")
            return
        total_in = rec.total_input_tokens
        total_out = rec.total_output_tokens
        lines = [
            "#### :bar_chart: Session Stats (stopped)",
            "| Metric | Value |",
            "|--------|-------|",
            f"| **Total tokens** | {format_number(total_in + total_out)} "
            f"(in: {format_number(total_in)}, out: {format_number(total_out)}) |",
            f"| **Cost** | ${rec.total_cost:.4f} |",
        ]
        self._reply(msg, "\n".join(lines))

    def _handle_cd(self, msg: InboundMessage, path: str) -> None:
        target = Path(path).expanduser()
        if not target.is_dir():
            self._reply(msg, f":x: Directory not found: `{path}`")
            return
        resolved = str(target.resolve())
        with self._lock:
            self._working_dirs[msg.thread_id] = resolved
        self._reply(msg, f":file_folder: Working directory for the next session set to `{resolved}`")

    def _handle_permissions(self, msg: InboundMessage, mode: str) -> None:
        if not mode:
            with self._lock:
                override = self._permission_modes.get(msg.thread_id)
            skip = self.config.skip_permissions if override is None else override
            current = "auto" if skip else "interactive"
            self._reply(msg, f":lock: Permission mode for this thread: `{current}`")
            return
        with self._lock:
            self._permission_modes[msg.thread_id] = mode == "auto"
        self._reply(msg, f":lock: Permission mode set to `{mode}`; it applies when this thread starts a new session.")

    # ---------------------------------------------------------------- housekeeping

    def check_idle_sessions(self) -> int:
        """Stop sessions idle for longer than the configured timeout. Returns how many were stopped."""
        if self.sessions.store is None:
            return 0
        stopped = 0
        for thread_id, rec in self.sessions.store.load().items():
            if rec.is_paused:
                continue
            idle = seconds_since(rec.last_activity_at)
            if idle is None or idle <= self.config.idle_timeout_seconds:
                continue
            logger.info(f"Stopping idle session for thread {short_id(thread_id)} (idle {round(idle / 60)}min)")
            self._stop_thread(thread_id)
            self.sessions.stop_session(thread_id)
            stopped += 1
        return stopped

    def _idle_loop(self) -> None:
        while not self._stop.wait(IDLE_CHECK_INTERVAL_SECONDS):
            try:
                self.check_idle_sessions()
            except Exception:
                logger.exception("Idle checker error")

    # ---------------------------------------------------------------- lifecycle

    def start(self) -> bool:
        if not self.adapter.connect():
            logger.error("Failed to connect chat adapter")
            return False
        resumed = self.sessions.resume_all()
        if resumed:
            logger.info(f"Resumed {resumed} session(s)")
        self._stop.clear()
        self._idle_thread = threading.Thread(target=self._idle_loop, name="threadrelay-idle", daemon=True)
        self._idle_thread.start()
        self._running = True
        logger.info("Relay started")
        return True

    def run_once(self) -> None:
        for msg in self.adapter.poll():
            self.handle_inbound(msg)

    def run_forever(self, poll_interval: float = POLL_INTERVAL_SECONDS) -> None:
        while self._running:
            try:
                self.run_once()
            except Exception:
                logger.exception("Poll loop error")
            self._stop.wait(poll_interval)

    def shutdown(self) -> None:
        if not self._running and self._idle_thread is None:
            return
        logger.info("Shutting down relay")
        self._running = False
        self._stop.set()
        with self._lock:
            responses = list(self._active.values())
            self._active.clear()
        for response in responses:
            response.stop_typing()
        self.sessions.pause_all()
        self.adapter.disconnect()
        self._idle_thread = None

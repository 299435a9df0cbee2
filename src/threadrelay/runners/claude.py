"""Claude CLI subprocess runner.

One ClaudeSession owns one `claude` process speaking the stream-json protocol:
user messages go in on stdin as JSON lines, events come back on stdout as JSON
lines and are handed to a SessionListener from a reader thread.
"""
from __future__ import annotations

import json
import logging
import os
import shlex
import signal
import subprocess
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from ..contracts.v1.events import SystemMessage, ToolUse
from ..util.format import short_id
from ..util.fs import atomic_write_json

logger = logging.getLogger("threadrelay.runners.claude")

DEFAULT_PERMISSION_TOOL = "mcp__threadrelay__permission_prompt"

# Variables stripped from the child env so the CLI does not think it runs inside our tmux pane.
_STRIPPED_ENV = ("TMUX", "TMUX_PANE")

_TURN_FIELDS = (
    "turn_input_tokens",
    "turn_output_tokens",
    "cache_read_tokens",
    "cache_creation_tokens",
    "message_sent_at",
    "first_token_at",
    "complete_at",
)

# A user message body: plain text or a list of content blocks (text, image, ...).
MessageContent = Union[str, List[Dict[str, Any]]]


@dataclass
class SessionStats:
    """Usage counters and turn timing for one session."""
    total_cost: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    turn_input_tokens: int = 0
    turn_output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    context_window: Optional[int] = None
    model_id: Optional[str] = None
    message_sent_at: Optional[float] = None
    first_token_at: Optional[float] = None
    complete_at: Optional[float] = None

    @property
    def total_tokens(self) -> int:
        return self.total_input_tokens + self.total_output_tokens

    def time_to_first_token(self) -> Optional[float]:
        if self.message_sent_at is None or self.first_token_at is None:
            return None
        return self.first_token_at - self.message_sent_at

    def tokens_per_second(self) -> Optional[float]:
        if self.first_token_at is None or self.complete_at is None:
            return None
        if self.turn_output_tokens <= 0:
            return None
        duration = self.complete_at - self.first_token_at
        if duration <= 0:
            return None
        return self.turn_output_tokens / duration

    def context_percent(self) -> Optional[float]:
        if not self.context_window or self.context_window <= 0:
            return None
        used = self.turn_input_tokens + self.cache_read_tokens + self.cache_creation_tokens
        if used <= 0:
            return None
        return used / self.context_window * 100.0

    def reset_turn(self) -> None:
        self.turn_input_tokens = 0
        self.turn_output_tokens = 0
        self.cache_read_tokens = 0
        self.cache_creation_tokens = 0
        self.message_sent_at = None
        self.first_token_at = None
        self.complete_at = None

    def begin_turn(self) -> Tuple[Any, ...]:
        """Reset per-turn counters for a new outbound message.

        Returns the previous turn's values so a send that never reached the
        CLI can put them back with restore_turn().
        """
        saved = tuple(getattr(self, name) for name in _TURN_FIELDS)
        self.reset_turn()
        self.message_sent_at = time.time()
        return saved

    def restore_turn(self, saved: Tuple[Any, ...]) -> None:
        for name, value in zip(_TURN_FIELDS, saved):
            setattr(self, name, value)

    def apply_result(self, event: Dict[str, Any]) -> None:
        """Fold a `result` event into the counters."""
        cost = event.get("total_cost_usd")
        if isinstance(cost, (int, float)) and not isinstance(cost, bool):
            self.total_cost = float(cost)
        self._apply_usage(event.get("usage"))
        self._apply_model_usage(event.get("modelUsage"))

    def _apply_usage(self, usage: Any) -> None:
        if not isinstance(usage, dict):
            return
        self.turn_input_tokens = _as_int(usage.get("input_tokens"))
        self.turn_output_tokens = _as_int(usage.get("output_tokens"))
        self.cache_read_tokens = _as_int(usage.get("cache_read_input_tokens"))
        self.cache_creation_tokens = _as_int(usage.get("cache_creation_input_tokens"))

    def _apply_model_usage(self, model_usage: Any) -> None:
        if not isinstance(model_usage, dict):
            return
        entries = {str(k): v for k, v in model_usage.items() if isinstance(v, dict)}
        if not entries:
            return
        # The CLI reports per-model session totals; the model with the biggest window is "the" model.
        primary_id, primary = max(entries.items(), key=lambda kv: _as_int(kv[1].get("contextWindow")))
        self.model_id = primary_id
        self.total_input_tokens = sum(_as_int(v.get("inputTokens")) for v in entries.values())
        self.total_output_tokens = sum(_as_int(v.get("outputTokens")) for v in entries.values())
        window = _as_int(primary.get("contextWindow"))
        if window:
            self.context_window = window

    def format_summary(self, prefix: str) -> str:
        parts = [
            f"{prefix}:",
            f"{self.total_tokens} tokens (turn: in:{self.turn_input_tokens} out:{self.turn_output_tokens})",
        ]
        pct = self.context_percent()
        if pct is not None:
            parts.append(f"{pct:.0f}% context")
        ttft = self.time_to_first_token()
        if ttft is not None:
            parts.append(f"TTFT: {ttft:.1f}s")
        tps = self.tokens_per_second()
        if tps is not None:
            parts.append(f"{tps:.0f} tok/s")
        parts.append(f"cost=${self.total_cost:.4f}")
        if self.model_id:
            parts.append(f"model={self.model_id}")
        return " | ".join(parts)


def _join_reader(thread: Optional[threading.Thread], timeout: float) -> None:
    # kill() can run on the stdout reader itself (a listener replacing a dead session).
    if thread is None or thread is threading.current_thread():
        return
    thread.join(timeout=timeout)


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class SessionListener:
    """Receives session events on the stdout reader thread. Override what you need."""

    def on_text(self, text: str) -> None:
        pass

    def on_tool_use(self, tool_use: ToolUse) -> None:
        pass

    def on_system(self, event: SystemMessage) -> None:
        pass

    def on_complete(self, session: "ClaudeSession") -> None:
        pass


@dataclass
class SessionOptions:
    """Launch options for a ClaudeSession."""
    command: List[str] = field(default_factory=lambda: ["claude"])
    resume: bool = False
    working_dir: Optional[str] = None
    username: Optional[str] = None
    system_prompt: Optional[str] = None
    # None means run with --dangerously-skip-permissions.
    permission_env: Optional[Dict[str, str]] = None
    permission_command: List[str] = field(default_factory=lambda: ["threadrelay-permission-server"])
    permission_tool: str = DEFAULT_PERMISSION_TOOL

    @staticmethod
    def split_command(value: str) -> List[str]:
        return shlex.split(value) if value.strip() else []


class ClaudeSession:
    STDOUT_JOIN_TIMEOUT = 3.0
    STDERR_JOIN_TIMEOUT = 1.0

    def __init__(
        self,
        *,
        session_id: Optional[str] = None,
        options: Optional[SessionOptions] = None,
        listener: Optional[SessionListener] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ) -> None:
        self.session_id = session_id or str(uuid.uuid4())
        self.options = options or SessionOptions()
        self.listener: SessionListener = listener or SessionListener()
        self.stats = SessionStats()
        self._popen = popen
        self._proc: Optional[subprocess.Popen] = None
        self._stdin_lock = threading.Lock()
        self._stdout_thread: Optional[threading.Thread] = None
        self._stderr_thread: Optional[threading.Thread] = None
        self._mcp_config_path: Optional[Path] = None

    @property
    def short_id(self) -> str:
        return short_id(self.session_id)

    @property
    def pid(self) -> Optional[int]:
        proc = self._proc
        return proc.pid if proc is not None else None

    def is_alive(self) -> bool:
        proc = self._proc
        return proc is not None and proc.poll() is None

    def set_listener(self, listener: Optional[SessionListener]) -> None:
        self.listener = listener or SessionListener()

    # ---------------------------------------------------------------- lifecycle

    def start(self) -> None:
        args = self.build_args()
        env = {k: v for k, v in os.environ.items() if k not in _STRIPPED_ENV}
        mode = "resume" if self.options.resume else "new"
        logger.info(
            f"Spawning Claude session {self.session_id} ({mode}); resume with: claude --resume {self.session_id}",
            extra={"session_id": self.session_id},
        )
        self._proc = self._popen(
            args,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=self.options.working_dir or None,
            env=env,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )
        self._stdout_thread = threading.Thread(
            target=self._read_stdout, name=f"threadrelay-stdout:{self.short_id}", daemon=True
        )
        self._stderr_thread = threading.Thread(
            target=self._read_stderr, name=f"threadrelay-stderr:{self.short_id}", daemon=True
        )
        self._stdout_thread.start()
        self._stderr_thread.start()

    def build_args(self) -> List[str]:
        opts = self.options
        args = list(opts.command) + [
            "--input-format", "stream-json",
            "--output-format", "stream-json",
            "--verbose",
        ]
        args += ["--resume", self.session_id] if opts.resume else ["--session-id", self.session_id]
        if opts.permission_env is None:
            args.append("--dangerously-skip-permissions")
        else:
            args += ["--permission-prompt-tool", opts.permission_tool, "--mcp-config", str(self._mcp_config())]
        if opts.system_prompt:
            args += ["--append-system-prompt", opts.system_prompt]
        return args

    def _mcp_config(self) -> Path:
        if self._mcp_config_path is not None:
            return self._mcp_config_path
        command: Sequence[str] = self.options.permission_command or ["threadrelay-permission-server"]
        env = dict(self.options.permission_env or {})
        env["THREADRELAY_CURRENT_USERNAME"] = self.options.username or ""
        doc = {
            "mcpServers": {
                "threadrelay": {
                    "command": command[0],
                    "args": list(command[1:]),
                    "env": env,
                }
            }
        }
        # mkstemp creates the temp file 0600 and os.replace keeps the mode.
        path = Path(tempfile.gettempdir()) / f"threadrelay-mcp-{self.session_id}.json"
        atomic_write_json(path, doc)
        self._mcp_config_path = path
        return path

    def send_message(self, content: MessageContent) -> bool:
        if not self.is_alive():
            logger.warning(f"Cannot send message to dead session {self.short_id}: process not running")
            return False
        stdin = self._proc.stdin if self._proc is not None else None
        if stdin is None:
            return False
        payload = json.dumps({"type": "user", "message": {"role": "user", "content": content}}, ensure_ascii=False)
        with self._stdin_lock:
            # Turn state starts before the write: the reader may see the result right after it.
            saved = self.stats.begin_turn()
            try:
                stdin.write(payload + "\n")
                stdin.flush()
            except (BrokenPipeError, OSError, ValueError) as e:
                self.stats.restore_turn(saved)
                logger.error(f"Failed to write to Claude {self.short_id}: {e}")
                return False
        preview = content[:60] if isinstance(content, str) else f"<{len(content)} content blocks>"
        logger.debug(f"Sent message to Claude {self.short_id}: {preview}")
        return True

    def interrupt(self) -> bool:
        """Send SIGINT to the running turn; the process stays up."""
        proc = self._proc
        if proc is None or proc.poll() is not None:
            return False
        try:
            proc.send_signal(signal.SIGINT)
        except ProcessLookupError:
            return False
        return True

    def kill(self) -> None:
        proc = self._proc
        if proc is None:
            self._remove_mcp_config()
            return
        logger.info(f"Killing Claude session {self.short_id} (pid={proc.pid})", extra={"session_id": self.session_id})
        self._terminate(proc)
        self._close_stdin(proc)
        _join_reader(self._stdout_thread, self.STDOUT_JOIN_TIMEOUT)
        _join_reader(self._stderr_thread, self.STDERR_JOIN_TIMEOUT)
        self._remove_mcp_config()

    def _terminate(self, proc: subprocess.Popen) -> None:
        try:
            proc.send_signal(signal.SIGINT)
            time.sleep(0.1)
            for _ in range(2):
                if proc.poll() is not None:
                    return
                time.sleep(1)
            if proc.poll() is None:
                proc.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            proc.wait(timeout=1)
        except subprocess.TimeoutExpired:
            logger.warning(f"Claude session {self.short_id} still running after SIGTERM (pid={proc.pid})")

    @staticmethod
    def _close_stdin(proc: subprocess.Popen) -> None:
        if proc.stdin is None:
            return
        try:
            proc.stdin.close()
        except (OSError, ValueError):
            pass

    def _remove_mcp_config(self) -> None:
        path = self._mcp_config_path
        if path is None:
            return
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Cannot remove MCP config {path}: {e}")
        self._mcp_config_path = None

    # ---------------------------------------------------------------- readers

    def _read_stdout(self) -> None:
        proc = self._proc
        if proc is None or proc.stdout is None:
            return
        try:
            for line in proc.stdout:
                self.handle_line(line)
        except (OSError, ValueError):
            logger.debug(f"Claude stdout stream closed (session {self.short_id})")

    def _read_stderr(self) -> None:
        proc = self._proc
        if proc is None or proc.stderr is None:
            return
        try:
            for line in proc.stderr:
                line = line.strip()
                if line:
                    logger.debug(f"Claude stderr ({self.short_id}): {line}")
        except (OSError, ValueError):
            logger.debug(f"Claude stderr stream closed (session {self.short_id})")

    def handle_line(self, raw: str) -> None:
        line = raw.strip()
        if not line:
            return
        try:
            event = json.loads(line)
        except ValueError as e:
            logger.warning(f"Unparsable Claude stdout (session {self.short_id}): {line[:200]} ({e})")
            return
        if not isinstance(event, dict):
            return
        try:
            self._dispatch(event)
        except Exception:
            logger.exception(f"Listener failed on {event.get('type')} event (session {self.short_id})")

    def _dispatch(self, event: Dict[str, Any]) -> None:
        kind = event.get("type")
        if kind == "system":
            self._handle_system(event)
        elif kind == "assistant":
            self._handle_assistant(event)
        elif kind == "result":
            self._handle_result(event)

    def _handle_system(self, event: Dict[str, Any]) -> None:
        subtype = event.get("subtype")
        logger.debug(f"Claude system ({self.short_id}): {subtype}")
        message = event.get("message")
        if message:
            self.listener.on_system(
                SystemMessage(subtype=str(subtype) if subtype is not None else None, message=str(message))
            )

    def _handle_assistant(self, event: Dict[str, Any]) -> None:
        message = event.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            return
        blocks = [b for b in content if isinstance(b, dict)]

        text = "".join(str(b.get("text") or "") for b in blocks if b.get("type") == "text")
        if text:
            if self.stats.first_token_at is None:
                self.stats.first_token_at = time.time()
            self.listener.on_text(text)

        for b in blocks:
            if b.get("type") != "tool_use":
                continue
            tool_input = b.get("input")
            self.listener.on_tool_use(
                ToolUse(
                    id=str(b.get("id") or ""),
                    name=str(b.get("name") or ""),
                    input=tool_input if isinstance(tool_input, dict) else {},
                )
            )

    def _handle_result(self, event: Dict[str, Any]) -> None:
        self.stats.complete_at = time.time()
        self.stats.apply_result(event)
        logger.info(self.stats.format_summary("Claude result"), extra={"session_id": self.session_id})
        self.listener.on_complete(self)

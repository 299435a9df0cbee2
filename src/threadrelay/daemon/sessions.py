"""Registry of live Claude sessions keyed by chat thread id.

The registry lock only guards the dict. Spawning and killing processes happens
outside it, and registration re-checks the map so a thread never ends up with
two live sessions.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from ..config import RelayConfig
from ..contracts.v1.session import PersistedSession
from ..kernel.session_store import SessionStore
from ..runners.claude import ClaudeSession, SessionOptions
from ..util.format import short_id
from ..util.time import utc_now_iso

logger = logging.getLogger("threadrelay.sessions")


@dataclass
class SessionConfig:
    """Per-request hints for a thread's session."""
    channel_id: Optional[str] = None
    working_dir: Optional[str] = None
    username: Optional[str] = None
    # None follows RelayConfig.skip_permissions.
    skip_permissions: Optional[bool] = None


@dataclass
class SpawnParams:
    thread_id: str
    session_id: Optional[str] = None
    channel_id: Optional[str] = None
    working_dir: Optional[str] = None
    username: Optional[str] = None
    skip_permissions: Optional[bool] = None

    @property
    def resume(self) -> bool:
        return bool(self.session_id)


SessionFactory = Callable[[SpawnParams], ClaudeSession]


def build_session_factory(config: Optional[RelayConfig]) -> SessionFactory:
    """Factory that turns SpawnParams into an unstarted ClaudeSession."""

    def _factory(params: SpawnParams) -> ClaudeSession:
        if config is None:
            return ClaudeSession(
                session_id=params.session_id,
                options=SessionOptions(resume=params.resume, working_dir=params.working_dir, username=params.username),
            )
        options = SessionOptions(
            command=SessionOptions.split_command(config.claude_bin) or ["claude"],
            resume=params.resume,
            working_dir=params.working_dir,
            username=params.username,
            system_prompt=config.read_system_prompt(),
            permission_env=config.permission_env(
                channel_id=params.channel_id, thread_id=params.thread_id, skip=params.skip_permissions
            ),
            permission_command=SessionOptions.split_command(config.permission_command),
            permission_tool=config.permission_tool,
        )
        return ClaudeSession(session_id=params.session_id, options=options)

    return _factory


class SessionManager:
    def __init__(
        self,
        *,
        config: Optional[RelayConfig] = None,
        store: Optional[SessionStore] = None,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self.config = config
        self.store = store
        self._factory = session_factory or build_session_factory(config)
        self._lock = threading.Lock()
        self._sessions: Dict[str, ClaudeSession] = {}

    # ---------------------------------------------------------------- lookup

    def get(self, thread_id: str) -> Optional[ClaudeSession]:
        with self._lock:
            return self._sessions.get(thread_id)

    def thread_ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions.keys())

    def persisted_session_for(self, thread_id: str) -> Optional[PersistedSession]:
        if self.store is None:
            return None
        return self.store.get(thread_id)

    def claude_session_id_for(self, thread_id: str) -> Optional[str]:
        """Live session id first, then the persisted one."""
        session = self.get(thread_id)
        if session is not None:
            return session.session_id
        rec = self.persisted_session_for(thread_id)
        return rec.claude_session_id if rec is not None else None

    # ---------------------------------------------------------------- creation

    def get_or_create(self, thread_id: str, config: Optional[SessionConfig] = None) -> ClaudeSession:
        cfg = config or SessionConfig()
        sid = short_id(thread_id)
        with self._lock:
            session = self._sessions.get(thread_id)
            if session is not None and session.is_alive():
                logger.debug(f"Reusing session for thread {sid}")
                return session

        persisted = self.persisted_session_for(thread_id)
        if persisted is not None and persisted.claude_session_id:
            session, record = self._resume_or_create(thread_id, cfg, persisted)
        else:
            session, record = self._create(thread_id, cfg)
        return self._register(thread_id, session, record)

    def _resume_or_create(
        self, thread_id: str, cfg: SessionConfig, persisted: PersistedSession
    ) -> Tuple[ClaudeSession, PersistedSession]:
        channel_id = cfg.channel_id or persisted.channel_id
        working_dir = cfg.working_dir or persisted.working_dir
        logger.info(f"Attempting to resume session for thread {short_id(thread_id)}", extra={"thread_id": thread_id})
        try:
            session = self._spawn(
                SpawnParams(
                    thread_id=thread_id,
                    session_id=persisted.claude_session_id,
                    channel_id=channel_id,
                    working_dir=working_dir,
                    username=cfg.username,
                    skip_permissions=cfg.skip_permissions,
                )
            )
        except Exception as e:
            logger.warning(f"Resume failed for thread {short_id(thread_id)}: {e}, creating new session")
            return self._create(thread_id, cfg)
        record = persisted.model_copy(
            update={
                "channel_id": channel_id,
                "working_dir": working_dir,
                "is_paused": False,
                "last_activity_at": utc_now_iso(),
            }
        )
        return session, record

    def _create(self, thread_id: str, cfg: SessionConfig) -> Tuple[ClaudeSession, PersistedSession]:
        logger.info(f"Creating new session for thread {short_id(thread_id)}", extra={"thread_id": thread_id})
        session = self._spawn(
            SpawnParams(
                thread_id=thread_id,
                channel_id=cfg.channel_id,
                working_dir=cfg.working_dir,
                username=cfg.username,
                skip_permissions=cfg.skip_permissions,
            )
        )
        record = PersistedSession(
            claude_session_id=session.session_id,
            channel_id=cfg.channel_id,
            working_dir=cfg.working_dir,
        )
        return session, record

    def _spawn(self, params: SpawnParams) -> ClaudeSession:
        session = self._factory(params)
        session.start()
        return session

    def _register(self, thread_id: str, session: ClaudeSession, record: PersistedSession) -> ClaudeSession:
        stale: Optional[ClaudeSession] = None
        with self._lock:
            existing = self._sessions.get(thread_id)
            if existing is not None and existing is not session and existing.is_alive():
                winner: Optional[ClaudeSession] = existing
            else:
                winner = None
                stale = existing
                self._sessions[thread_id] = session

        if winner is not None:
            logger.info(f"Thread {short_id(thread_id)} already has a live session; discarding {session.short_id}")
            session.kill()
            return winner
        if stale is not None and stale is not session:
            stale.kill()
        if self.store is not None:
            self.store.save(thread_id, record)
        return session

    def resume_all(self) -> int:
        """Start a resumed session for every persisted record that is not paused."""
        if self.store is None:
            return 0
        resumed = 0
        for thread_id, rec in self.store.load().items():
            if rec.is_paused or not rec.claude_session_id:
                continue
            logger.info(f"Resuming session for thread {short_id(thread_id)}", extra={"thread_id": thread_id})
            try:
                session = self._spawn(
                    SpawnParams(
                        thread_id=thread_id,
                        session_id=rec.claude_session_id,
                        channel_id=rec.channel_id,
                        working_dir=rec.working_dir,
                    )
                )
            except Exception as e:
                logger.warning(f"Startup resume failed for thread {short_id(thread_id)}: {e}")
                continue
            self._register(thread_id, session, rec)
            resumed += 1
        return resumed

    # ---------------------------------------------------------------- teardown

    def stop_session(self, thread_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(thread_id, None)
        if session is not None:
            session.kill()
        if self.store is not None:
            self.store.remove(thread_id)
        return session is not None

    def stop_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        logger.info(f"Stopping {len(sessions)} session(s)...")
        for session in sessions:
            session.kill()

    def pause_all(self) -> None:
        """Persist every live session as paused, then kill it."""
        with self._lock:
            items = list(self._sessions.items())
            self._sessions.clear()
        logger.info(f"Pausing {len(items)} session(s)...")
        for thread_id, session in items:
            if self.store is not None:
                base = self.store.get(thread_id) or PersistedSession(claude_session_id=session.session_id)
                self.store.save(thread_id, self._with_stats(base, session).model_copy(update={"is_paused": True}))
            session.kill()

    # ---------------------------------------------------------------- bookkeeping

    def touch(self, thread_id: str) -> None:
        if self.store is not None:
            self.store.touch(thread_id)

    def save_stats(self, thread_id: str) -> None:
        if self.store is None:
            return
        session = self.get(thread_id)
        if session is None:
            return
        rec = self.store.get(thread_id)
        if rec is None:
            return
        self.store.save(thread_id, self._with_stats(rec, session))

    @staticmethod
    def _with_stats(rec: PersistedSession, session: ClaudeSession) -> PersistedSession:
        stats = session.stats
        return rec.model_copy(
            update={
                "claude_session_id": session.session_id,
                "total_cost": stats.total_cost,
                "total_input_tokens": stats.total_input_tokens,
                "total_output_tokens": stats.total_output_tokens,
            }
        )

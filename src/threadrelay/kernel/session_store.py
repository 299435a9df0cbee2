from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from ..contracts.v1.session import PersistedSession
from ..paths import ensure_home
from ..util.fs import atomic_write_json, read_json
from ..util.time import utc_now_iso

logger = logging.getLogger("threadrelay.session_store")


def default_store_path() -> Path:
    return ensure_home() / "sessions.json"


class SessionStore:
    """sessions.json keyed by thread id.

    The file is read once into a cache; every mutation rewrites it atomically
    under the store lock, so concurrent save/touch calls never clobber each other.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path or default_store_path()
        self._lock = threading.Lock()
        self._cache: Optional[Dict[str, PersistedSession]] = None

    def load(self) -> Dict[str, PersistedSession]:
        with self._lock:
            return {k: v.model_copy() for k, v in self._ensure_cache().items()}

    def get(self, thread_id: str) -> Optional[PersistedSession]:
        with self._lock:
            rec = self._ensure_cache().get(thread_id)
            return rec.model_copy() if rec is not None else None

    def save(self, thread_id: str, record: PersistedSession) -> None:
        with self._lock:
            self._ensure_cache()[thread_id] = record.model_copy()
            self._write()

    def remove(self, thread_id: str) -> None:
        with self._lock:
            if self._ensure_cache().pop(thread_id, None) is not None:
                self._write()

    def touch(self, thread_id: str) -> None:
        with self._lock:
            rec = self._ensure_cache().get(thread_id)
            if rec is None:
                return
            rec.last_activity_at = utc_now_iso()
            rec.message_count += 1
            self._write()

    def _ensure_cache(self) -> Dict[str, PersistedSession]:
        if self._cache is None:
            self._cache = self._read()
        return self._cache

    def _read(self) -> Dict[str, PersistedSession]:
        raw = read_json(self.path)
        out: Dict[str, PersistedSession] = {}
        for thread_id, attrs in raw.items():
            if not isinstance(attrs, dict):
                continue
            try:
                out[str(thread_id)] = PersistedSession.model_validate(attrs)
            except ValidationError as e:
                logger.warning(f"Skipping malformed session record {thread_id}: {e.error_count()} error(s)")
        return out

    def _write(self) -> None:
        doc: Dict[str, Any] = {k: v.model_dump() for k, v in (self._cache or {}).items()}
        try:
            atomic_write_json(self.path, doc)
        except OSError as e:
            logger.error(f"Failed to write session store {self.path}: {e}")

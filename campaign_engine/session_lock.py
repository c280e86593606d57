"""
ChatLockManager - cross-process exclusive locks for one chat.

A pass for a chat mutates its conversation state, so at most one pass per
(session, chat) may run at a time. Default implementation uses filesystem
locks (fcntl), which also serialise threads that open the lock file
separately.
"""

from __future__ import annotations

import hashlib
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import fcntl

from campaign_engine.settings import settings


class ChatLockManager:
    """Acquire per-chat locks across processes and threads."""

    def __init__(self, lock_dir: Optional[str] = None):
        self._lock_dir = Path(
            lock_dir
            or os.getenv("SESSION_LOCK_DIR")
            or settings.get_nested("locks.lock_dir", "/tmp/campaign_engine_locks")
        ).resolve()
        self._lock_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def lock_key(session_name: str, chat_id: str) -> str:
        return f"{session_name}\x1f{chat_id}"

    def _lock_path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self._lock_dir / f"{digest}.lock"

    @contextmanager
    def lock(self, session_name: str, chat_id: str) -> Iterator[None]:
        """Context manager holding the chat lock; released on error paths too."""
        path = self._lock_path(self.lock_key(session_name, chat_id))
        with open(path, "a", encoding="utf-8") as handle:
            fcntl.flock(handle, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle, fcntl.LOCK_UN)

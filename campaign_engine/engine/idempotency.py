"""
Idempotency Guard.

At-most-once admission of provider messages keyed by
(session_name, provider_message_id). The check-and-insert runs inside one
immediate SQLite transaction, so concurrent redeliveries have exactly one
winner. Keys expire after idempotency.retention_seconds; admit also sweeps
every expired key at most once per idempotency.purge_interval_seconds.
"""

import os
import sqlite3
import time
from typing import Optional

from campaign_engine.engine.errors import DuplicateEvent
from campaign_engine.logger import logger
from campaign_engine.settings import settings


class IdempotencyGuard:
    """
    Usage:
        guard = IdempotencyGuard("data/engine.db")
        if not guard.admit("default", "false_5511@c.us_3EB0"):
            return "duplicate"

        guard.claim("default", "false_5511@c.us_3EB0")  # raises DuplicateEvent
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        retention_seconds: Optional[int] = None,
        purge_interval_seconds: Optional[float] = None,
    ):
        self.db_path = db_path or settings.storage.db_path
        self.retention_seconds = (
            retention_seconds if retention_seconds is not None else settings.idempotency.retention_seconds
        )
        self.purge_interval_seconds = (
            purge_interval_seconds
            if purge_interval_seconds is not None
            else settings.idempotency.purge_interval_seconds
        )
        self._last_purge = 0.0
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=settings.storage.sqlite_timeout_seconds,
            isolation_level=None,
        )
        conn.execute(f"PRAGMA busy_timeout={settings.storage.busy_timeout_ms}")
        return conn

    def _init_db(self) -> None:
        os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS processed_events (
                    session_name TEXT NOT NULL,
                    message_id   TEXT NOT NULL,
                    seen_at      REAL NOT NULL,
                    PRIMARY KEY (session_name, message_id)
                )
            """)
        finally:
            conn.close()

    def admit(self, session_name: str, provider_message_id: str) -> bool:
        """True for the first delivery inside the retention window, False after."""
        now = time.time()
        purge_due = now - self._last_purge >= self.purge_interval_seconds
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                "DELETE FROM processed_events WHERE session_name=? AND message_id=? AND seen_at < ?",
                (session_name, provider_message_id, now - self.retention_seconds),
            )
            purged = 0
            if purge_due:
                purged = conn.execute(
                    "DELETE FROM processed_events WHERE seen_at < ?",
                    (now - self.retention_seconds,),
                ).rowcount
            cursor = conn.execute(
                "INSERT OR IGNORE INTO processed_events (session_name, message_id, seen_at) VALUES (?, ?, ?)",
                (session_name, provider_message_id, now),
            )
            conn.execute("COMMIT")
        except sqlite3.Error:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

        if purge_due:
            self._last_purge = now
            if purged:
                logger.info("Expired idempotency keys purged", count=purged)

        admitted = cursor.rowcount == 1
        if not admitted:
            logger.info("Duplicate event rejected", session_name=session_name, message_id=provider_message_id)
        return admitted

    def claim(self, session_name: str, provider_message_id: str) -> None:
        """
        Admit or raise.

        Raises:
            DuplicateEvent: the key was already admitted inside the retention window
        """
        if not self.admit(session_name, provider_message_id):
            raise DuplicateEvent(session_name, provider_message_id)

    def forget(self, session_name: str, provider_message_id: str) -> None:
        """Release a key so the provider's redelivery is processed."""
        conn = self._connect()
        try:
            conn.execute(
                "DELETE FROM processed_events WHERE session_name=? AND message_id=?",
                (session_name, provider_message_id),
            )
        finally:
            conn.close()
        logger.warning("Idempotency key released", session_name=session_name, message_id=provider_message_id)

    def purge_expired(self) -> int:
        """Delete every key older than the retention window."""
        conn = self._connect()
        try:
            cursor = conn.execute(
                "DELETE FROM processed_events WHERE seen_at < ?",
                (time.time() - self.retention_seconds,),
            )
            removed = cursor.rowcount
        finally:
            conn.close()
        if removed:
            logger.info("Expired idempotency keys purged", count=removed)
        return removed

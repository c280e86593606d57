"""
SQLite persistence for campaigns, published graphs, conversation state and
chat bindings.

Tables:
  - campaigns:           campaign metadata, one row per campaign
  - campaign_graphs:     immutable published graph versions
  - conversation_states: ConversationState JSON by (campaign_id, chat_id)
  - chat_bindings:       campaign that owns a (session, chat) pair

Every store opens a short-lived connection per operation (WAL, busy
timeout), so instances are safe to share between threads.
"""

import json
import os
import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from campaign_engine.engine.errors import GraphConfigError, RoutingError
from campaign_engine.engine.graph import CampaignGraph, GraphIssue
from campaign_engine.engine.models import Campaign, CampaignStatus, ConversationState
from campaign_engine.logger import logger
from campaign_engine.settings import settings

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS campaigns (
        id                  TEXT PRIMARY KEY,
        name                TEXT NOT NULL,
        session_name        TEXT NOT NULL,
        status              TEXT NOT NULL,
        graph_version       INTEGER NOT NULL DEFAULT 0,
        reentry_after_close INTEGER NOT NULL DEFAULT 1,
        agent_instructions  TEXT,
        model               TEXT,
        company_id          TEXT,
        paused_at           REAL,
        updated_at          REAL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_campaigns_session ON campaigns (session_name, status)",
    """
    CREATE TABLE IF NOT EXISTS campaign_graphs (
        campaign_id  TEXT NOT NULL,
        version      INTEGER NOT NULL,
        graph_json   TEXT NOT NULL,
        published_at REAL,
        PRIMARY KEY (campaign_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS conversation_states (
        campaign_id TEXT NOT NULL,
        chat_id     TEXT NOT NULL,
        state_json  TEXT NOT NULL,
        updated_at  REAL,
        PRIMARY KEY (campaign_id, chat_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_bindings (
        session_name TEXT NOT NULL,
        chat_id      TEXT NOT NULL,
        campaign_id  TEXT NOT NULL,
        via_handoff  INTEGER NOT NULL DEFAULT 0,
        bound_at     REAL,
        PRIMARY KEY (session_name, chat_id)
    )
    """,
)


class SqliteStore:
    """Connection handling shared by the stores."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or settings.storage.db_path
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=settings.storage.sqlite_timeout_seconds,
            isolation_level=None,
        )
        conn.execute(f"PRAGMA busy_timeout={settings.storage.busy_timeout_ms}")
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            for statement in _SCHEMA:
                conn.execute(statement)
        finally:
            conn.close()


class CampaignStore(SqliteStore):
    """
    Campaign metadata plus versioned graphs.

    Published graphs are immutable; publishing writes version n+1 and moves
    campaigns.graph_version, so a pass that already loaded version n keeps
    running on it.
    """

    def __init__(self, db_path: Optional[str] = None):
        super().__init__(db_path)
        self._graph_cache: Dict[Tuple[str, int], CampaignGraph] = {}
        self._cache_lock = threading.Lock()

    # ------------------------------------------------------------- campaigns

    def save(self, campaign: Campaign) -> Campaign:
        """Insert or update metadata. Status and graph_version are left to their own operations."""
        conn = self._connect()
        try:
            conn.execute(
                """INSERT INTO campaigns (
                       id, name, session_name, status, graph_version, reentry_after_close,
                       agent_instructions, model, company_id, updated_at
                   ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       name               = excluded.name,
                       session_name       = excluded.session_name,
                       reentry_after_close = excluded.reentry_after_close,
                       agent_instructions = excluded.agent_instructions,
                       model              = excluded.model,
                       company_id         = excluded.company_id,
                       updated_at         = excluded.updated_at""",
                (
                    campaign.id, campaign.name, campaign.session_name, campaign.status.value,
                    campaign.graph_version, int(campaign.reentry_after_close),
                    campaign.agent_instructions, campaign.model, campaign.company_id, time.time(),
                ),
            )
        finally:
            conn.close()
        return self.get(campaign.id)

    def get(self, campaign_id: str, with_graph: bool = True) -> Optional[Campaign]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM campaigns WHERE id=?", (campaign_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        campaign = self._from_row(row)
        if with_graph and campaign.graph_version:
            campaign.graph = self.load_graph(campaign.id, campaign.graph_version)
        return campaign

    def list_campaigns(self, session_name: Optional[str] = None, status: Optional[CampaignStatus] = None) -> List[Campaign]:
        query = "SELECT * FROM campaigns WHERE 1=1"
        params: list = []
        if session_name is not None:
            query += " AND session_name=?"
            params.append(session_name)
        if status is not None:
            query += " AND status=?"
            params.append(status.value)
        query += " ORDER BY id"
        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [self._from_row(row) for row in rows]

    def active_index(self) -> Dict[str, List[str]]:
        """session_name -> ids of active campaigns."""
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT session_name, id FROM campaigns WHERE status=? ORDER BY id",
                (CampaignStatus.ACTIVE.value,),
            ).fetchall()
        finally:
            conn.close()
        index: Dict[str, List[str]] = {}
        for row in rows:
            index.setdefault(row["session_name"], []).append(row["id"])
        return index

    def set_status(self, campaign_id: str, status: CampaignStatus) -> Optional[Campaign]:
        """
        Change status. Activation checks for another active campaign on the
        same session inside the same immediate transaction.

        Raises:
            RoutingError: CONFLICT when another campaign is active on the session
            GraphConfigError: activating a campaign without a published graph
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT * FROM campaigns WHERE id=?", (campaign_id,)).fetchone()
            if row is None:
                conn.execute("ROLLBACK")
                return None

            if status == CampaignStatus.ACTIVE:
                if not row["graph_version"]:
                    conn.execute("ROLLBACK")
                    raise GraphConfigError(
                        GraphConfigError.INVALID_GRAPH, campaign_id, detail="no published graph",
                    )
                others = [
                    r["id"] for r in conn.execute(
                        "SELECT id FROM campaigns WHERE session_name=? AND status=? AND id<>?",
                        (row["session_name"], CampaignStatus.ACTIVE.value, campaign_id),
                    ).fetchall()
                ]
                if others:
                    conn.execute("ROLLBACK")
                    raise RoutingError(
                        RoutingError.CONFLICT,
                        row["session_name"],
                        campaign_ids=others,
                        message=(
                            f"Session '{row['session_name']}' already has an active campaign: "
                            f"{', '.join(others)}"
                        ),
                    )

            now = time.time()
            conn.execute(
                "UPDATE campaigns SET status=?, paused_at=?, updated_at=? WHERE id=?",
                (status.value, now if status == CampaignStatus.PAUSED else None, now, campaign_id),
            )
            conn.execute("COMMIT")
        except sqlite3.Error:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

        logger.info("Campaign status changed", campaign_id=campaign_id, status=status.value)
        return self.get(campaign_id)

    # ---------------------------------------------------------------- graphs

    def publish_graph(self, campaign_id: str, graph: CampaignGraph) -> int:
        """
        Validate and store a new graph version.

        Raises:
            GraphConfigError: INVALID_GRAPH with the blocking issues
            KeyError: unknown campaign
        """
        issues = graph.validate()
        errors = [i for i in issues if i.severity == GraphIssue.ERROR]
        if errors:
            raise GraphConfigError(
                GraphConfigError.INVALID_GRAPH,
                campaign_id,
                detail="; ".join(i.message for i in errors),
                issues=[i.message for i in errors],
            )
        for issue in issues:
            logger.warning(
                "Graph validation warning",
                campaign_id=campaign_id,
                code=issue.code,
                node_id=issue.node_id,
                issue=issue.message,
            )

        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT graph_version FROM campaigns WHERE id=?", (campaign_id,)).fetchone()
            if row is None:
                conn.execute("ROLLBACK")
                raise KeyError(campaign_id)
            version = int(row["graph_version"] or 0) + 1
            conn.execute(
                "INSERT INTO campaign_graphs (campaign_id, version, graph_json, published_at) VALUES (?, ?, ?, ?)",
                (campaign_id, version, json.dumps(graph.to_dict(), ensure_ascii=False), time.time()),
            )
            conn.execute(
                "UPDATE campaigns SET graph_version=?, updated_at=? WHERE id=?",
                (version, time.time(), campaign_id),
            )
            conn.execute("COMMIT")
        except sqlite3.Error:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

        with self._cache_lock:
            self._graph_cache[(campaign_id, version)] = graph
        logger.info(
            "Campaign graph published",
            campaign_id=campaign_id,
            version=version,
            nodes=len(graph.nodes),
            edges=len(graph.edges),
        )
        return version

    def load_graph(self, campaign_id: str, version: int) -> Optional[CampaignGraph]:
        key = (campaign_id, version)
        with self._cache_lock:
            cached = self._graph_cache.get(key)
        if cached is not None:
            return cached

        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT graph_json FROM campaign_graphs WHERE campaign_id=? AND version=?",
                key,
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None

        graph = CampaignGraph.from_dict(json.loads(row["graph_json"]))
        with self._cache_lock:
            self._graph_cache[key] = graph
        return graph

    @staticmethod
    def _from_row(row: sqlite3.Row) -> Campaign:
        return Campaign(
            id=row["id"],
            name=row["name"],
            session_name=row["session_name"],
            status=CampaignStatus(row["status"]),
            graph_version=int(row["graph_version"] or 0),
            reentry_after_close=bool(row["reentry_after_close"]),
            agent_instructions=row["agent_instructions"] or "",
            model=row["model"],
            company_id=row["company_id"],
            paused_at=row["paused_at"],
        )


class ConversationStateStore(SqliteStore):
    """ConversationState by (campaign_id, chat_id)."""

    def load(self, campaign_id: str, chat_id: str) -> Optional[ConversationState]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT state_json FROM conversation_states WHERE campaign_id=? AND chat_id=?",
                (campaign_id, chat_id),
            ).fetchone()
        finally:
            conn.close()
        return ConversationState.from_dict(json.loads(row["state_json"])) if row else None

    def save(self, state: ConversationState) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """INSERT INTO conversation_states (campaign_id, chat_id, state_json, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(campaign_id, chat_id)
                   DO UPDATE SET state_json=excluded.state_json, updated_at=excluded.updated_at""",
                (
                    state.campaign_id,
                    state.chat_id,
                    json.dumps(state.to_dict(), ensure_ascii=False),
                    time.time(),
                ),
            )
        finally:
            conn.close()

    def delete(self, campaign_id: str, chat_id: str) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "DELETE FROM conversation_states WHERE campaign_id=? AND chat_id=?",
                (campaign_id, chat_id),
            )
        finally:
            conn.close()


@dataclass(frozen=True)
class ChatBinding:
    campaign_id: str
    via_handoff: bool
    bound_at: float


class ChatBindingStore(SqliteStore):
    """Campaign that currently owns a chat on a session."""

    def get(self, session_name: str, chat_id: str) -> Optional[str]:
        binding = self.get_binding(session_name, chat_id)
        return binding.campaign_id if binding else None

    def get_binding(self, session_name: str, chat_id: str) -> Optional[ChatBinding]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT campaign_id, via_handoff, bound_at FROM chat_bindings WHERE session_name=? AND chat_id=?",
                (session_name, chat_id),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return ChatBinding(row["campaign_id"], bool(row["via_handoff"]), float(row["bound_at"] or 0.0))

    def bind(self, session_name: str, chat_id: str, campaign_id: str, via_handoff: bool = False) -> None:
        """Bind the chat; a handoff binding lets the chat run under a paused target."""
        conn = self._connect()
        try:
            conn.execute(
                """INSERT INTO chat_bindings (session_name, chat_id, campaign_id, via_handoff, bound_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(session_name, chat_id)
                   DO UPDATE SET campaign_id=excluded.campaign_id,
                                 via_handoff=excluded.via_handoff,
                                 bound_at=excluded.bound_at""",
                (session_name, chat_id, campaign_id, int(via_handoff), time.time()),
            )
        finally:
            conn.close()

    def unbind(self, session_name: str, chat_id: str) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "DELETE FROM chat_bindings WHERE session_name=? AND chat_id=?",
                (session_name, chat_id),
            )
        finally:
            conn.close()

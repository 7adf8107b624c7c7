"""
SQLite-backed storage for the agent monitor.

Design:
- One database per workspace at .codemachine/logs/registry.db, shared by every
  codemachine process (the workflow runner, nested `run` invocations and the
  `agents` CLI all read and write the same file).
- `agents` holds one row per agent execution; ids are AUTOINCREMENT so they are
  monotonic and never reused, even after deletes.
- `telemetry` holds the latest usage numbers per agent (upserted).
- Children are never stored; they are recomputed from parent_id on every read.

Writers serialize through RegistryLockService on top of SQLite's own locking,
so concurrent processes never interleave a read-modify-write sequence.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


AGENT_STATUSES = {"running", "completed", "failed"}
AGENT_TERMINAL_STATUSES = {"completed", "failed"}

# Columns callers may change through update_agent()
_UPDATABLE_COLUMNS = {
    "status",
    "pid",
    "end_time",
    "duration",
    "log_path",
    "error",
    "engine_provider",
    "model_name",
    "prompt",
}


@dataclass
class Telemetry:
    tokens_in: int = 0
    tokens_out: int = 0
    cached: Optional[int] = None
    cost: Optional[float] = None
    cache_creation_tokens: Optional[int] = None
    cache_read_tokens: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AgentRecord:
    id: int
    name: str
    status: str
    start_time: str
    prompt: str
    log_path: str
    engine: Optional[str] = None
    parent_id: Optional[int] = None
    pid: Optional[int] = None
    end_time: Optional[str] = None
    duration: Optional[int] = None
    error: Optional[str] = None
    engine_provider: Optional[str] = None
    model_name: Optional[str] = None
    telemetry: Optional[Telemetry] = None
    children: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _connect(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=10, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA busy_timeout=5000;")
    return conn


def _init_db(conn: sqlite3.Connection) -> None:
    """Initialize database schema with all required tables and indexes."""
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS agents (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          name TEXT NOT NULL,
          engine TEXT,
          status TEXT NOT NULL CHECK(status IN ('running', 'completed', 'failed')),
          parent_id INTEGER REFERENCES agents(id) ON DELETE CASCADE,
          pid INTEGER,
          start_time TEXT NOT NULL,
          end_time TEXT,
          duration INTEGER,
          prompt TEXT,
          log_path TEXT,
          error TEXT,
          engine_provider TEXT,
          model_name TEXT,
          created_at TEXT,
          updated_at TEXT
        );

        CREATE TABLE IF NOT EXISTS telemetry (
          agent_id INTEGER PRIMARY KEY REFERENCES agents(id) ON DELETE CASCADE,
          tokens_in INTEGER NOT NULL DEFAULT 0,
          tokens_out INTEGER NOT NULL DEFAULT 0,
          cached_tokens INTEGER,
          cost REAL,
          cache_creation_tokens INTEGER,
          cache_read_tokens INTEGER
        );

        CREATE INDEX IF NOT EXISTS idx_parent_id ON agents(parent_id);
        CREATE INDEX IF NOT EXISTS idx_status ON agents(status);
        """
    )

    # Older databases predate the split cache counters
    cursor = conn.execute("PRAGMA table_info(telemetry)")
    columns = {row[1] for row in cursor.fetchall()}
    for column in ("cache_creation_tokens", "cache_read_tokens"):
        if column not in columns:
            conn.execute(f"ALTER TABLE telemetry ADD COLUMN {column} INTEGER;")


def ensure_db(db_path: str) -> str:
    conn = _connect(db_path)
    try:
        _init_db(conn)
    finally:
        conn.close()
    return db_path


_SELECT_AGENTS = """
    SELECT a.*,
           t.agent_id AS t_agent_id,
           t.tokens_in, t.tokens_out, t.cached_tokens, t.cost,
           t.cache_creation_tokens, t.cache_read_tokens
    FROM agents a
    LEFT JOIN telemetry t ON t.agent_id = a.id
"""


def _row_to_record(row: sqlite3.Row, children: List[int]) -> AgentRecord:
    telemetry = None
    if row["t_agent_id"] is not None:
        telemetry = Telemetry(
            tokens_in=row["tokens_in"] or 0,
            tokens_out=row["tokens_out"] or 0,
            cached=row["cached_tokens"],
            cost=row["cost"],
            cache_creation_tokens=row["cache_creation_tokens"],
            cache_read_tokens=row["cache_read_tokens"],
        )
    return AgentRecord(
        id=row["id"],
        name=row["name"],
        status=row["status"],
        start_time=row["start_time"],
        prompt=row["prompt"] or "",
        log_path=row["log_path"] or "",
        engine=row["engine"],
        parent_id=row["parent_id"],
        pid=row["pid"],
        end_time=row["end_time"],
        duration=row["duration"],
        error=row["error"],
        engine_provider=row["engine_provider"],
        model_name=row["model_name"],
        telemetry=telemetry,
        children=children,
    )


def _children_index(conn: sqlite3.Connection) -> Dict[int, List[int]]:
    index: Dict[int, List[int]] = {}
    for row in conn.execute("SELECT id, parent_id FROM agents WHERE parent_id IS NOT NULL ORDER BY id"):
        index.setdefault(row["parent_id"], []).append(row["id"])
    return index


def _records(conn: sqlite3.Connection, rows: Iterable[sqlite3.Row]) -> List[AgentRecord]:
    children = _children_index(conn)
    return [_row_to_record(row, children.get(row["id"], [])) for row in rows]


# ============================================================================
# WRITES
# ============================================================================


def insert_agent(
    *,
    db_path: str,
    name: str,
    prompt: str,
    start_time: str,
    engine: Optional[str] = None,
    parent_id: Optional[int] = None,
    pid: Optional[int] = None,
    log_path: str = "",
    engine_provider: Optional[str] = None,
    model_name: Optional[str] = None,
) -> int:
    """
    Insert a new running agent.

    Returns:
        The new agent id
    """
    now = datetime.now().isoformat()
    conn = _connect(db_path)
    try:
        cursor = conn.execute(
            """
            INSERT INTO agents(
              name, engine, status, parent_id, pid, start_time, prompt, log_path,
              engine_provider, model_name, created_at, updated_at
            ) VALUES(?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (name, engine, "running", parent_id, pid, start_time, prompt, log_path,
             engine_provider, model_name, now, now),
        )
        return int(cursor.lastrowid)
    finally:
        conn.close()


def update_agent(*, db_path: str, agent_id: int, **fields: Any) -> bool:
    """Update selected columns of an agent row. Returns False if the agent is unknown."""
    unknown = set(fields) - _UPDATABLE_COLUMNS
    if unknown:
        raise ValueError(f"Cannot update columns: {sorted(unknown)}")
    if "status" in fields and fields["status"] not in AGENT_STATUSES:
        raise ValueError(f"Invalid agent status: {fields['status']}")
    if not fields:
        return True

    assignments = ", ".join(f"{column}=?" for column in fields)
    values = list(fields.values()) + [datetime.now().isoformat(), agent_id]
    conn = _connect(db_path)
    try:
        cursor = conn.execute(f"UPDATE agents SET {assignments}, updated_at=? WHERE id=?", values)
        return cursor.rowcount == 1
    finally:
        conn.close()


def mark_agent_terminal(
    *,
    db_path: str,
    agent_id: int,
    status: str,
    end_time: str,
    duration: Optional[int],
    error: Optional[str] = None,
) -> bool:
    """
    Move a running agent to completed/failed.

    Only a row that is still `running` transitions, so each agent gets exactly
    one terminal status even when two processes race to finish it.

    Returns:
        True if this call performed the transition
    """
    if status not in AGENT_TERMINAL_STATUSES:
        raise ValueError(f"Status {status} is not a terminal status. Must be one of: {AGENT_TERMINAL_STATUSES}")

    conn = _connect(db_path)
    try:
        cursor = conn.execute(
            """
            UPDATE agents
            SET status=?, end_time=?, duration=?, error=?, updated_at=?
            WHERE id=? AND status='running'
            """,
            (status, end_time, duration, error, datetime.now().isoformat(), agent_id),
        )
        return cursor.rowcount == 1
    finally:
        conn.close()


def upsert_telemetry(*, db_path: str, agent_id: int, telemetry: Telemetry) -> None:
    """Insert or update telemetry; optional fields left as None keep their stored value."""
    conn = _connect(db_path)
    try:
        conn.execute(
            """
            INSERT INTO telemetry(agent_id, tokens_in, tokens_out, cached_tokens, cost,
                                  cache_creation_tokens, cache_read_tokens)
            VALUES(?,?,?,?,?,?,?)
            ON CONFLICT(agent_id) DO UPDATE SET
              tokens_in=excluded.tokens_in,
              tokens_out=excluded.tokens_out,
              cached_tokens=COALESCE(excluded.cached_tokens, telemetry.cached_tokens),
              cost=COALESCE(excluded.cost, telemetry.cost),
              cache_creation_tokens=COALESCE(excluded.cache_creation_tokens, telemetry.cache_creation_tokens),
              cache_read_tokens=COALESCE(excluded.cache_read_tokens, telemetry.cache_read_tokens)
            """,
            (
                agent_id,
                telemetry.tokens_in,
                telemetry.tokens_out,
                telemetry.cached,
                telemetry.cost,
                telemetry.cache_creation_tokens,
                telemetry.cache_read_tokens,
            ),
        )
    finally:
        conn.close()


def delete_agents(*, db_path: str, agent_ids: List[int]) -> int:
    """Delete agents (telemetry and descendants cascade). Returns rows deleted."""
    if not agent_ids:
        return 0
    placeholders = ",".join("?" for _ in agent_ids)
    conn = _connect(db_path)
    try:
        cursor = conn.execute(f"DELETE FROM agents WHERE id IN ({placeholders})", list(agent_ids))
        return cursor.rowcount
    finally:
        conn.close()


# ============================================================================
# READS
# ============================================================================


def get_agent(*, db_path: str, agent_id: int) -> Optional[AgentRecord]:
    conn = _connect(db_path)
    try:
        row = conn.execute(_SELECT_AGENTS + " WHERE a.id=?", (agent_id,)).fetchone()
        if not row:
            return None
        children = [r["id"] for r in conn.execute(
            "SELECT id FROM agents WHERE parent_id=? ORDER BY id", (agent_id,)
        )]
        return _row_to_record(row, children)
    finally:
        conn.close()


def query_agents(
    *,
    db_path: str,
    status: Optional[str] = None,
    parent_id: Optional[int] = None,
    name: Optional[str] = None,
    roots_only: bool = False,
) -> List[AgentRecord]:
    """
    Filtered agent listing ordered by id.

    Args:
        db_path: Monitoring database
        status: Only agents in this status
        parent_id: Only direct children of this agent
        name: Only agents with this name
        roots_only: Only agents without a parent
    """
    clauses = []
    params: List[Any] = []
    if status is not None:
        clauses.append("a.status=?")
        params.append(status)
    if parent_id is not None:
        clauses.append("a.parent_id=?")
        params.append(parent_id)
    if name is not None:
        clauses.append("a.name=?")
        params.append(name)
    if roots_only:
        clauses.append("a.parent_id IS NULL")

    sql = _SELECT_AGENTS
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY a.id"

    conn = _connect(db_path)
    try:
        return _records(conn, conn.execute(sql, params).fetchall())
    finally:
        conn.close()


def get_all_agents(*, db_path: str) -> List[AgentRecord]:
    return query_agents(db_path=db_path)

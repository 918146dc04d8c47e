"""Ledger de sesiones: interfaz, implementación SQLite y feed de cambios."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from dateutil.parser import isoparse

from pouch_tool.errors import LedgerConflictError, LedgerUnavailableError
from pouch_tool.model import UTC, Session, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    nicotine_mg REAL NOT NULL,
    start_time TEXT NOT NULL,
    planned_duration_s REAL NOT NULL,
    end_time TEXT,
    created_at TEXT NOT NULL,
    origin TEXT NOT NULL DEFAULT '',
    source TEXT
);

CREATE INDEX IF NOT EXISTS idx_sessions_start_time
ON sessions(start_time);

CREATE INDEX IF NOT EXISTS idx_sessions_open
ON sessions(end_time) WHERE end_time IS NULL;
"""

_COLUMNS = (
    "id, nicotine_mg, start_time, planned_duration_s, end_time, created_at, origin, source"
)


@dataclass(frozen=True)
class SessionQuery:
    """Predicate for ``SessionLedger.query``."""

    open_only: bool = False
    started_after: datetime | None = None
    limit: int | None = None


@dataclass(frozen=True)
class ChangeHint:
    """Notification that ledger data changed."""

    origin: str
    session_ids: tuple[str, ...] = ()
    at: datetime = field(default_factory=utcnow)


class ChangeFeed:
    """Fan-out of change hints to any number of async listeners."""

    def __init__(self) -> None:
        self._queues: list[asyncio.Queue[ChangeHint | None]] = []
        self._closed = False

    def publish(self, hint: ChangeHint) -> None:
        for queue in list(self._queues):
            queue.put_nowait(hint)

    def close(self) -> None:
        self._closed = True
        for queue in list(self._queues):
            queue.put_nowait(None)

    async def listen(self) -> AsyncIterator[ChangeHint]:
        """Yield hints until the feed is closed."""
        queue: asyncio.Queue[ChangeHint | None] = asyncio.Queue()
        self._queues.append(queue)
        try:
            while not self._closed or not queue.empty():
                hint = await queue.get()
                if hint is None:
                    return
                yield hint
        finally:
            self._queues.remove(queue)


class SessionLedger(ABC):
    """Authoritative, replicated record of sessions.

    Append-mostly: the only mutation is closing an open record.
    """

    def __init__(self) -> None:
        self.changes = ChangeFeed()

    @abstractmethod
    async def create(self, session: Session) -> Session:
        """Persist a new open session.

        Raises:
            LedgerConflictError: If any session is already open.
            LedgerUnavailableError: On storage failure.
        """

    @abstractmethod
    async def update(self, session_id: str, end_time: datetime) -> bool:
        """Close a session. Returns False if it was already closed or missing."""

    @abstractmethod
    async def get(self, session_id: str) -> Session | None:
        """Fetch one session by id."""

    @abstractmethod
    async def query(self, query: SessionQuery) -> list[Session]:
        """Sessions matching ``query``, oldest start first."""


class SQLiteLedger(SessionLedger):
    """SQLite-backed ledger; blocking calls run in a worker thread."""

    def __init__(self, db_path: Path) -> None:
        """Create ledger and ensure schema exists."""
        super().__init__()
        self._db_path = db_path
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(SCHEMA_SQL)
            conn.commit()

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.DatabaseError as exc:
            # Locked, corrupt or unreadable files all surface as unavailability.
            raise LedgerUnavailableError(str(exc)) from exc

    async def create(self, session: Session) -> Session:
        stored = await self._run(self._create_sync, session)
        logger.info("Session %s created (%smg)", stored.id, stored.nicotine_mg)
        self.changes.publish(ChangeHint(origin="local", session_ids=(stored.id,)))
        return stored

    async def update(self, session_id: str, end_time: datetime) -> bool:
        changed = await self._run(self._update_sync, session_id, end_time)
        if changed:
            logger.info("Session %s closed at %s", session_id, end_time.isoformat())
            self.changes.publish(ChangeHint(origin="local", session_ids=(session_id,)))
        return changed

    async def get(self, session_id: str) -> Session | None:
        return await self._run(self._get_sync, session_id)

    async def query(self, query: SessionQuery) -> list[Session]:
        return await self._run(self._query_sync, query)

    async def apply_remote(self, session: Session) -> None:
        """Merge a record delivered by the replication transport."""
        changed = await self._run(self._merge_sync, session)
        if changed:
            logger.debug("Remote change applied for session %s", session.id)
            self.changes.publish(ChangeHint(origin="remote", session_ids=(session.id,)))

    def _create_sync(self, session: Session) -> Session:
        if session.end_time is not None:
            raise ValueError("New sessions must be open")
        created_at = session.created_at or utcnow()
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                # Single statement: the open-session check and the insert are atomic.
                cur = conn.execute(
                    f"""
                    INSERT INTO sessions({_COLUMNS})
                    SELECT ?, ?, ?, ?, NULL, ?, ?, ?
                    WHERE NOT EXISTS (
                        SELECT 1 FROM sessions WHERE end_time IS NULL
                    )
                    """,
                    (
                        session.id,
                        session.nicotine_mg,
                        _iso(session.start_time),
                        session.planned_duration_s,
                        _iso(created_at),
                        session.origin,
                        session.source,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise LedgerConflictError(f"Session id {session.id} already exists") from exc
            conn.commit()
        if cur.rowcount == 0:
            raise LedgerConflictError("Another session is already open")
        return Session(
            id=session.id,
            nicotine_mg=session.nicotine_mg,
            start_time=session.start_time,
            planned_duration_s=session.planned_duration_s,
            created_at=created_at,
            origin=session.origin,
            source=session.source,
        )

    def _update_sync(self, session_id: str, end_time: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT start_time FROM sessions WHERE id = ? AND end_time IS NULL",
                (session_id,),
            ).fetchone()
            if row is None:
                return False
            effective_end = max(end_time, isoparse(row["start_time"]))
            cur = conn.execute(
                "UPDATE sessions SET end_time = ? WHERE id = ? AND end_time IS NULL",
                (_iso(effective_end), session_id),
            )
            conn.commit()
        return cur.rowcount > 0

    def _get_sync(self, session_id: str) -> Session | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM sessions WHERE id = ?", (session_id,)
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def _query_sync(self, query: SessionQuery) -> list[Session]:
        clauses: list[str] = []
        params: list[object] = []
        if query.open_only:
            clauses.append("end_time IS NULL")
        if query.started_after is not None:
            clauses.append("start_time >= ?")
            params.append(_iso(query.started_after))
        sql = f"SELECT {_COLUMNS} FROM sessions"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY start_time"
        if query.limit is not None:
            sql += " LIMIT ?"
            params.append(query.limit)
        with self._connect() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [_row_to_session(row) for row in rows]

    def _merge_sync(self, session: Session) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT end_time FROM sessions WHERE id = ?", (session.id,)
            ).fetchone()
            if row is None:
                conn.execute(
                    f"INSERT INTO sessions({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        session.id,
                        session.nicotine_mg,
                        _iso(session.start_time),
                        session.planned_duration_s,
                        _iso(session.end_time) if session.end_time else None,
                        _iso(session.created_at or utcnow()),
                        session.origin,
                        session.source,
                    ),
                )
                conn.commit()
                return True

            if session.end_time is None:
                return False
            local_end = isoparse(row["end_time"]) if row["end_time"] else None
            # Earliest removal wins, whatever order the replicas arrive in.
            if local_end is not None and local_end <= session.end_time:
                return False
            conn.execute(
                "UPDATE sessions SET end_time = ? WHERE id = ?",
                (_iso(session.end_time), session.id),
            )
            conn.commit()
        return True


def _row_to_session(row: sqlite3.Row) -> Session:
    return Session(
        id=str(row["id"]),
        nicotine_mg=float(row["nicotine_mg"]),
        start_time=isoparse(row["start_time"]),
        planned_duration_s=float(row["planned_duration_s"]),
        end_time=isoparse(row["end_time"]) if row["end_time"] else None,
        created_at=isoparse(row["created_at"]),
        origin=str(row["origin"] or ""),
        source=row["source"],
    )


def _iso(value: datetime) -> str:
    # Fixed UTC form keeps string comparisons in SQL chronological.
    return value.astimezone(UTC).isoformat(timespec="microseconds")

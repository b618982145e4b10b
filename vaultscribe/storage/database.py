"""
SQLite store for sessions, segments and offline retry records.
One connection, serialized by an explicit lock; every multi-statement
mutation runs inside a single IMMEDIATE transaction.
"""

import sqlite3
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, List, Optional

from ..exceptions import PersistenceError
from ..models.session import (
    QueuedTranscriptionSegment,
    RecordingSession,
    SegmentStatus,
    TranscriptionSegment,
)

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    audio_filename TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_created_at ON sessions(created_at DESC);

CREATE TABLE IF NOT EXISTS segments (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    audio_filename TEXT NOT NULL,
    start_time REAL NOT NULL,
    end_time REAL NOT NULL,
    status TEXT NOT NULL DEFAULT 'queued',
    text TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_segments_session_pos ON segments(session_id, position);
CREATE INDEX IF NOT EXISTS idx_segments_status ON segments(status);

CREATE TABLE IF NOT EXISTS queued_segments (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    start_time REAL NOT NULL,
    end_time REAL NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_queued_created_at ON queued_segments(created_at);
"""


class Database:
    """SQLite persistence context for VaultScribe."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        try:
            # isolation_level=None: transactions are opened explicitly below
            self.conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                isolation_level=None,
                timeout=30,
            )
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA foreign_keys=ON")
            self._migrate()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open database {self.db_path}: {e}") from e
        logger.info(f"Database opened: {self.db_path}")

    def _migrate(self):
        with self._transaction() as cur:
            for statement in _CREATE_TABLES.split(';'):
                if statement.strip():
                    cur.execute(statement)
            cur.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (_SCHEMA_VERSION,),
            )

    def close(self):
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cur = self.conn.cursor()
            try:
                cur.execute("BEGIN IMMEDIATE")
                yield cur
                cur.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback(cur)
                raise PersistenceError(f"Database write failed: {e}") from e
            except BaseException:
                self._rollback(cur)
                raise
            finally:
                cur.close()

    @staticmethod
    def _rollback(cur: sqlite3.Cursor) -> None:
        try:
            cur.execute("ROLLBACK")
        except sqlite3.Error:
            # no transaction was open
            pass

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self.conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(f"Database read failed: {e}") from e

    # ── Row mapping ───────────────────────────────────────────────────

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> RecordingSession:
        return RecordingSession(
            id=row['id'],
            title=row['title'],
            audio_filename=row['audio_filename'],
            created_at=datetime.fromisoformat(row['created_at']),
        )

    @staticmethod
    def _row_to_segment(row: sqlite3.Row) -> TranscriptionSegment:
        return TranscriptionSegment(
            id=row['id'],
            session_id=row['session_id'],
            position=row['position'],
            audio_filename=row['audio_filename'],
            start_time=row['start_time'],
            end_time=row['end_time'],
            status=SegmentStatus(row['status']),
            text=row['text'],
            created_at=datetime.fromisoformat(row['created_at']),
            updated_at=datetime.fromisoformat(row['updated_at']),
        )

    @staticmethod
    def _row_to_queued(row: sqlite3.Row) -> QueuedTranscriptionSegment:
        return QueuedTranscriptionSegment(
            id=row['id'],
            session_id=row['session_id'],
            start_time=row['start_time'],
            end_time=row['end_time'],
            created_at=datetime.fromisoformat(row['created_at']),
        )

    # ── Sessions ──────────────────────────────────────────────────────

    def create_session(self, session: RecordingSession) -> RecordingSession:
        with self._transaction() as cur:
            cur.execute(
                """INSERT INTO sessions (id, title, audio_filename, created_at)
                   VALUES (?, ?, ?, ?)""",
                (session.id, session.title, session.audio_filename,
                 session.created_at.isoformat()),
            )
        logger.debug(f"Created session {session.id} ({session.title})")
        return session

    def get_session(self, session_id: str) -> Optional[RecordingSession]:
        rows = self._query("SELECT * FROM sessions WHERE id = ?", (session_id,))
        return self._row_to_session(rows[0]) if rows else None

    def list_sessions(self) -> List[RecordingSession]:
        rows = self._query("SELECT * FROM sessions ORDER BY created_at DESC")
        return [self._row_to_session(r) for r in rows]

    def find_sessions(self, title_contains: str) -> List[RecordingSession]:
        rows = self._query(
            "SELECT * FROM sessions WHERE instr(title, ?) > 0 ORDER BY created_at DESC",
            (title_contains,),
        )
        return [self._row_to_session(r) for r in rows]

    def count_sessions(self, title_contains: Optional[str] = None) -> int:
        if title_contains is None:
            rows = self._query("SELECT COUNT(*) FROM sessions")
        else:
            rows = self._query(
                "SELECT COUNT(*) FROM sessions WHERE instr(title, ?) > 0",
                (title_contains,),
            )
        return rows[0][0]

    def delete_session(self, session_id: str) -> Optional[RecordingSession]:
        """Delete a session, its segments (cascade) and its offline retry records.

        Returns:
            The deleted session, or None if it did not exist
        """
        with self._transaction() as cur:
            row = cur.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
            if row is None:
                return None
            cur.execute("DELETE FROM queued_segments WHERE session_id = ?", (session_id,))
            cur.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        logger.info(f"Deleted session {session_id}")
        return self._row_to_session(row)

    # ── Segments ──────────────────────────────────────────────────────

    @staticmethod
    def _insert_segment(cur: sqlite3.Cursor, segment: TranscriptionSegment) -> None:
        position = cur.execute(
            "SELECT COALESCE(MAX(position), -1) + 1 FROM segments WHERE session_id = ?",
            (segment.session_id,),
        ).fetchone()[0]
        segment.position = position
        cur.execute(
            """INSERT INTO segments
               (id, session_id, position, audio_filename, start_time, end_time,
                status, text, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (segment.id, segment.session_id, segment.position, segment.audio_filename,
             segment.start_time, segment.end_time, segment.status.value, segment.text,
             segment.created_at.isoformat(), segment.updated_at.isoformat()),
        )

    def add_segment(self, segment: TranscriptionSegment) -> TranscriptionSegment:
        """Append a segment to its session; the session must exist."""
        with self._transaction() as cur:
            exists = cur.execute(
                "SELECT 1 FROM sessions WHERE id = ?", (segment.session_id,)
            ).fetchone()
            if exists is None:
                raise PersistenceError(f"Session {segment.session_id} does not exist")
            self._insert_segment(cur, segment)
        return segment

    def get_segment(self, segment_id: str) -> Optional[TranscriptionSegment]:
        rows = self._query("SELECT * FROM segments WHERE id = ?", (segment_id,))
        return self._row_to_segment(rows[0]) if rows else None

    def get_segments(self, session_id: str) -> List[TranscriptionSegment]:
        rows = self._query(
            "SELECT * FROM segments WHERE session_id = ? ORDER BY position",
            (session_id,),
        )
        return [self._row_to_segment(r) for r in rows]

    def find_segments(self, status: SegmentStatus) -> List[TranscriptionSegment]:
        rows = self._query(
            "SELECT * FROM segments WHERE status = ? ORDER BY created_at, position",
            (status.value,),
        )
        return [self._row_to_segment(r) for r in rows]

    def count_segments(self, session_id: Optional[str] = None,
                       status: Optional[SegmentStatus] = None) -> int:
        clauses, params = [], []
        if session_id is not None:
            clauses.append("session_id = ?")
            params.append(session_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return self._query(f"SELECT COUNT(*) FROM segments{where}", tuple(params))[0][0]

    def save_segment(self, segment: TranscriptionSegment) -> bool:
        """Write the full mutable state of a segment.

        Returns:
            False if the segment no longer exists (its session was deleted)
        """
        with self._transaction() as cur:
            cur.execute(
                "UPDATE segments SET status = ?, text = ?, updated_at = ? WHERE id = ?",
                (segment.status.value, segment.text, segment.updated_at.isoformat(), segment.id),
            )
            return cur.rowcount == 1

    # ── Offline retry records ─────────────────────────────────────────

    def create_queued_segment(self, record: QueuedTranscriptionSegment) -> QueuedTranscriptionSegment:
        with self._transaction() as cur:
            cur.execute(
                """INSERT INTO queued_segments (id, session_id, start_time, end_time, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (record.id, record.session_id, record.start_time, record.end_time,
                 record.created_at.isoformat()),
            )
        return record

    def list_queued_segments(self) -> List[QueuedTranscriptionSegment]:
        rows = self._query("SELECT * FROM queued_segments ORDER BY created_at")
        return [self._row_to_queued(r) for r in rows]

    def count_queued_segments(self) -> int:
        return self._query("SELECT COUNT(*) FROM queued_segments")[0][0]

    def promote_queued_segment(self, record_id: str) -> Optional[TranscriptionSegment]:
        """Consume an offline record and append a fresh queued segment for its window.

        Both happen in one transaction. Returns None when the record was
        already consumed, or when its session no longer exists (the record
        is dropped in that case).
        """
        with self._transaction() as cur:
            row = cur.execute(
                "SELECT * FROM queued_segments WHERE id = ?", (record_id,)
            ).fetchone()
            if row is None:
                return None
            cur.execute("DELETE FROM queued_segments WHERE id = ?", (record_id,))

            session_row = cur.execute(
                "SELECT * FROM sessions WHERE id = ?", (row['session_id'],)
            ).fetchone()
            if session_row is None:
                logger.info(f"Dropping retry record {record_id}: session {row['session_id']} is gone")
                return None

            segment = TranscriptionSegment(
                session_id=session_row['id'],
                audio_filename=session_row['audio_filename'],
                start_time=row['start_time'],
                end_time=row['end_time'],
            )
            self._insert_segment(cur, segment)
        return segment

    def delete_queued_segments(self, session_id: str, start_time: float, end_time: float) -> int:
        with self._transaction() as cur:
            cur.execute(
                """DELETE FROM queued_segments
                   WHERE session_id = ? AND start_time = ? AND end_time = ?""",
                (session_id, start_time, end_time),
            )
            return cur.rowcount

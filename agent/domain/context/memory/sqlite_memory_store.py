"""
SQLite fragment backend.

One file holds actors, sessions and every fragment partition. Blocking
sqlite3 calls run in a worker thread; a single connection is shared and
serialised with a lock.
"""

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, List, Optional, TypeVar, Union

import numpy as np
import structlog

from domain.context.context_ranker import ContextRanker, default_ranker
from domain.context.memory.backend import FragmentBackend
from domain.errors import TransportError, ValidationError
from domain.models.memory import Actor, Fragment, FragmentFilter, Session

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICROSECOND = timedelta(microseconds=1)


def _to_micros(value: datetime) -> int:
    return (value - _EPOCH) // _MICROSECOND


def _from_micros(value: int) -> datetime:
    return _EPOCH + timedelta(microseconds=value)


def _pack_embedding(embedding: Optional[List[float]]) -> Optional[bytes]:
    if embedding is None:
        return None
    return np.asarray(embedding, dtype=np.float32).tobytes()


def _unpack_embedding(blob: Optional[bytes]) -> Optional[List[float]]:
    if blob is None:
        return None
    return np.frombuffer(blob, dtype=np.float32).tolist()


class SQLiteFragmentBackend(FragmentBackend):
    """SQLite backend. Pass ``":memory:"`` for a throwaway database."""

    def __init__(
        self,
        path: Union[str, Path] = ":memory:",
        embedding_dimensions: Optional[int] = None,
        ranker: Optional[ContextRanker] = None,
    ):
        super().__init__(embedding_dimensions)
        self.path = str(path)
        self.ranker = ranker or default_ranker
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        if self.path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS actors (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL DEFAULT '',
                is_assistant INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                metadata TEXT NOT NULL DEFAULT '{}'
            );

            CREATE TABLE IF NOT EXISTS fragments (
                partition TEXT NOT NULL,
                id TEXT NOT NULL,
                actor_id TEXT NOT NULL REFERENCES actors(id),
                session_id TEXT NOT NULL REFERENCES sessions(id),
                content TEXT NOT NULL,
                embedding BLOB,
                metadata TEXT NOT NULL DEFAULT '{}',
                created_at INTEGER NOT NULL,
                PRIMARY KEY (partition, id)
            );

            CREATE INDEX IF NOT EXISTS idx_fragments_session
                ON fragments(partition, session_id, created_at DESC);
            CREATE INDEX IF NOT EXISTS idx_fragments_actor
                ON fragments(partition, actor_id, created_at DESC);
        """)
        self._conn.commit()

        if self.embedding_dimensions is None:
            row = self._conn.execute(
                "SELECT length(embedding) AS size FROM fragments WHERE embedding IS NOT NULL LIMIT 1"
            ).fetchone()
            if row is not None:
                self.embedding_dimensions = row["size"] // np.dtype(np.float32).itemsize

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        def locked() -> T:
            with self._lock:
                return fn(*args)

        try:
            return await asyncio.to_thread(locked)
        except (ValidationError, TransportError):
            raise
        except sqlite3.Error as e:
            logger.error("SQLite operation failed", path=self.path, error=str(e))
            raise TransportError(f"sqlite backend failure: {e}") from e

    # ── Actors & sessions ─────────────────────────────────────────────

    async def upsert_actor(self, actor: Actor) -> Actor:
        def write() -> None:
            self._conn.execute(
                """INSERT INTO actors (id, name, is_assistant) VALUES (?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       name = excluded.name, is_assistant = excluded.is_assistant""",
                (actor.id, actor.name, int(actor.is_assistant)),
            )
            self._conn.commit()

        await self._run(write)
        return actor

    async def get_actor(self, actor_id: str) -> Optional[Actor]:
        def read() -> Optional[Actor]:
            row = self._conn.execute(
                "SELECT id, name, is_assistant FROM actors WHERE id = ?", (actor_id,)
            ).fetchone()
            if row is None:
                return None
            return Actor(id=row["id"], name=row["name"], is_assistant=bool(row["is_assistant"]))

        return await self._run(read)

    async def upsert_session(self, session: Session) -> Session:
        def write() -> None:
            self._conn.execute(
                """INSERT INTO sessions (id, metadata) VALUES (?, ?)
                   ON CONFLICT(id) DO UPDATE SET metadata = excluded.metadata""",
                (session.id, json.dumps(session.metadata, default=str)),
            )
            self._conn.commit()

        await self._run(write)
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        def read() -> Optional[Session]:
            row = self._conn.execute(
                "SELECT id, metadata FROM sessions WHERE id = ?", (session_id,)
            ).fetchone()
            if row is None:
                return None
            return Session(id=row["id"], metadata=json.loads(row["metadata"]))

        return await self._run(read)

    # ── Fragments ─────────────────────────────────────────────────────

    async def insert_fragment(self, partition: str, fragment: Fragment) -> bool:
        def write() -> bool:
            exists = self._conn.execute(
                "SELECT 1 FROM fragments WHERE partition = ? AND id = ?",
                (partition, fragment.id),
            ).fetchone()
            if exists:
                return False
            try:
                self._conn.execute(
                    """INSERT INTO fragments
                       (partition, id, actor_id, session_id, content,
                        embedding, metadata, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        partition, fragment.id, fragment.actor_id,
                        fragment.session_id, fragment.content,
                        _pack_embedding(fragment.embedding),
                        json.dumps(fragment.metadata),
                        _to_micros(fragment.created_at),
                    ),
                )
            except sqlite3.IntegrityError as e:
                self._conn.rollback()
                raise ValidationError(f"fragment {fragment.id} rejected: {e}") from e
            self._conn.commit()
            return True

        return await self._run(write)

    async def get_fragment(self, partition: str, fragment_id: str) -> Optional[Fragment]:
        def read() -> Optional[Fragment]:
            row = self._conn.execute(
                "SELECT * FROM fragments WHERE partition = ? AND id = ?",
                (partition, fragment_id),
            ).fetchone()
            return self._row_to_fragment(row) if row else None

        return await self._run(read)

    async def search_fragments(self, partition: str, query: FragmentFilter) -> List[Fragment]:
        def read() -> List[Fragment]:
            sql = "SELECT * FROM fragments WHERE partition = ?"
            params: list = [partition]
            if query.actor_id is not None:
                sql += " AND actor_id = ?"
                params.append(query.actor_id)
            if query.session_id is not None:
                sql += " AND session_id = ?"
                params.append(query.session_id)
            if query.start_time is not None:
                sql += " AND created_at >= ?"
                params.append(_to_micros(query.start_time))
            if query.end_time is not None:
                sql += " AND created_at <= ?"
                params.append(_to_micros(query.end_time))
            if query.embedding is not None:
                sql += " AND embedding IS NOT NULL"
            sql += " ORDER BY created_at DESC, rowid ASC"

            # Metadata conditions and vector ranking are evaluated in Python
            if not query.metadata and query.embedding is None:
                sql += " LIMIT ?"
                params.append(query.limit)

            rows = self._conn.execute(sql, params).fetchall()
            return [self._row_to_fragment(r) for r in rows]

        candidates = await self._run(read)
        return self.ranker.rank(candidates, query)

    async def close(self) -> None:
        await self._run(self._conn.close)

    @staticmethod
    def _row_to_fragment(row: sqlite3.Row) -> Fragment:
        return Fragment(
            id=row["id"],
            actor_id=row["actor_id"],
            session_id=row["session_id"],
            content=row["content"],
            embedding=_unpack_embedding(row["embedding"]),
            metadata=json.loads(row["metadata"]),
            created_at=_from_micros(row["created_at"]),
        )

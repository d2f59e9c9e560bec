"""Session persistence: the durable home of quiz sessions.

Writes are field-level last-write-wins with no concurrency token. Two devices
playing the same account can overwrite each other's fields; callers keep their
own copy authoritative and re-send unconfirmed fields on the next write.
"""

import json
import logging
import sqlite3
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from starlette.concurrency import run_in_threadpool

from .database import get_db_connection, init_db
from .errors import RemoteError
from .models import AnswerRecord, GameSession, QuizMode

logger = logging.getLogger(__name__)

PATCHABLE_FIELDS = {
    "list_ids",
    "word_ids",
    "mode",
    "current_index",
    "answers",
    "is_finished",
    "updated_at",
}


def _check_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - PATCHABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot patch fields: {sorted(unknown)}")


class SessionStore(ABC):
    """Async persistence contract for quiz sessions."""

    @abstractmethod
    async def create(self, session: GameSession) -> GameSession:
        """Store a new session and return it with its assigned id."""

    @abstractmethod
    async def patch(self, session_id: str, fields: Dict[str, Any]) -> None:
        """Overwrite the given fields of a stored session."""

    @abstractmethod
    async def fetch_active(self, user_id: str) -> Optional[GameSession]:
        """Most recently updated unfinished session of the user, if any."""

    @abstractmethod
    async def fetch_finished(self, user_id: str) -> List[GameSession]:
        """Finished sessions of the user, oldest start first."""


class InMemorySessionStore(SessionStore):
    def __init__(self):
        # Insertion-ordered, so equal start times keep creation order.
        self.sessions: Dict[str, GameSession] = {}

    async def create(self, session: GameSession) -> GameSession:
        stored = session.model_copy(update={"id": str(uuid.uuid4())}, deep=True)
        self.sessions[stored.id] = stored
        return stored.model_copy(deep=True)

    async def patch(self, session_id: str, fields: Dict[str, Any]) -> None:
        _check_fields(fields)
        if session_id not in self.sessions:
            raise RemoteError(f"Unknown session {session_id}")
        # Validate through the model so patched values have the stored types.
        data = self.sessions[session_id].model_dump()
        data.update(fields)
        self.sessions[session_id] = GameSession.model_validate(data)

    async def fetch_active(self, user_id: str) -> Optional[GameSession]:
        open_sessions = [
            s for s in self.sessions.values() if s.user_id == user_id and not s.is_finished
        ]
        if not open_sessions:
            return None
        latest = max(reversed(open_sessions), key=lambda s: s.updated_at)
        return latest.model_copy(deep=True)

    async def fetch_finished(self, user_id: str) -> List[GameSession]:
        finished = [
            s.model_copy(deep=True)
            for s in self.sessions.values()
            if s.user_id == user_id and s.is_finished
        ]
        return sorted(finished, key=lambda s: s.started_at)


class SqliteSessionStore(SessionStore):
    """Stores sessions in the ``game_sessions`` table.

    sqlite3 calls block, so each one runs in the threadpool.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path
        init_db(db_path)

    @staticmethod
    def _to_column(name: str, value: Any) -> Any:
        if name in ("list_ids", "word_ids"):
            return json.dumps(list(value))
        if name == "answers":
            return json.dumps(
                [a.model_dump() if isinstance(a, AnswerRecord) else dict(a) for a in value],
                ensure_ascii=False,
            )
        if name == "mode":
            return QuizMode(value).value
        if name == "is_finished":
            return int(bool(value))
        if name in ("started_at", "updated_at"):
            return value.isoformat()
        return value

    @staticmethod
    def _from_row(row: sqlite3.Row) -> GameSession:
        return GameSession.model_validate(
            {
                "id": row["id"],
                "user_id": row["user_id"],
                "list_ids": json.loads(row["list_ids"]),
                "word_ids": json.loads(row["word_ids"]),
                "mode": row["mode"],
                "current_index": row["current_index"],
                "answers": json.loads(row["answers"]),
                "is_finished": bool(row["is_finished"]),
                "started_at": row["started_at"],
                "updated_at": row["updated_at"],
            }
        )

    def _execute(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        try:
            conn = get_db_connection(self.db_path)
            try:
                with conn:
                    cursor = conn.execute(sql, params)
                    rows = cursor.fetchall()
                    if cursor.rowcount == 0 and sql.lstrip().startswith("UPDATE"):
                        raise RemoteError("No session matched the update")
                    return rows
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error(f"Session store query failed: {e}")
            raise RemoteError(str(e)) from e

    async def create(self, session: GameSession) -> GameSession:
        stored = session.model_copy(update={"id": str(uuid.uuid4())}, deep=True)
        columns = [
            "id", "user_id", "list_ids", "word_ids", "mode", "current_index",
            "answers", "is_finished", "started_at", "updated_at",
        ]
        values = tuple(self._to_column(c, getattr(stored, c)) for c in columns)
        sql = (
            f"INSERT INTO game_sessions ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})"
        )
        await run_in_threadpool(self._execute, sql, values)
        return stored

    async def patch(self, session_id: str, fields: Dict[str, Any]) -> None:
        _check_fields(fields)
        if not fields:
            return
        names = sorted(fields)
        assignments = ", ".join(f"{name} = ?" for name in names)
        values = tuple(self._to_column(name, fields[name]) for name in names)
        await run_in_threadpool(
            self._execute,
            f"UPDATE game_sessions SET {assignments} WHERE id = ?",
            values + (session_id,),
        )

    async def fetch_active(self, user_id: str) -> Optional[GameSession]:
        rows = await run_in_threadpool(
            self._execute,
            "SELECT * FROM game_sessions WHERE user_id = ? AND is_finished = 0 "
            "ORDER BY updated_at DESC, seq DESC LIMIT 1",
            (user_id,),
        )
        return self._from_row(rows[0]) if rows else None

    async def fetch_finished(self, user_id: str) -> List[GameSession]:
        rows = await run_in_threadpool(
            self._execute,
            "SELECT * FROM game_sessions WHERE user_id = ? AND is_finished = 1 "
            "ORDER BY started_at, seq",
            (user_id,),
        )
        return [self._from_row(row) for row in rows]

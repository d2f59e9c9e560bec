import logging
from typing import Optional

from .database import get_db_connection


class SQLiteHandler(logging.Handler):
    """
    A logging handler that writes logs to an SQLite database.

    Records logged with ``extra={"session_id": ...}`` keep the id in its own
    column so a quiz session's history can be queried back.
    """

    def __init__(self, db_path: Optional[str] = None, level=logging.INFO):
        super().__init__(level)
        self.db_path = db_path

    def emit(self, record):
        try:
            conn = get_db_connection(self.db_path)
            with conn:
                conn.execute(
                    "INSERT INTO logs (level, logger, session_id, message) "
                    "VALUES (?, ?, ?, ?)",
                    (
                        record.levelname,
                        record.name,
                        getattr(record, "session_id", None),
                        self.format(record),
                    ),
                )
            conn.close()
        except Exception:
            self.handleError(record)

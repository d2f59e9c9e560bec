import os
import sqlite3
from typing import Optional

from .config import settings


def get_db_connection(db_path: Optional[str] = None):
    """Establishes a connection to the SQLite database."""
    conn = sqlite3.connect(db_path or settings.db_path)
    conn.row_factory = sqlite3.Row
    return conn


def create_log_table(db_path: Optional[str] = None):
    """Creates the log table if it doesn't exist."""
    conn = get_db_connection(db_path)
    with conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
                level TEXT,
                logger TEXT,
                session_id TEXT,
                message TEXT
            );
        """
        )
    conn.close()


def create_session_table(db_path: Optional[str] = None):
    """Creates the game_sessions table if it doesn't exist."""
    conn = get_db_connection(db_path)
    with conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS game_sessions (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                user_id TEXT NOT NULL,
                list_ids TEXT NOT NULL,
                word_ids TEXT NOT NULL,
                mode TEXT NOT NULL,
                current_index INTEGER NOT NULL DEFAULT 0,
                answers TEXT NOT NULL,
                is_finished INTEGER NOT NULL DEFAULT 0,
                started_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
        """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_game_sessions_user "
            "ON game_sessions (user_id, is_finished)"
        )
    conn.close()


def init_db(db_path: Optional[str] = None):
    """Initializes the database and creates necessary tables."""
    db_path = db_path or settings.db_path
    db_dir = os.path.dirname(db_path)
    if db_dir and not os.path.exists(db_dir):
        os.makedirs(db_dir)
    create_log_table(db_path)
    create_session_table(db_path)

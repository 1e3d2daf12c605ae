"""SQLite helpers.

Keeps DB setup/connection code in one place.
"""
import sqlite3
from pathlib import Path
from typing import Optional

DB_PATH = str(Path(__file__).with_name("f1replay.db"))

def get_conn(db_path: Optional[str] = None) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path or DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn

def init_db(db_path: Optional[str] = None) -> None:
    with get_conn(db_path) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS responses (
                endpoint TEXT NOT NULL,
                query TEXT NOT NULL,
                session_key INTEGER,       -- NULL for session searches
                payload TEXT NOT NULL,
                fetched_at REAL NOT NULL,
                PRIMARY KEY (endpoint, query)
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_responses_session ON responses(session_key)"
        )
        conn.commit()

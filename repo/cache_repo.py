"""DB access for cached OpenF1 responses.

Rows are keyed by endpoint + query string and store the JSON body as text.
The client calls get/put instead of writing SQL inline.
"""
import json
import time
from typing import Any, Dict, List, Optional

from db import get_conn, init_db


class ResponseCache:
    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = db_path
        init_db(db_path)

    def get(self, endpoint: str, query: str) -> Optional[List[Dict[str, Any]]]:
        """Return the cached body for a request, or None."""
        with get_conn(self.db_path) as conn:
            row = conn.execute(
                "SELECT payload FROM responses WHERE endpoint = ? AND query = ?",
                (endpoint, query),
            ).fetchone()
        return json.loads(row["payload"]) if row else None

    def put(
        self,
        endpoint: str,
        query: str,
        payload: List[Dict[str, Any]],
        session_key: Optional[int] = None,
    ) -> None:
        with get_conn(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO responses (endpoint, query, session_key, payload, fetched_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(endpoint, query) DO UPDATE SET
                    payload=excluded.payload,
                    fetched_at=excluded.fetched_at
                """,
                (endpoint, query, session_key, json.dumps(payload), time.time()),
            )
            conn.commit()

    def delete_session(self, session_key: int) -> int:
        """Delete every cached response for a session. Returns rows removed."""
        with get_conn(self.db_path) as conn:
            cur = conn.execute("DELETE FROM responses WHERE session_key = ?", (session_key,))
            conn.commit()
        return cur.rowcount

    def sessions(self) -> List[Dict[str, Any]]:
        """Summary of cached sessions: key, response count, time range."""
        with get_conn(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT session_key,
                       COUNT(*) as response_count,
                       MIN(fetched_at) as first_fetch,
                       MAX(fetched_at) as last_fetch
                FROM responses
                WHERE session_key IS NOT NULL
                GROUP BY session_key
                ORDER BY session_key
                """
            ).fetchall()
        return [
            {
                "session_key": r["session_key"],
                "response_count": r["response_count"],
                "fetched_range": [r["first_fetch"], r["last_fetch"]],
            }
            for r in rows
        ]

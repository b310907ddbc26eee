import json
import os
import sqlite3
from typing import Any, Dict, Iterable, Optional, Sequence

from db_pool import SQLiteConnectionPool

DB_PATH = os.getenv("CASE_DB_PATH", "case_history.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


def configure(path: str) -> None:
    """Point the module at another database file and reset the pool."""
    global DB_PATH, _pool
    _pool.close_all()
    DB_PATH = str(path)
    _pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def init():
    with _conn() as con:
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS case_attempts (
              case_id       TEXT NOT NULL,
              position      INTEGER NOT NULL,
              timestamp     TEXT NOT NULL,
              score         INTEGER NOT NULL,
              breakdown     TEXT NOT NULL,
              answers       TEXT NOT NULL,
              backend_id    TEXT,
              pending_sync  INTEGER NOT NULL DEFAULT 1,
              PRIMARY KEY (case_id, timestamp)
            )
            """
        )
        con.execute(
            "CREATE INDEX IF NOT EXISTS idx_case_attempts_position ON case_attempts(case_id, position)"
        )
        con.execute(
            "CREATE INDEX IF NOT EXISTS idx_case_attempts_pending ON case_attempts(pending_sync)"
        )
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS case_last_result (
              case_id     TEXT PRIMARY KEY,
              payload     TEXT NOT NULL,
              updated_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        con.commit()


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def _decode_json_field(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def _row_to_attempt(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "timestamp": row["timestamp"],
        "score": row["score"],
        "breakdownByDomain": _decode_json_field(row["breakdown"], {}),
        "answers": _decode_json_field(row["answers"], {}),
        "backendId": row["backend_id"],
        "pendingSync": bool(row["pending_sync"]),
    }


# -------------- attempt history --------------
def list_case_attempts(case_id: str) -> list[Dict[str, Any]]:
    """Return the stored history for ``case_id``, newest first."""
    rows = _query(
        "SELECT * FROM case_attempts WHERE case_id = ? ORDER BY position ASC",
        [case_id],
    )
    return [_row_to_attempt(row) for row in rows]


def replace_case_attempts(case_id: str, attempts: Sequence[Dict[str, Any]]) -> None:
    """Rewrite the history of ``case_id`` in one transaction, keeping list order."""
    with _conn() as con:
        con.execute("DELETE FROM case_attempts WHERE case_id = ?", [case_id])
        con.executemany(
            """
            INSERT INTO case_attempts
            (case_id, position, timestamp, score, breakdown, answers, backend_id, pending_sync)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    case_id,
                    position,
                    attempt["timestamp"],
                    int(attempt["score"]),
                    json_dumps(attempt.get("breakdownByDomain") or {}),
                    json_dumps(attempt.get("answers") or {}),
                    attempt.get("backendId"),
                    1 if attempt.get("pendingSync") else 0,
                )
                for position, attempt in enumerate(attempts)
            ],
        )
        con.commit()


def list_attempt_case_ids() -> list[str]:
    rows = _query("SELECT DISTINCT case_id FROM case_attempts ORDER BY case_id")
    return [row["case_id"] for row in rows]


# -------------- last result slot --------------
def get_last_result(case_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT payload FROM case_last_result WHERE case_id = ?", [case_id])
    if not rows:
        return None
    return _decode_json_field(rows[0]["payload"], None)


def set_last_result(case_id: str, payload: Dict[str, Any]) -> None:
    _exec(
        """
        INSERT INTO case_last_result (case_id, payload, updated_at)
        VALUES (?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(case_id) DO UPDATE SET
            payload = excluded.payload,
            updated_at = CURRENT_TIMESTAMP
        """,
        [case_id, json_dumps(payload)],
    )

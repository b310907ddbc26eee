"""Persistence port for attempt history plus its in-memory and SQLite adapters."""
from __future__ import annotations

import copy
import logging
import sqlite3
import threading
from typing import Any, Dict, List, Optional

import db
from schemas import AttemptRecord

logger = logging.getLogger(__name__)


class AttemptStoreError(RuntimeError):
    """Raised when the durable local store cannot be read or written."""


class AttemptStore:
    """Durable per-case history (newest first) and a last-result slot."""

    def read_history(self, case_id: str) -> List[AttemptRecord]:
        raise NotImplementedError

    def write_history(self, case_id: str, records: List[AttemptRecord]) -> None:
        raise NotImplementedError

    def read_last_result(self, case_id: str) -> Optional[AttemptRecord]:
        raise NotImplementedError

    def write_last_result(self, case_id: str, record: AttemptRecord) -> None:
        raise NotImplementedError

    def list_case_ids(self) -> List[str]:
        raise NotImplementedError


class InMemoryAttemptStore(AttemptStore):
    def __init__(self) -> None:
        self._history: Dict[str, List[Dict[str, Any]]] = {}
        self._last: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def read_history(self, case_id: str) -> List[AttemptRecord]:
        with self._lock:
            rows = copy.deepcopy(self._history.get(case_id, []))
        return [AttemptRecord.model_validate(row) for row in rows]

    def write_history(self, case_id: str, records: List[AttemptRecord]) -> None:
        with self._lock:
            self._history[case_id] = [record.to_wire() for record in records]

    def read_last_result(self, case_id: str) -> Optional[AttemptRecord]:
        with self._lock:
            row = copy.deepcopy(self._last.get(case_id))
        return AttemptRecord.model_validate(row) if row else None

    def write_last_result(self, case_id: str, record: AttemptRecord) -> None:
        with self._lock:
            self._last[case_id] = record.to_wire()

    def list_case_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._history)


class SqliteAttemptStore(AttemptStore):
    """Adapter over the pooled SQLite database in :mod:`db`."""

    def __init__(self, db_module=db, *, initialise: bool = True) -> None:
        self._db = db_module
        if initialise:
            self._guard("initialise store", self._db.init)

    def _guard(self, action: str, func, *args):
        try:
            return func(*args)
        except (sqlite3.Error, OSError) as exc:
            logger.warning("Attempt store failed to %s: %s", action, exc)
            raise AttemptStoreError(f"Could not {action}: {exc}") from exc

    def read_history(self, case_id: str) -> List[AttemptRecord]:
        rows = self._guard("read history", self._db.list_case_attempts, case_id)
        return [AttemptRecord.model_validate(row) for row in rows]

    def write_history(self, case_id: str, records: List[AttemptRecord]) -> None:
        payload = [record.to_wire() for record in records]
        self._guard("write history", self._db.replace_case_attempts, case_id, payload)

    def read_last_result(self, case_id: str) -> Optional[AttemptRecord]:
        row = self._guard("read last result", self._db.get_last_result, case_id)
        return AttemptRecord.model_validate(row) if row else None

    def write_last_result(self, case_id: str, record: AttemptRecord) -> None:
        self._guard("write last result", self._db.set_last_result, case_id, record.to_wire())

    def list_case_ids(self) -> List[str]:
        return self._guard("list cases", self._db.list_attempt_case_ids)

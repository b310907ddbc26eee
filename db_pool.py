"""SQLite connection pool shared by the local attempt store."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Queue
from typing import Generator, List

logger = logging.getLogger(__name__)


class SQLiteConnectionPool:
    """Thread-safe SQLite connection pool.

    Connections are handed across threads (sync callbacks run off the request
    thread), so they are opened with ``check_same_thread=False`` and only ever used
    by one borrower at a time.
    """

    def __init__(self, database: str, max_connections: int = 5, timeout: float = 5.0):
        self.database = database
        self.max_connections = max_connections
        self.timeout = timeout
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._opened: List[sqlite3.Connection] = []

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database, timeout=self.timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Borrow a connection; uncommitted work is rolled back on return."""
        connection = None
        try:
            connection = self._pool.get(block=False)
        except Empty:
            with self._lock:
                if len(self._opened) < self.max_connections:
                    connection = self._create_connection()
                    self._opened.append(connection)
                    logger.debug("Opened SQLite connection %d for %s", len(self._opened), self.database)
            if connection is None:
                connection = self._pool.get(block=True, timeout=self.timeout)

        try:
            yield connection
        finally:
            try:
                connection.rollback()
                self._pool.put(connection)
            except sqlite3.Error as exc:
                logger.error("Error returning connection to pool: %s", exc)
                self._discard(connection)

    def _discard(self, connection: sqlite3.Connection) -> None:
        with self._lock:
            if connection in self._opened:
                self._opened.remove(connection)
        try:
            connection.close()
        except sqlite3.Error:
            logger.debug("Ignoring error while closing a broken connection", exc_info=True)

    def close_all(self) -> None:
        """Close every connection opened by this pool."""
        with self._lock:
            opened, self._opened = self._opened, []
        while True:
            try:
                self._pool.get(block=False)
            except Empty:
                break
        for connection in opened:
            try:
                connection.close()
            except sqlite3.Error:
                logger.debug("Ignoring error while closing connection", exc_info=True)

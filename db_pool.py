"""SQLite connection pool shared by the stats store."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from queue import Empty, Queue
from typing import Generator, List

logger = logging.getLogger(__name__)

class SQLiteConnectionPool:
    """Thread-safe SQLite connection pool.

    Connections may be handed to any thread, so they are opened with
    ``check_same_thread=False``; a connection is only ever used by the
    thread that currently holds it.
    """

    def __init__(self, database: str, max_connections: int = 5, busy_timeout: float = 5.0):
        self.database = database
        self.max_connections = max_connections
        self.busy_timeout = busy_timeout
        self._pool: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._created_connections = 0
        self._all: List[sqlite3.Connection] = []

    def _create_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with proper settings."""
        conn = sqlite3.connect(
            self.database,
            timeout=self.busy_timeout,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        # Enable foreign key constraints
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a connection from the pool or create a new one if needed."""
        connection = None
        try:
            connection = self._pool.get(block=False)
        except Empty:
            with self._lock:
                if self._created_connections < self.max_connections:
                    connection = self._create_connection()
                    self._created_connections += 1
                    self._all.append(connection)
                    logger.debug("Created new connection (total: %s)", self._created_connections)
            if connection is None:
                # If we've hit the limit, wait for a connection
                connection = self._pool.get(block=True)

        try:
            yield connection
        finally:
            try:
                # Anything not committed by the holder is discarded here
                connection.rollback()
                self._pool.put(connection)
            except sqlite3.Error as e:
                logger.error("Error returning connection to pool: %s", e)
                self._discard(connection)

    def _discard(self, connection: sqlite3.Connection) -> None:
        try:
            connection.close()
        except sqlite3.Error:
            logger.debug("Closing a broken pooled connection failed", exc_info=True)
        with self._lock:
            self._created_connections -= 1
            if connection in self._all:
                self._all.remove(connection)

    def close_all(self) -> None:
        """Close every connection this pool has opened."""
        with self._lock:
            connections, self._all = self._all, []
            self._created_connections = 0
        while True:
            try:
                self._pool.get(block=False)
            except Empty:
                break
        for connection in connections:
            try:
                connection.close()
            except sqlite3.Error:
                logger.debug("Failed to close pooled connection", exc_info=True)

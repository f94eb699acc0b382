"""
Database module for the API server.

Uses SQLite for persistent storage. The server itself defines no schema;
this module owns opening, checking and closing connections.
"""

import asyncio
import logging
import sqlite3
import threading
from typing import List

from apiserver.config import ServerConfig
from apiserver.errors import StorageConnectionError


logger = logging.getLogger(__name__)


class Database:
    """
    Thread-safe SQLite database handle.

    Each thread gets its own connection; all of them are closed together.
    """

    def __init__(self, db_path: str = "apiserver.db"):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file

        Raises:
            sqlite3.Error: If the file cannot be opened
        """
        self.db_path = db_path
        self._local = threading.local()
        self._lock = threading.Lock()
        self._connections: List[sqlite3.Connection] = []
        self._closed = False
        try:
            self._init_db()
        except sqlite3.Error:
            self.close()
            raise

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if self._closed:
            raise sqlite3.ProgrammingError("Database is closed")

        if not hasattr(self._local, 'conn'):
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._lock:
                self._connections.append(conn)
        return self._local.conn

    def _init_db(self):
        """Open the first connection and make sure the file is usable."""
        conn = self._get_connection()
        conn.execute("PRAGMA foreign_keys = ON")
        # Forces SQLite to actually read the file header
        conn.execute("PRAGMA schema_version").fetchone()

    def ping(self) -> bool:
        """
        Check that the database answers queries.

        Returns:
            True if a trivial query succeeded, False otherwise
        """
        try:
            row = self._get_connection().execute("SELECT 1").fetchone()
            return row[0] == 1
        except sqlite3.Error as e:
            logger.warning(f"Database ping failed: {e}")
            return False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self):
        """Close all database connections."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            connections, self._connections = self._connections, []

        for conn in connections:
            conn.close()
        logger.info(f"Database closed: {self.db_path}")


def _close_abandoned(future: asyncio.Future):
    """Close a database whose open finished after its attempt was given up."""
    if future.cancelled() or future.exception() is not None:
        return
    db = future.result()
    logger.warning(f"Closing database opened after its attempt was abandoned: {db.db_path}")
    db.close()


async def connect_db(config: ServerConfig) -> Database:
    """
    Open the database described by the configuration.

    Each attempt runs in a worker thread and is bounded by
    config.db_connect_timeout. Failed attempts are retried with
    exponential backoff.

    Args:
        config: Server configuration

    Returns:
        Connected Database

    Raises:
        StorageConnectionError: If all attempts fail
    """
    last_exception = None
    for attempt in range(config.db_retry_attempts):
        opening = asyncio.ensure_future(asyncio.to_thread(Database, config.database_path))
        try:
            db = await asyncio.wait_for(
                asyncio.shield(opening),
                timeout=config.db_connect_timeout
            )
            logger.info(f"Database connected: {config.database_path}")
            return db

        except asyncio.CancelledError:
            opening.add_done_callback(_close_abandoned)
            raise

        except (sqlite3.Error, OSError, asyncio.TimeoutError) as e:
            if not opening.done():
                opening.add_done_callback(_close_abandoned)
            last_exception = e
            if attempt < config.db_retry_attempts - 1:
                delay = config.db_retry_delay * (2 ** attempt)  # Exponential backoff
                logger.warning(
                    f"Database connection to {config.database_path} failed "
                    f"(attempt {attempt + 1}/{config.db_retry_attempts}): {e!r}. "
                    f"Retrying in {delay}s..."
                )
                await asyncio.sleep(delay)
            else:
                logger.error(
                    f"Database connection to {config.database_path} failed after "
                    f"{config.db_retry_attempts} attempts: {e!r}"
                )

    raise StorageConnectionError(
        f"Could not connect to database at {config.database_path}: {last_exception!r}"
    ) from last_exception

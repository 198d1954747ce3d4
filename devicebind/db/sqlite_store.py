"""
SQLite Device Store
===================

Single-node backend. Every unit of work opens its own connection and
runs inside BEGIN IMMEDIATE, which takes the database write lock up
front; concurrent writers queue on the busy timeout instead of both
reading "no conflict".

Connection settings:
- WAL journal (readers never block the writer)
- foreign_keys = ON
- busy timeout from configuration
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Final, Iterator

from devicebind.core.errors import DeviceBindError, ErrorCode, StorageError
from devicebind.db.base import SCHEMA, DeviceStore, SqlStoreTransaction, conflict_from_constraint


DEFAULT_BUSY_TIMEOUT: Final[float] = 30.0

_log = logging.getLogger("devicebind.db.sqlite")


def map_sqlite_error(error: sqlite3.Error) -> DeviceBindError:
    """Translate a driver error into the structured error set."""
    if isinstance(error, sqlite3.IntegrityError):
        return conflict_from_constraint(str(error))
    message = str(error).lower()
    if isinstance(error, sqlite3.OperationalError) and ("locked" in message or "busy" in message):
        return StorageError(ErrorCode.STORAGE_BUSY)
    return StorageError(ErrorCode.STORAGE_FAILURE)


class SqliteDeviceStore(DeviceStore):
    """
    DeviceStore on a SQLite file.

    Usage:
        store = SqliteDeviceStore(data_dir / "devicebind.db")
        store.initialize()
    """

    __slots__ = ("_db_path", "_busy_timeout")

    def __init__(self, db_path: Path | str, busy_timeout: float = DEFAULT_BUSY_TIMEOUT) -> None:
        """
        Args:
            db_path: Path to SQLite database file
            busy_timeout: Seconds to wait for the write lock
        """
        self._db_path = Path(db_path)
        self._busy_timeout = busy_timeout

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _get_connection(self) -> sqlite3.Connection:
        """Open a connection in autocommit mode; transactions are explicit."""
        conn = sqlite3.connect(
            self._db_path,
            timeout=self._busy_timeout,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute(f"PRAGMA busy_timeout = {int(self._busy_timeout * 1000)}")
        return conn

    def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = self._get_connection()
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            _log.error(f"Schema initialization failed: {e}")
            raise map_sqlite_error(e) from e
        finally:
            conn.close()

        _log.info(f"SQLite device store ready at {self._db_path.name}")

    def close(self) -> None:
        """Connections are per unit of work; nothing is held open."""

    @contextmanager
    def transaction(self) -> Iterator[SqlStoreTransaction]:
        conn = self._get_connection()
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise map_sqlite_error(e) from e

            try:
                yield SqlStoreTransaction(conn.cursor(), "?")
            except sqlite3.Error as e:
                self._rollback(conn)
                raise map_sqlite_error(e) from e
            except BaseException:
                self._rollback(conn)
                raise

            try:
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback(conn)
                raise map_sqlite_error(e) from e
        finally:
            conn.close()

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")

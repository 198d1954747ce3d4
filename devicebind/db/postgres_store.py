"""
PostgreSQL Device Store
=======================

Multi-node backend on psycopg2. Every unit of work runs at SERIALIZABLE
isolation, so two concurrent check-then-issue transactions cannot both
commit; the loser fails with a serialization error, surfaced as
STORAGE_BUSY and retried by DeviceStore.atomic().
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Final, Iterator

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2.extensions import ISOLATION_LEVEL_SERIALIZABLE
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from devicebind.core.errors import DeviceBindError, ErrorCode, StorageError
from devicebind.db.base import SCHEMA, DeviceStore, SqlStoreTransaction, conflict_from_constraint


DEFAULT_MIN_CONNECTIONS: Final[int] = 1
DEFAULT_MAX_CONNECTIONS: Final[int] = 10

_log = logging.getLogger("devicebind.db.postgres")


def map_postgres_error(error: psycopg2.Error) -> DeviceBindError:
    """Translate a driver error into the structured error set."""
    if isinstance(error, (pg_errors.SerializationFailure, pg_errors.DeadlockDetected,
                          pg_errors.LockNotAvailable)):
        return StorageError(ErrorCode.STORAGE_BUSY)
    if isinstance(error, psycopg2.IntegrityError):
        constraint = getattr(error.diag, "constraint_name", None) or str(error)
        return conflict_from_constraint(constraint)
    if isinstance(error, psycopg2.OperationalError):
        return StorageError(ErrorCode.STORAGE_BUSY, "Database unavailable")
    return StorageError(ErrorCode.STORAGE_FAILURE)


class PostgresDeviceStore(DeviceStore):
    """
    DeviceStore on PostgreSQL.

    Usage:
        store = PostgresDeviceStore("postgresql://user@host/devicebind")
        store.initialize()
        ...
        store.close()
    """

    __slots__ = ("_dsn", "_min_connections", "_max_connections", "_pool")

    def __init__(
        self,
        dsn: str,
        min_connections: int = DEFAULT_MIN_CONNECTIONS,
        max_connections: int = DEFAULT_MAX_CONNECTIONS,
    ) -> None:
        self._dsn = dsn
        self._min_connections = min_connections
        self._max_connections = max_connections
        self._pool: ThreadedConnectionPool | None = None

    def _get_pool(self) -> ThreadedConnectionPool:
        if self._pool is None:
            try:
                self._pool = ThreadedConnectionPool(
                    self._min_connections,
                    self._max_connections,
                    dsn=self._dsn,
                )
            except psycopg2.Error as e:
                _log.error(f"Could not connect to PostgreSQL: {type(e).__name__}")
                raise map_postgres_error(e) from e
        return self._pool

    def initialize(self) -> None:
        """Create the schema if it doesn't exist."""
        pool = self._get_pool()
        conn = pool.getconn()
        try:
            with conn.cursor() as cursor:
                cursor.execute(SCHEMA)
            conn.commit()
        except psycopg2.Error as e:
            conn.rollback()
            _log.error(f"Schema initialization failed: {type(e).__name__}")
            raise map_postgres_error(e) from e
        finally:
            pool.putconn(conn)

        _log.info("PostgreSQL device store ready")

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None

    @contextmanager
    def transaction(self) -> Iterator[SqlStoreTransaction]:
        pool = self._get_pool()
        conn = pool.getconn()
        try:
            if conn.isolation_level != ISOLATION_LEVEL_SERIALIZABLE:
                conn.set_isolation_level(ISOLATION_LEVEL_SERIALIZABLE)

            cursor = conn.cursor(cursor_factory=RealDictCursor)
            try:
                yield SqlStoreTransaction(cursor, "%s")
            except psycopg2.Error as e:
                conn.rollback()
                raise map_postgres_error(e) from e
            except BaseException:
                conn.rollback()
                raise
            finally:
                cursor.close()

            try:
                conn.commit()
            except psycopg2.Error as e:
                conn.rollback()
                raise map_postgres_error(e) from e
        finally:
            pool.putconn(conn, close=bool(conn.closed))

"""
Database module - Account and session token persistence.

Backends:
- sqlite_store.py: single node, BEGIN IMMEDIATE transactions
- postgres_store.py: multi node, SERIALIZABLE transactions

Security Considerations:
- Only token hashes are stored
- Exclusivity is checked and applied in one transaction
"""

from __future__ import annotations

from pathlib import Path

from devicebind.db.base import DeviceStore, StoreTransaction
from devicebind.db.models import Account, SessionToken
from devicebind.db.sqlite_store import DEFAULT_BUSY_TIMEOUT, SqliteDeviceStore


def open_store(url: str, busy_timeout: float = DEFAULT_BUSY_TIMEOUT) -> DeviceStore:
    """
    Build the store for a database url.

    Args:
        url: "sqlite:///<path>" or "postgresql://..." / "postgres://..."
        busy_timeout: SQLite write-lock wait in seconds

    Raises:
        ValueError: For any other scheme
    """
    if url.startswith("sqlite:///"):
        return SqliteDeviceStore(Path(url[len("sqlite:///"):]), busy_timeout=busy_timeout)

    if url.startswith(("postgresql://", "postgres://")):
        # psycopg2 is only needed when PostgreSQL is configured
        from devicebind.db.postgres_store import PostgresDeviceStore
        return PostgresDeviceStore(url)

    raise ValueError(f"Unsupported database url scheme: {url.split(':', 1)[0]}")


__all__ = [
    "Account",
    "DeviceStore",
    "SessionToken",
    "SqliteDeviceStore",
    "StoreTransaction",
    "open_store",
]

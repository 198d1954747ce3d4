"""
Session Token Store
===================

Storage contract for accounts and session tokens, and the SQL shared
by the SQLite and PostgreSQL backends.

The exclusivity invariant (one live token per account, one live token
per device) is composed by insert_token_if_none_live() inside a single
serializable transaction. Partial unique indexes over live rows back it
up at the storage layer.

Security Notes:
- Only token hashes are stored
- All statements use bound parameters
- A failed transaction leaves no new token behind
"""

from __future__ import annotations

import logging
import random
import time
from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Final, List, Optional, Sequence, TypeVar

from devicebind.core.errors import ConflictError, ErrorCode, StorageError
from devicebind.db.models import Account, SessionToken, to_db_time


T = TypeVar("T")

DEFAULT_TOKEN_RETENTION: Final[timedelta] = timedelta(days=7)
DEFAULT_TRANSACTION_ATTEMPTS: Final[int] = 5

_log = logging.getLogger("devicebind.db")


SCHEMA: Final[str] = """
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    username TEXT NOT NULL,
    email TEXT NOT NULL,
    password_hash TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    last_login TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_accounts_username ON accounts (lower(username));
CREATE UNIQUE INDEX IF NOT EXISTS uq_accounts_email ON accounts (email);

CREATE TABLE IF NOT EXISTS session_tokens (
    id TEXT PRIMARY KEY,
    token_hash TEXT NOT NULL UNIQUE,
    account_id TEXT NOT NULL REFERENCES accounts (id) ON DELETE CASCADE,
    processed_hash TEXT NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    is_valid INTEGER NOT NULL DEFAULT 1,
    last_used_at TEXT,
    invalidated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_session_tokens_account ON session_tokens (account_id);
CREATE INDEX IF NOT EXISTS idx_session_tokens_device ON session_tokens (processed_hash);
CREATE INDEX IF NOT EXISTS idx_session_tokens_expires ON session_tokens (expires_at);

CREATE UNIQUE INDEX IF NOT EXISTS uq_session_tokens_live_account_id
    ON session_tokens (account_id) WHERE is_valid = 1;
CREATE UNIQUE INDEX IF NOT EXISTS uq_session_tokens_live_processed_hash
    ON session_tokens (processed_hash) WHERE is_valid = 1;
"""

# Constraint/column fragment -> conflict code, checked in order
_CONSTRAINT_CODES: Final[tuple[tuple[str, ErrorCode], ...]] = (
    ("processed_hash", ErrorCode.DEVICE_ALREADY_REGISTERED),
    ("account_id", ErrorCode.ACCOUNT_ACTIVE_ON_OTHER_DEVICE),
    ("username", ErrorCode.USERNAME_TAKEN),
    ("email", ErrorCode.EMAIL_TAKEN),
)


def conflict_from_constraint(description: str) -> ConflictError | StorageError:
    """
    Map a unique-constraint violation to its conflict code.

    Args:
        description: Constraint name or driver message naming the column
    """
    text = (description or "").lower()
    for fragment, code in _CONSTRAINT_CODES:
        if fragment in text:
            return ConflictError(code)
    return StorageError(ErrorCode.STORAGE_FAILURE, "Constraint violation")


class StoreTransaction(ABC):
    """
    Narrow repository interface available inside one unit of work.

    Every method sees and mutates state within the same serializable
    transaction; nothing is visible to others until it commits.
    """

    # Accounts

    @abstractmethod
    def get_account(self, account_id: str) -> Optional[Account]: ...

    @abstractmethod
    def find_account_by_login(self, login: str) -> Optional[Account]:
        """Look up by username (case-insensitive) or email."""

    @abstractmethod
    def username_exists(self, username: str) -> bool: ...

    @abstractmethod
    def email_exists(self, email: str, exclude_account_id: Optional[str] = None) -> bool: ...

    @abstractmethod
    def insert_account(self, account: Account) -> None: ...

    @abstractmethod
    def update_account(self, account_id: str, now: datetime, **fields: Any) -> bool:
        """Update password_hash, email, is_active or last_login."""

    @abstractmethod
    def delete_account(self, account_id: str) -> bool:
        """Remove the account and every token it owns."""

    # Tokens

    @abstractmethod
    def find_live_token_by_account(self, account_id: str, now: datetime) -> Optional[SessionToken]: ...

    @abstractmethod
    def find_live_token_by_hash(
        self,
        processed_hash: str,
        now: datetime,
        exclude_account_id: Optional[str] = None,
    ) -> Optional[SessionToken]:
        """Live token for this device held by an active account."""

    @abstractmethod
    def insert_token_if_none_live(self, token: SessionToken, now: datetime) -> int:
        """
        Insert token unless exclusivity would be violated.

        Returns:
            Number of same-device tokens rotated out

        Raises:
            ConflictError: DEVICE_ALREADY_REGISTERED or
                ACCOUNT_ACTIVE_ON_OTHER_DEVICE
        """

    @abstractmethod
    def invalidate_tokens_where(
        self,
        now: datetime,
        *,
        account_id: Optional[str] = None,
        processed_hash: Optional[str] = None,
        token_hash: Optional[str] = None,
        exclude_processed_hash: Optional[str] = None,
    ) -> int:
        """Invalidate valid tokens matching every given filter."""

    @abstractmethod
    def list_live_tokens(self, account_id: str, now: datetime) -> List[SessionToken]: ...

    @abstractmethod
    def touch_token(self, token_hash: str, now: datetime) -> Optional[SessionToken]:
        """Refresh last_used_at of a live token; None if not live."""

    @abstractmethod
    def purge_tokens(self, now: datetime, retention: timedelta) -> int: ...

    @abstractmethod
    def device_stats(self, now: datetime) -> Dict[str, int]: ...


class SqlStoreTransaction(StoreTransaction):
    """
    StoreTransaction over a DB-API cursor.

    SQL is written with "?" placeholders and rewritten for drivers
    using the "format" paramstyle.
    """

    __slots__ = ("_cursor", "_placeholder")

    _TOKEN_COLUMNS: Final[str] = (
        "id, token_hash, account_id, processed_hash, created_at, expires_at, "
        "is_valid, last_used_at, invalidated_at"
    )
    _UPDATABLE_ACCOUNT_FIELDS: Final[frozenset[str]] = frozenset({
        "password_hash", "email", "is_active", "last_login",
    })

    def __init__(self, cursor: Any, placeholder: str = "?") -> None:
        self._cursor = cursor
        self._placeholder = placeholder

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> Any:
        if self._placeholder != "?":
            sql = sql.replace("?", self._placeholder)
        self._cursor.execute(sql, tuple(params))
        return self._cursor

    def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Any:
        return self._execute(sql, params).fetchone()

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def get_account(self, account_id: str) -> Optional[Account]:
        row = self._fetchone("SELECT * FROM accounts WHERE id = ?", (account_id,))
        return Account.from_row(row) if row else None

    def find_account_by_login(self, login: str) -> Optional[Account]:
        row = self._fetchone(
            "SELECT * FROM accounts WHERE lower(username) = lower(?) OR email = lower(?)",
            (login, login),
        )
        return Account.from_row(row) if row else None

    def username_exists(self, username: str) -> bool:
        row = self._fetchone(
            "SELECT 1 AS found FROM accounts WHERE lower(username) = lower(?)",
            (username,),
        )
        return row is not None

    def email_exists(self, email: str, exclude_account_id: Optional[str] = None) -> bool:
        if exclude_account_id is None:
            row = self._fetchone("SELECT 1 AS found FROM accounts WHERE email = ?", (email,))
        else:
            row = self._fetchone(
                "SELECT 1 AS found FROM accounts WHERE email = ? AND id <> ?",
                (email, exclude_account_id),
            )
        return row is not None

    def insert_account(self, account: Account) -> None:
        self._execute(
            """
            INSERT INTO accounts (id, username, email, password_hash, is_active,
                                  created_at, updated_at, last_login)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                account.id,
                account.username,
                account.email,
                account.password_hash,
                1 if account.is_active else 0,
                to_db_time(account.created_at),
                to_db_time(account.updated_at),
                to_db_time(account.last_login) if account.last_login else None,
            ),
        )

    def update_account(self, account_id: str, now: datetime, **fields: Any) -> bool:
        unknown = set(fields) - self._UPDATABLE_ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"Cannot update account fields: {sorted(unknown)}")

        assignments = ["updated_at = ?"]
        params: List[Any] = [to_db_time(now)]
        for name, value in fields.items():
            if isinstance(value, bool):
                value = 1 if value else 0
            elif isinstance(value, datetime):
                value = to_db_time(value)
            assignments.append(f"{name} = ?")
            params.append(value)
        params.append(account_id)

        cursor = self._execute(
            f"UPDATE accounts SET {', '.join(assignments)} WHERE id = ?",
            params,
        )
        return cursor.rowcount > 0

    def delete_account(self, account_id: str) -> bool:
        self._execute("DELETE FROM session_tokens WHERE account_id = ?", (account_id,))
        cursor = self._execute("DELETE FROM accounts WHERE id = ?", (account_id,))
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def find_live_token_by_account(self, account_id: str, now: datetime) -> Optional[SessionToken]:
        row = self._fetchone(
            f"""
            SELECT {self._TOKEN_COLUMNS} FROM session_tokens
            WHERE account_id = ? AND is_valid = 1 AND expires_at > ?
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (account_id, to_db_time(now)),
        )
        return SessionToken.from_row(row) if row else None

    def find_live_token_by_hash(
        self,
        processed_hash: str,
        now: datetime,
        exclude_account_id: Optional[str] = None,
    ) -> Optional[SessionToken]:
        sql = f"""
            SELECT {self._TOKEN_COLUMNS} FROM session_tokens
            WHERE processed_hash = ? AND is_valid = 1 AND expires_at > ?
              AND account_id IN (SELECT id FROM accounts WHERE is_active = 1)
        """
        params: List[Any] = [processed_hash, to_db_time(now)]
        if exclude_account_id is not None:
            sql += " AND account_id <> ?"
            params.append(exclude_account_id)
        row = self._fetchone(sql, params)
        return SessionToken.from_row(row) if row else None

    def insert_token_if_none_live(self, token: SessionToken, now: datetime) -> int:
        now_text = to_db_time(now)

        # Expired or orphaned-by-deactivation rows must not trip the live indexes
        self._execute(
            """
            UPDATE session_tokens SET is_valid = 0, invalidated_at = ?
            WHERE is_valid = 1
              AND (account_id = ? OR processed_hash = ?)
              AND (expires_at <= ?
                   OR account_id IN (SELECT id FROM accounts WHERE is_active = 0))
            """,
            (now_text, token.account_id, token.processed_hash, now_text),
        )

        if self.find_live_token_by_hash(token.processed_hash, now, exclude_account_id=token.account_id):
            raise ConflictError(ErrorCode.DEVICE_ALREADY_REGISTERED)

        current = self.find_live_token_by_account(token.account_id, now)
        if current is not None and current.processed_hash != token.processed_hash:
            raise ConflictError(ErrorCode.ACCOUNT_ACTIVE_ON_OTHER_DEVICE)

        rotated = self.invalidate_tokens_where(
            now,
            account_id=token.account_id,
            processed_hash=token.processed_hash,
        )

        self._execute(
            f"""
            INSERT INTO session_tokens ({self._TOKEN_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                token.id,
                token.token_hash,
                token.account_id,
                token.processed_hash,
                to_db_time(token.created_at),
                to_db_time(token.expires_at),
                1,
                to_db_time(token.last_used_at) if token.last_used_at else None,
                None,
            ),
        )
        return rotated

    def invalidate_tokens_where(
        self,
        now: datetime,
        *,
        account_id: Optional[str] = None,
        processed_hash: Optional[str] = None,
        token_hash: Optional[str] = None,
        exclude_processed_hash: Optional[str] = None,
    ) -> int:
        conditions = ["is_valid = 1"]
        params: List[Any] = [to_db_time(now)]
        for column, value, operator in (
            ("account_id", account_id, "="),
            ("processed_hash", processed_hash, "="),
            ("token_hash", token_hash, "="),
            ("processed_hash", exclude_processed_hash, "<>"),
        ):
            if value is not None:
                conditions.append(f"{column} {operator} ?")
                params.append(value)

        if len(conditions) == 1:
            raise ValueError("At least one token filter is required")

        cursor = self._execute(
            f"UPDATE session_tokens SET is_valid = 0, invalidated_at = ? WHERE {' AND '.join(conditions)}",
            params,
        )
        return cursor.rowcount

    def list_live_tokens(self, account_id: str, now: datetime) -> List[SessionToken]:
        rows = self._execute(
            f"""
            SELECT {self._TOKEN_COLUMNS} FROM session_tokens
            WHERE account_id = ? AND is_valid = 1 AND expires_at > ?
            ORDER BY COALESCE(last_used_at, created_at) DESC
            """,
            (account_id, to_db_time(now)),
        ).fetchall()
        return [SessionToken.from_row(row) for row in rows]

    def touch_token(self, token_hash: str, now: datetime) -> Optional[SessionToken]:
        now_text = to_db_time(now)
        cursor = self._execute(
            """
            UPDATE session_tokens SET last_used_at = ?
            WHERE token_hash = ? AND is_valid = 1 AND expires_at > ?
            """,
            (now_text, token_hash, now_text),
        )
        if cursor.rowcount == 0:
            return None
        row = self._fetchone(
            f"SELECT {self._TOKEN_COLUMNS} FROM session_tokens WHERE token_hash = ?",
            (token_hash,),
        )
        return SessionToken.from_row(row) if row else None

    def purge_tokens(self, now: datetime, retention: timedelta) -> int:
        cutoff = to_db_time(now - retention)
        cursor = self._execute(
            """
            DELETE FROM session_tokens
            WHERE expires_at <= ?
               OR (is_valid = 0 AND COALESCE(invalidated_at, created_at) < ?)
            """,
            (cutoff, cutoff),
        )
        return cursor.rowcount

    def device_stats(self, now: datetime) -> Dict[str, int]:
        tokens = self._fetchone(
            """
            SELECT COUNT(DISTINCT processed_hash) AS unique_devices,
                   COUNT(*) AS live_tokens,
                   COUNT(DISTINCT account_id) AS accounts_with_live_tokens
            FROM session_tokens
            WHERE is_valid = 1 AND expires_at > ?
            """,
            (to_db_time(now),),
        )
        accounts = self._fetchone(
            """
            SELECT COUNT(*) AS total_accounts,
                   COALESCE(SUM(CASE WHEN is_active = 1 THEN 1 ELSE 0 END), 0) AS active_accounts
            FROM accounts
            """
        )
        return {
            "unique_devices": int(tokens["unique_devices"]),
            "live_tokens": int(tokens["live_tokens"]),
            "accounts_with_live_tokens": int(tokens["accounts_with_live_tokens"]),
            "total_accounts": int(accounts["total_accounts"]),
            "active_accounts": int(accounts["active_accounts"]),
        }


class DeviceStore(ABC):
    """
    Durable store handle, constructed once at startup and passed in.

    Usage:
        store = SqliteDeviceStore(db_path)
        store.initialize()

        with store.transaction() as tx:
            tx.insert_token_if_none_live(token, now)

        # Or, retried on contention
        store.atomic(lambda tx: tx.insert_token_if_none_live(token, now))
    """

    @abstractmethod
    def initialize(self) -> None:
        """Create the schema if needed."""

    @abstractmethod
    def close(self) -> None: ...

    @abstractmethod
    def transaction(self) -> AbstractContextManager[StoreTransaction]:
        """
        Serializable unit of work.

        Commits on normal exit, rolls back on any exception.

        Raises:
            StorageError: STORAGE_BUSY on contention, STORAGE_FAILURE otherwise
            ConflictError: When a uniqueness backstop fires
        """

    def atomic(
        self,
        work: Callable[[StoreTransaction], T],
        attempts: int = DEFAULT_TRANSACTION_ATTEMPTS,
    ) -> T:
        """
        Run work in a transaction, retrying STORAGE_BUSY with backoff.

        work must be safe to re-run; it sees a fresh transaction each time.
        """
        delay = 0.01
        for attempt in range(1, attempts + 1):
            try:
                with self.transaction() as tx:
                    return work(tx)
            except StorageError as e:
                if e.code != ErrorCode.STORAGE_BUSY or attempt == attempts:
                    raise
                _log.debug(f"Transaction contention, retrying (attempt {attempt}/{attempts})")
                time.sleep(delay + random.uniform(0, delay))
                delay *= 2
        raise StorageError(ErrorCode.STORAGE_BUSY)

    # Single-statement conveniences

    def get_account(self, account_id: str) -> Optional[Account]:
        with self.transaction() as tx:
            return tx.get_account(account_id)

    def find_account_by_login(self, login: str) -> Optional[Account]:
        with self.transaction() as tx:
            return tx.find_account_by_login(login)

    def list_live_tokens(self, account_id: str, now: datetime) -> List[SessionToken]:
        with self.transaction() as tx:
            return tx.list_live_tokens(account_id, now)

    def touch_token(self, token_hash: str, now: datetime) -> Optional[SessionToken]:
        return self.atomic(lambda tx: tx.touch_token(token_hash, now))

    def purge_tokens(self, now: datetime, retention: timedelta = DEFAULT_TOKEN_RETENTION) -> int:
        return self.atomic(lambda tx: tx.purge_tokens(now, retention))

    def device_stats(self, now: datetime) -> Dict[str, int]:
        with self.transaction() as tx:
            return tx.device_stats(now)

    def __enter__(self) -> "DeviceStore":
        self.initialize()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

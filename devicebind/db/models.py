"""
Persistence Records
===================

Account and SessionToken as stored by every DeviceStore backend.

Timestamps are stored as ISO-8601 UTC strings with microsecond
precision so they compare correctly as text on every backend.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def to_db_time(value: datetime) -> str:
    """Aware datetime to the stored text form."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    """Stored text form back to an aware datetime."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True, slots=True)
class Account:
    """
    User account.

    Note: password_hash is never exposed in repr or public output.
    """

    id: str
    username: str
    email: str
    password_hash: str
    is_active: bool
    created_at: datetime
    updated_at: datetime
    last_login: Optional[datetime] = None

    def __repr__(self) -> str:
        return (
            f"Account(id={self.id!r}, username={self.username!r}, "
            f"is_active={self.is_active})"
        )

    def to_public_dict(self) -> Dict[str, Any]:
        """Fields safe to return to the account owner."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "isActive": self.is_active,
            "createdAt": self.created_at.isoformat(),
            "lastLogin": self.last_login.isoformat() if self.last_login else None,
        }

    @classmethod
    def from_row(cls, row: Any) -> "Account":
        return cls(
            id=row["id"],
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            is_active=bool(row["is_active"]),
            created_at=from_db_time(row["created_at"]),
            updated_at=from_db_time(row["updated_at"]),
            last_login=from_db_time(row["last_login"]),
        )


@dataclass(frozen=True, slots=True)
class SessionToken:
    """
    Stored session token record.

    Only the token hash is kept; the bearer token itself never is.
    """

    id: str
    token_hash: str
    account_id: str
    processed_hash: str
    created_at: datetime
    expires_at: datetime
    is_valid: bool = True
    last_used_at: Optional[datetime] = None
    invalidated_at: Optional[datetime] = None

    def __repr__(self) -> str:
        return (
            f"SessionToken(id={self.id!r}, account_id={self.account_id!r}, "
            f"is_valid={self.is_valid}, expires_at={self.expires_at.isoformat()})"
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_live(self, now: datetime) -> bool:
        """Valid and not yet expired."""
        return self.is_valid and not self.is_expired(now)

    @classmethod
    def from_row(cls, row: Any) -> "SessionToken":
        return cls(
            id=row["id"],
            token_hash=row["token_hash"],
            account_id=row["account_id"],
            processed_hash=row["processed_hash"],
            created_at=from_db_time(row["created_at"]),
            expires_at=from_db_time(row["expires_at"]),
            is_valid=bool(row["is_valid"]),
            last_used_at=from_db_time(row["last_used_at"]),
            invalidated_at=from_db_time(row["invalidated_at"]),
        )

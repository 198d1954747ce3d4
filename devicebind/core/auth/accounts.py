"""
Account Management
==================

Account lifecycle around the device authority.

Security Features:
- Argon2id password hashing
- Unknown logins cost the same as wrong passwords
- Password change, deactivation and deletion invalidate every token
  in the same transaction
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from devicebind.core.auth.argon2_auth import Argon2Hasher
from devicebind.core.errors import (
    AuthenticationError,
    ConflictError,
    ErrorCode,
)
from devicebind.db.base import DeviceStore, StoreTransaction
from devicebind.db.models import Account
from devicebind.utils.validators import (
    validate_credentials,
    validate_email,
    validate_password,
    validate_username,
)


_log = logging.getLogger("devicebind.auth.accounts")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountManager:
    """
    Account operations over a DeviceStore.

    Usage:
        accounts = AccountManager(store, Argon2Hasher())
        account = accounts.authenticate("alice", "Secret123")
        accounts.change_password(account.id, "Secret123", "Better456")
    """

    __slots__ = ("_store", "_hasher", "_clock")

    def __init__(
        self,
        store: DeviceStore,
        hasher: Optional[Argon2Hasher] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._hasher = hasher or Argon2Hasher()
        self._clock = clock

    @property
    def hasher(self) -> Argon2Hasher:
        return self._hasher

    def build_account(self, username: str, email: str, password: str) -> Account:
        """
        Validate registration input and build an unsaved Account.

        Raises:
            ValidationError: INVALID_INPUT for any malformed field
        """
        username = validate_username(username)
        email = validate_email(email)
        password = validate_password(password)

        now = self._clock()
        return Account(
            id=str(uuid.uuid4()),
            username=username,
            email=email,
            password_hash=self._hasher.hash(password),
            is_active=True,
            created_at=now,
            updated_at=now,
            last_login=now,
        )

    @staticmethod
    def insert_unique(tx: StoreTransaction, account: Account) -> None:
        """
        Insert within the caller's transaction after uniqueness checks.

        Raises:
            ConflictError: USERNAME_TAKEN or EMAIL_TAKEN
        """
        if tx.username_exists(account.username):
            raise ConflictError(ErrorCode.USERNAME_TAKEN)
        if tx.email_exists(account.email):
            raise ConflictError(ErrorCode.EMAIL_TAKEN)
        tx.insert_account(account)

    def get(self, account_id: str) -> Account:
        """
        Raises:
            AuthenticationError: ACCOUNT_NOT_FOUND
        """
        account = self._store.get_account(account_id)
        if account is None:
            raise AuthenticationError(ErrorCode.ACCOUNT_NOT_FOUND)
        return account

    def check_credentials(self, login: str, password: str) -> Account:
        """
        Verify a login (username or email) and password, active or not.

        Raises:
            ValidationError: If either field is missing
            AuthenticationError: INVALID_CREDENTIALS
        """
        login, password = validate_credentials(login, password)

        account = self._store.find_account_by_login(login)
        if account is None:
            self._hasher.verify_dummy(password)
            raise AuthenticationError(ErrorCode.INVALID_CREDENTIALS)

        if not self._hasher.verify(password, account.password_hash):
            _log.warning(f"Failed password verification for account {account.id}")
            raise AuthenticationError(ErrorCode.INVALID_CREDENTIALS)

        return account

    def authenticate(self, login: str, password: str) -> Account:
        """
        Verify credentials of an active account.

        Raises:
            AuthenticationError: INVALID_CREDENTIALS or ACCOUNT_INACTIVE
        """
        account = self.check_credentials(login, password)
        if not account.is_active:
            raise AuthenticationError(ErrorCode.ACCOUNT_INACTIVE)
        return account

    def change_password(self, account_id: str, current_password: str, new_password: str) -> int:
        """
        Replace the password and invalidate every token of the account.

        Returns:
            Number of tokens invalidated
        """
        account = self.get(account_id)
        if not self._hasher.verify(current_password or "", account.password_hash):
            raise AuthenticationError(ErrorCode.INVALID_CREDENTIALS, "Current password is incorrect")

        new_hash = self._hasher.hash(validate_password(new_password))

        def work(tx: StoreTransaction) -> int:
            now = self._clock()
            if not tx.update_account(account_id, now, password_hash=new_hash):
                raise AuthenticationError(ErrorCode.ACCOUNT_NOT_FOUND)
            return tx.invalidate_tokens_where(now, account_id=account_id)

        invalidated = self._store.atomic(work)
        _log.info(f"Password changed for account {account_id}, {invalidated} token(s) invalidated")
        return invalidated

    def update_email(self, account_id: str, email: str) -> Account:
        """
        Raises:
            ConflictError: EMAIL_TAKEN
        """
        email = validate_email(email)

        def work(tx: StoreTransaction) -> Account:
            if tx.email_exists(email, exclude_account_id=account_id):
                raise ConflictError(ErrorCode.EMAIL_TAKEN)
            if not tx.update_account(account_id, self._clock(), email=email):
                raise AuthenticationError(ErrorCode.ACCOUNT_NOT_FOUND)
            return tx.get_account(account_id)

        return self._store.atomic(work)

    def deactivate(self, account_id: str) -> int:
        """
        Deactivate and invalidate all tokens in one transaction.

        Returns:
            Number of tokens invalidated
        """

        def work(tx: StoreTransaction) -> int:
            now = self._clock()
            if not tx.update_account(account_id, now, is_active=False):
                raise AuthenticationError(ErrorCode.ACCOUNT_NOT_FOUND)
            return tx.invalidate_tokens_where(now, account_id=account_id)

        invalidated = self._store.atomic(work)
        _log.info(f"Account {account_id} deactivated, {invalidated} token(s) invalidated")
        return invalidated

    def reactivate(self, login: str, password: str) -> Account:
        """
        Reactivate an inactive account after verifying its password.

        Raises:
            AuthenticationError: INVALID_CREDENTIALS, or ACCOUNT_NOT_FOUND
                when no inactive account matches
        """
        account = self.check_credentials(login, password)
        if account.is_active:
            raise AuthenticationError(ErrorCode.ACCOUNT_NOT_FOUND, "No inactive account found")

        def work(tx: StoreTransaction) -> Account:
            tx.update_account(account.id, self._clock(), is_active=True)
            return tx.get_account(account.id)

        reactivated = self._store.atomic(work)
        _log.info(f"Account {account.id} reactivated")
        return reactivated

    def delete(self, account_id: str, password: str) -> None:
        """Permanently delete the account and all its tokens."""
        account = self.get(account_id)
        if not self._hasher.verify(password or "", account.password_hash):
            raise AuthenticationError(ErrorCode.INVALID_CREDENTIALS, "Password is incorrect")

        if not self._store.atomic(lambda tx: tx.delete_account(account_id)):
            raise AuthenticationError(ErrorCode.ACCOUNT_NOT_FOUND)
        _log.info(f"Account {account_id} deleted")

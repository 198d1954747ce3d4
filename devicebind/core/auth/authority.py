"""
Device Authority
================

Server-side gatekeeper for registration, login and session control.

Per attempt:
    Received -> FormatValidated -> ConflictChecked -> Granted | Rejected

Security Properties:
- Exclusivity: at most one live token per account, checked and issued
  in one serializable transaction
- Strict 1:1 device binding: a device with a live token belongs to
  that account until the token ends
- Conflicts are rejected, never resolved by silently evicting the
  other device
- Only salted device hashes and token hashes are stored

Recovery:
- force_logout() clears every device of the account
- logout_from_other_devices() keeps only the calling device
- evict_other_devices() does the same for a caller without a live token
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from devicebind.core.auth.accounts import AccountManager
from devicebind.core.auth.device_hash_processor import DeviceHashProcessor
from devicebind.core.auth.tokens import SignedToken, TokenClaims, TokenSigner, hash_token
from devicebind.core.errors import (
    AuthenticationError,
    ConflictError,
    DeviceBindError,
    ErrorCode,
    TokenError,
)
from devicebind.db.base import DeviceStore, StoreTransaction
from devicebind.db.models import Account, SessionToken


_log = logging.getLogger("devicebind.auth.authority")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class SessionSummary:
    """Display form of a live session. The device label is redacted."""

    id: str
    device_label: str
    created_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime]
    is_current: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "deviceId": self.device_label,
            "createdAt": self.created_at.isoformat(),
            "expiresAt": self.expires_at.isoformat(),
            "lastUsed": self.last_used_at.isoformat() if self.last_used_at else None,
            "isCurrent": self.is_current,
        }


@dataclass(frozen=True, slots=True)
class AuthResult:
    """
    A granted registration or login.

    Attributes:
        account: The authenticated account
        token: Bearer token for the client; never stored
        session: The stored session record
        rotated: Same-device tokens replaced by this one
    """

    account: Account
    token: str
    session: SessionToken
    rotated: int = 0

    def __repr__(self) -> str:
        return f"AuthResult(account={self.account!r}, session={self.session.id!r})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user": self.account.to_public_dict(),
            "token": self.token,
            "expiresAt": self.session.expires_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class VerifiedSession:
    """Result of a successful verify()."""

    account: Account
    session: SessionToken
    claims: TokenClaims

    @property
    def account_id(self) -> str:
        return self.account.id

    @property
    def processed_hash(self) -> str:
        return self.session.processed_hash


class DeviceAuthority:
    """
    Enforces device binding and session exclusivity.

    Every collaborator is passed in; nothing is global.

    Usage:
        authority = DeviceAuthority(store, accounts, signer, processor)
        result = authority.login("alice", "Secret123", device_hash, timestamp)
        session = authority.verify(result.token)
    """

    __slots__ = ("_store", "_accounts", "_signer", "_processor", "_clock")

    def __init__(
        self,
        store: DeviceStore,
        accounts: AccountManager,
        signer: TokenSigner,
        processor: DeviceHashProcessor,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._accounts = accounts
        self._signer = signer
        self._processor = processor
        self._clock = clock

    @property
    def accounts(self) -> AccountManager:
        return self._accounts

    @property
    def processor(self) -> DeviceHashProcessor:
        return self._processor

    # ------------------------------------------------------------------
    # Granting
    # ------------------------------------------------------------------

    def _accept_device_hash(self, device_hash: Any, device_timestamp: Any) -> str:
        """Received -> FormatValidated. Returns the processed hash."""
        device_hash = self._processor.validate_format(device_hash)
        self._processor.check_freshness(device_timestamp, self._clock())
        return self._processor.process(device_hash)

    def _new_session(self, account_id: str, processed_hash: str, now: datetime) -> tuple[SignedToken, SessionToken]:
        signed = self._signer.issue(account_id, processed_hash, now)
        session = SessionToken(
            id=str(uuid.uuid4()),
            token_hash=signed.token_hash,
            account_id=account_id,
            processed_hash=processed_hash,
            created_at=now,
            expires_at=signed.claims.expires_at,
            is_valid=True,
            last_used_at=now,
        )
        return signed, session

    def register(
        self,
        username: str,
        email: str,
        password: str,
        device_hash: Any,
        device_timestamp: Any = None,
    ) -> AuthResult:
        """
        Create an account and its first session in one transaction.

        Raises:
            ValidationError: Malformed input or device hash, stale timestamp
            ConflictError: DEVICE_ALREADY_REGISTERED, USERNAME_TAKEN, EMAIL_TAKEN
            StorageError: Contention persisted across retries
        """
        processed = self._accept_device_hash(device_hash, device_timestamp)
        account = self._accounts.build_account(username, email, password)

        def work(tx: StoreTransaction) -> tuple[SignedToken, SessionToken, int]:
            now = self._clock()
            if tx.find_live_token_by_hash(processed, now) is not None:
                raise ConflictError(ErrorCode.DEVICE_ALREADY_REGISTERED)
            AccountManager.insert_unique(tx, account)
            signed, session = self._new_session(account.id, processed, now)
            rotated = tx.insert_token_if_none_live(session, now)
            return signed, session, rotated

        try:
            signed, session, rotated = self._store.atomic(work)
        except DeviceBindError as e:
            _log.warning(f"Registration rejected: {e.code.value}")
            raise

        _log.info(f"Registration granted for account {account.id} on device {self._processor.redact(processed)}")
        return AuthResult(account=account, token=signed.token, session=session, rotated=rotated)

    def login(
        self,
        login: str,
        password: str,
        device_hash: Any,
        device_timestamp: Any = None,
    ) -> AuthResult:
        """
        Authenticate and issue the account's only live token.

        Raises:
            ValidationError: Malformed input or device hash, stale timestamp
            AuthenticationError: INVALID_CREDENTIALS, ACCOUNT_INACTIVE
            ConflictError: ACCOUNT_ACTIVE_ON_OTHER_DEVICE, DEVICE_ALREADY_REGISTERED
            StorageError: Contention persisted across retries
        """
        processed = self._accept_device_hash(device_hash, device_timestamp)
        account = self._accounts.authenticate(login, password)

        def work(tx: StoreTransaction) -> tuple[Account, SignedToken, SessionToken, int]:
            now = self._clock()
            current = tx.get_account(account.id)
            if current is None or not current.is_active:
                raise AuthenticationError(ErrorCode.ACCOUNT_INACTIVE)
            signed, session = self._new_session(account.id, processed, now)
            rotated = tx.insert_token_if_none_live(session, now)
            tx.update_account(account.id, now, last_login=now)
            return tx.get_account(account.id), signed, session, rotated

        try:
            fresh, signed, session, rotated = self._store.atomic(work)
        except DeviceBindError as e:
            _log.warning(f"Login rejected for account {account.id}: {e.code.value}")
            raise

        if rotated:
            _log.info(f"Rotated {rotated} token(s) for account {account.id} on the same device")
        _log.info(f"Login granted for account {account.id} on device {self._processor.redact(processed)}")
        return AuthResult(account=fresh, token=signed.token, session=session, rotated=rotated)

    # ------------------------------------------------------------------
    # Revoking
    # ------------------------------------------------------------------

    def logout(self, token: str) -> bool:
        """
        Invalidate one token. Idempotent.

        Returns:
            True if a valid token was invalidated by this call
        """
        if not token:
            raise TokenError(ErrorCode.TOKEN_REQUIRED)
        token_hash = hash_token(token)
        count = self._store.atomic(
            lambda tx: tx.invalidate_tokens_where(self._clock(), token_hash=token_hash)
        )
        if count:
            _log.info("Session logged out")
        return count > 0

    def force_logout(self, account_id: str) -> int:
        """Invalidate every token of the account."""
        count = self._store.atomic(
            lambda tx: tx.invalidate_tokens_where(self._clock(), account_id=account_id)
        )
        _log.info(f"Force logout for account {account_id}: {count} token(s) invalidated")
        return count

    def logout_from_other_devices(self, account_id: str, current_processed_hash: str) -> int:
        """Invalidate every token of the account not bound to the current device."""
        count = self._store.atomic(
            lambda tx: tx.invalidate_tokens_where(
                self._clock(),
                account_id=account_id,
                exclude_processed_hash=current_processed_hash,
            )
        )
        _log.info(f"Logged out account {account_id} from {count} other device(s)")
        return count

    def evict_other_devices(
        self,
        login: str,
        password: str,
        device_hash: Any,
        device_timestamp: Any = None,
    ) -> int:
        """
        Credential-authenticated logout_from_other_devices().

        For a caller rejected with ACCOUNT_ACTIVE_ON_OTHER_DEVICE, who
        therefore holds no token on this device.
        """
        processed = self._accept_device_hash(device_hash, device_timestamp)
        account = self._accounts.authenticate(login, password)
        return self.logout_from_other_devices(account.id, processed)

    # ------------------------------------------------------------------
    # Verification and reporting
    # ------------------------------------------------------------------

    def verify(self, token: str) -> VerifiedSession:
        """
        Check signature, expiry, the stored record and the account.

        Refreshes last_used_at on success.

        Raises:
            TokenError: TOKEN_REQUIRED, TOKEN_EXPIRED or TOKEN_INVALID
        """
        now = self._clock()
        claims = self._signer.decode(token, now=now)

        session = self._store.touch_token(hash_token(token), now)
        if session is None:
            raise TokenError(ErrorCode.TOKEN_INVALID)

        account = self._store.get_account(session.account_id)
        if account is None or not account.is_active:
            raise TokenError(ErrorCode.TOKEN_INVALID, "User not found or inactive")

        return VerifiedSession(account=account, session=session, claims=claims)

    def get_active_sessions(
        self,
        account_id: str,
        current_processed_hash: Optional[str] = None,
    ) -> List[SessionSummary]:
        """Live sessions, most recently used first, with redacted device labels."""
        tokens = self._store.list_live_tokens(account_id, self._clock())
        return [
            SessionSummary(
                id=t.id,
                device_label=self._processor.redact(t.processed_hash),
                created_at=t.created_at,
                expires_at=t.expires_at,
                last_used_at=t.last_used_at,
                is_current=t.processed_hash == current_processed_hash,
            )
            for t in tokens
        ]

    def device_info(self, account_id: str) -> Dict[str, Any]:
        """Live devices of an account, identified by a short prefix only."""
        tokens = self._store.list_live_tokens(account_id, self._clock())
        return {
            "activeDevices": len(tokens),
            "devices": [
                {
                    "deviceId": t.processed_hash[:8] + "...",
                    "lastActive": (t.last_used_at or t.created_at).isoformat(),
                    "expiresAt": t.expires_at.isoformat(),
                }
                for t in tokens
            ],
        }

    def device_stats(self) -> Dict[str, Any]:
        """Aggregate counts for health reporting."""
        now = self._clock()
        stats: Dict[str, Any] = dict(self._store.device_stats(now))
        stats["timestamp"] = now.isoformat()
        return stats

    def purge_tokens(self, retention: timedelta) -> int:
        """Delete tokens expired or invalidated more than retention ago."""
        return self._store.purge_tokens(self._clock(), retention)

"""
Session Tokens
==============

Signed bearer tokens issued by the device authority.

Tokens are HS256 JWTs carrying the account id (sub), the processed
device hash (dh), a unique id (jti), and issue and expiry times.

Security Properties:
- Only sha256(token) is persisted; the token itself never hits disk
- Signature and expiry are checked before any store lookup
- A valid signature alone is not enough: the stored record must
  also still be live
"""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Final

import jwt

from devicebind.core.errors import ErrorCode, TokenError


TOKEN_ALGORITHM: Final[str] = "HS256"
DEFAULT_TOKEN_LIFETIME: Final[timedelta] = timedelta(hours=24)
MIN_SECRET_LENGTH: Final[int] = 32


def hash_token(token: str) -> str:
    """Storage form of a token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class TokenClaims:
    """Decoded, signature-checked token claims."""

    account_id: str
    processed_hash: str
    token_id: str
    issued_at: datetime
    expires_at: datetime

    def __repr__(self) -> str:
        return f"TokenClaims(account_id={self.account_id!r}, expires_at={self.expires_at.isoformat()})"


@dataclass(frozen=True, slots=True)
class SignedToken:
    """
    A freshly issued token.

    Attributes:
        token: The bearer token handed to the client
        token_hash: sha256(token), the only form that is stored
        claims: What the token asserts
    """

    token: str
    token_hash: str
    claims: TokenClaims

    def __repr__(self) -> str:
        return f"SignedToken(claims={self.claims!r})"


class TokenSigner:
    """
    Issues and checks session tokens.

    Usage:
        signer = TokenSigner(secret)
        issued = signer.issue(account_id, processed_hash, now)
        claims = signer.decode(issued.token)
    """

    __slots__ = ("_secret", "_lifetime")

    def __init__(self, secret: str, lifetime: timedelta = DEFAULT_TOKEN_LIFETIME) -> None:
        if len(secret) < MIN_SECRET_LENGTH:
            raise ValueError(f"Token secret must be at least {MIN_SECRET_LENGTH} characters")
        self._secret = secret
        self._lifetime = lifetime

    @property
    def lifetime(self) -> timedelta:
        return self._lifetime

    def issue(self, account_id: str, processed_hash: str, now: datetime) -> SignedToken:
        """Sign a new token valid from now for the configured lifetime."""
        issued_at = now.replace(microsecond=0)
        expires_at = issued_at + self._lifetime
        token_id = str(uuid.uuid4())
        payload = {
            "sub": account_id,
            "dh": processed_hash,
            "jti": token_id,
            "iat": issued_at,
            "exp": expires_at,
        }
        token = jwt.encode(payload, self._secret, algorithm=TOKEN_ALGORITHM)
        return SignedToken(
            token=token,
            token_hash=hash_token(token),
            claims=TokenClaims(
                account_id=account_id,
                processed_hash=processed_hash,
                token_id=token_id,
                issued_at=issued_at,
                expires_at=expires_at,
            ),
        )

    def decode(self, token: str, now: datetime | None = None) -> TokenClaims:
        """
        Verify signature and expiry.

        Args:
            token: Bearer token
            now: Reference time for the expiry check (default: wall clock)

        Raises:
            TokenError: TOKEN_EXPIRED or TOKEN_INVALID
        """
        if not token:
            raise TokenError(ErrorCode.TOKEN_REQUIRED)

        options: Dict[str, Any] = {"require": ["sub", "dh", "jti", "iat", "exp"]}
        if now is not None:
            options["verify_exp"] = False
            options["verify_iat"] = False

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[TOKEN_ALGORITHM],
                options=options,
            )
        except jwt.ExpiredSignatureError as e:
            raise TokenError(ErrorCode.TOKEN_EXPIRED) from e
        except jwt.InvalidTokenError as e:
            raise TokenError(ErrorCode.TOKEN_INVALID) from e

        expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        if now is not None and now >= expires_at:
            raise TokenError(ErrorCode.TOKEN_EXPIRED)

        return TokenClaims(
            account_id=str(payload["sub"]),
            processed_hash=str(payload["dh"]),
            token_id=str(payload["jti"]),
            issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
            expires_at=expires_at,
        )

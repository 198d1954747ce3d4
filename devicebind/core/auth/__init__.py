"""
DeviceBind Authentication Module
================================

Server-side device authority and its collaborators:
- Argon2id password hashing
- Account lifecycle
- Signed session tokens
- Device hash processing
- Background token purge

Security Properties:
- Memory-hard password hashing
- Constant-time verification
- One live session per account, one account per device
"""

from devicebind.core.auth.argon2_auth import Argon2Hasher
from devicebind.core.auth.accounts import AccountManager
from devicebind.core.auth.authority import (
    AuthResult,
    DeviceAuthority,
    SessionSummary,
    VerifiedSession,
)
from devicebind.core.auth.device_hash_processor import DeviceHashProcessor
from devicebind.core.auth.janitor import TokenJanitor
from devicebind.core.auth.tokens import TokenSigner, hash_token

__all__ = [
    "Argon2Hasher",
    "AccountManager",
    "AuthResult",
    "DeviceAuthority",
    "SessionSummary",
    "VerifiedSession",
    "DeviceHashProcessor",
    "TokenJanitor",
    "TokenSigner",
    "hash_token",
]

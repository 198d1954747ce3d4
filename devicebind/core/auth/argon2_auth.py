"""
Argon2id Password Hashing
=========================

Credential verification primitive for the device authority.

Security Properties:
- Memory-hard (resistant to GPU/ASIC attacks)
- Time-hard (configurable iterations)
- Salt automatically managed
- Constant-time verification

Parameters (OWASP 2023 recommendations):
- memory_cost: 102400 KiB (100 MB)
- time_cost: 2 iterations
- parallelism: 4 threads

References:
- RFC 9106: Argon2 Memory-Hard Function
- OWASP Password Storage Cheat Sheet
"""

from __future__ import annotations

from typing import Final

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError


# Argon2id parameters (OWASP 2023 recommended minimums)
ARGON2_MEMORY_COST: Final[int] = 102400  # 100 MB in KiB
ARGON2_TIME_COST: Final[int] = 2  # iterations
ARGON2_PARALLELISM: Final[int] = 4  # threads
ARGON2_HASH_LENGTH: Final[int] = 32  # 256 bits
ARGON2_SALT_LENGTH: Final[int] = 16  # 128 bits

MIN_MEMORY_COST: Final[int] = 65536  # 64 MB


class Argon2Hasher:
    """
    Argon2id password hasher with secure defaults.

    Usage:
        hasher = Argon2Hasher()

        encoded = hasher.hash("user_password")
        store(encoded)

        is_valid = hasher.verify("user_password", stored_encoded)

    Security Notes:
        - Argon2id is the recommended variant (hybrid)
        - verify() never raises on a mismatch or malformed hash
        - verify_dummy() burns the same work for unknown logins
    """

    __slots__ = ("_hasher", "_dummy_hash")

    def __init__(
        self,
        memory_cost: int = ARGON2_MEMORY_COST,
        time_cost: int = ARGON2_TIME_COST,
        parallelism: int = ARGON2_PARALLELISM,
        hash_length: int = ARGON2_HASH_LENGTH,
        salt_length: int = ARGON2_SALT_LENGTH,
    ) -> None:
        """
        Initialize the Argon2id hasher.

        Args:
            memory_cost: Memory usage in KiB (default: 102400 = 100MB)
            time_cost: Number of iterations (default: 2)
            parallelism: Degree of parallelism (default: 4)
            hash_length: Output hash length in bytes (default: 32)
            salt_length: Salt length in bytes (default: 16)
        """
        if memory_cost < MIN_MEMORY_COST:
            raise ValueError(f"memory_cost must be at least {MIN_MEMORY_COST} KiB (64 MB)")
        if time_cost < 2:
            raise ValueError("time_cost must be at least 2")
        if parallelism < 1:
            raise ValueError("parallelism must be at least 1")
        if hash_length < 16:
            raise ValueError("hash_length must be at least 16 bytes")
        if salt_length < 8:
            raise ValueError("salt_length must be at least 8 bytes")

        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=hash_length,
            salt_len=salt_length,
        )
        self._dummy_hash = None

    @property
    def parameters(self) -> dict[str, int]:
        """Get current hashing parameters."""
        return {
            "memory_cost": self._hasher.memory_cost,
            "time_cost": self._hasher.time_cost,
            "parallelism": self._hasher.parallelism,
            "hash_length": self._hasher.hash_len,
            "salt_length": self._hasher.salt_len,
        }

    def hash(self, password: str) -> str:
        """
        Hash a password.

        Returns:
            Encoded "$argon2id$v=19$m=...,t=...,p=...$salt$hash" string

        Raises:
            ValueError: If the password is empty
        """
        if not password:
            raise ValueError("Password cannot be empty")
        return self._hasher.hash(password)

    def verify(self, password: str, encoded: str) -> bool:
        """
        Verify a password against an encoded hash.

        Returns:
            True if password matches, False otherwise
        """
        if not password or not encoded:
            return False

        try:
            return self._hasher.verify(encoded, password)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            return False

    def verify_dummy(self, password: str) -> None:
        """Spend one verification on a throwaway hash."""
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash("dummy-password-for-timing")
        self.verify(password or "x", self._dummy_hash)

    def needs_rehash(self, encoded: str) -> bool:
        """
        Check if a hash needs to be rehashed with current parameters.

        Returns True if the hash uses older/weaker parameters.
        """
        try:
            return self._hasher.check_needs_rehash(encoded)
        except (InvalidHashError, ValueError):
            return True

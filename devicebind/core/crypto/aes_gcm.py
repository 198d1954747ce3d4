"""
AES-256-GCM Authenticated Encryption
====================================

Encryption for the local device binding cache.

Security Properties:
    - 256-bit key derived from hardware attributes
    - Fresh 96-bit nonce per write (NIST SP 800-38D)
    - 128-bit authentication tag verified before plaintext is returned
    - Associated data binds each ciphertext to the file it lives in

WARNING:
    - Never reuse (key, nonce) pairs
    - InvalidTag means tampering, wrong hardware, or corruption
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Final, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

AES_KEY_SIZE: Final[int] = 32  # 256 bits
AES_NONCE_SIZE: Final[int] = 12  # 96 bits
AES_TAG_SIZE: Final[int] = 16  # 128 bits


class DecryptionError(Exception):
    """Raised when a ciphertext fails authentication or is malformed."""
    pass


@dataclass(frozen=True, slots=True)
class SealedData:
    """
    Result of one encryption.

    Attributes:
        nonce: Unique nonce for this ciphertext
        ciphertext: Encrypted data without the tag
        tag: GCM authentication tag
    """

    nonce: bytes
    ciphertext: bytes
    tag: bytes

    def __repr__(self) -> str:
        return f"SealedData(ciphertext_len={len(self.ciphertext)})"

    def to_colon_hex(self) -> str:
        """Render as "iv:tag:ciphertext" in hex."""
        return f"{self.nonce.hex()}:{self.tag.hex()}:{self.ciphertext.hex()}"

    @classmethod
    def from_colon_hex(cls, text: str) -> "SealedData":
        """
        Parse the "iv:tag:ciphertext" form.

        Raises:
            DecryptionError: If the layout is wrong
        """
        parts = text.strip().split(":")
        if len(parts) != 3:
            raise DecryptionError("Invalid encrypted data format")
        try:
            nonce, tag, ciphertext = (bytes.fromhex(p) for p in parts)
        except ValueError as e:
            raise DecryptionError("Invalid encrypted data encoding") from e
        return cls(nonce=nonce, ciphertext=ciphertext, tag=tag)


class AesGcmCipher:
    """
    AES-256-GCM bound to a single key.

    Usage:
        cipher = AesGcmCipher(key)
        sealed = cipher.encrypt(b"payload", aad=b"context")
        plaintext = cipher.decrypt(sealed, aad=b"context")
    """

    __slots__ = ("_aesgcm",)

    def __init__(self, key: bytes) -> None:
        if len(key) != AES_KEY_SIZE:
            raise ValueError(f"Key must be exactly {AES_KEY_SIZE} bytes")
        self._aesgcm = AESGCM(key)

    @staticmethod
    def generate_nonce() -> bytes:
        """Generate a cryptographically secure random nonce."""
        return secrets.token_bytes(AES_NONCE_SIZE)

    def encrypt(self, plaintext: bytes, aad: Optional[bytes] = None) -> SealedData:
        """Encrypt with a freshly generated nonce."""
        nonce = self.generate_nonce()
        combined = self._aesgcm.encrypt(nonce, plaintext, aad)
        return SealedData(
            nonce=nonce,
            ciphertext=combined[:-AES_TAG_SIZE],
            tag=combined[-AES_TAG_SIZE:],
        )

    def decrypt(self, sealed: SealedData, aad: Optional[bytes] = None) -> bytes:
        """
        Verify the tag and decrypt.

        Raises:
            DecryptionError: If the nonce or tag is malformed, or
                authentication fails
        """
        if len(sealed.nonce) != AES_NONCE_SIZE:
            raise DecryptionError(f"Nonce must be exactly {AES_NONCE_SIZE} bytes")
        if len(sealed.tag) != AES_TAG_SIZE:
            raise DecryptionError("Authentication tag has the wrong size")

        try:
            return self._aesgcm.decrypt(sealed.nonce, sealed.ciphertext + sealed.tag, aad)
        except InvalidTag as e:
            raise DecryptionError("Authentication failed") from e

"""
Key Derivation Functions
========================

Derives the local store encryption key from hardware attributes.

The derived key depends on the machine identifier, platform and
architecture only, never on the binding fingerprint, so the store
becomes unreadable once copied to different hardware.
"""

from __future__ import annotations

from typing import Final

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

STORE_KEY_LENGTH: Final[int] = 32
STORE_KEY_SALT: Final[bytes] = b"DeviceBind_LocalStore_v1"
STORE_KEY_INFO: Final[bytes] = b"devicebind-secure-device-key"


def expand_key_hkdf(
    key_material: bytes,
    length: int,
    info: bytes = b"",
    salt: bytes | None = None,
) -> bytes:
    """
    Expand key material using HKDF-SHA256.

    Args:
        key_material: Input key material
        length: Output length
        info: Context/application info
        salt: Optional salt

    Returns:
        Expanded key bytes
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        info=info,
    )
    return hkdf.derive(key_material)


def derive_store_key(hardware_material: bytes, purpose: bytes = b"primary") -> bytes:
    """
    Derive a 256-bit store key from hardware key material.

    Args:
        hardware_material: Output of HardwareIdentityExtractor.store_key_material()
        purpose: Separates the primary store key from the backup key

    Raises:
        ValueError: If no key material is provided
    """
    if not hardware_material:
        raise ValueError("Hardware key material cannot be empty")

    return expand_key_hkdf(
        hardware_material,
        length=STORE_KEY_LENGTH,
        info=STORE_KEY_INFO + b"/" + purpose,
        salt=STORE_KEY_SALT,
    )

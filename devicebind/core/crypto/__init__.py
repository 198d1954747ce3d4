"""
DeviceBind Local Store Cryptography
===================================

Authenticated encryption for the local device binding files.

Security Properties:
    - AES-256-GCM for every stored ciphertext
    - Keys derived with HKDF-SHA256 from hardware attributes
    - Keys never touch disk

WARNING: This module handles sensitive cryptographic material.
"""

from devicebind.core.crypto.aes_gcm import AesGcmCipher, DecryptionError, SealedData
from devicebind.core.crypto.kdf import derive_store_key

__all__ = [
    "AesGcmCipher",
    "DecryptionError",
    "SealedData",
    "derive_store_key",
]

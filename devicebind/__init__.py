"""
DeviceBind - Exclusive Device Binding and Session Control
=========================================================

Binds each user account to exactly one physical device and enforces at
most one live session per account.

Security Notice:
- Raw hardware identifiers never leave the device un-hashed
- Only token hashes are persisted server-side
- Fail-closed on any exclusivity doubt
"""

__version__ = "0.1.0"
__author__ = "DeviceBind Team"

from devicebind.core.config import DeviceBindConfig
from devicebind.core.logging import get_secure_logger

__all__ = ["DeviceBindConfig", "get_secure_logger", "__version__"]

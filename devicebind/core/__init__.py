"""
Core module - Configuration, logging, errors, and the device-binding components.
"""

from devicebind.core.config import DeviceBindConfig
from devicebind.core.errors import DeviceBindError, ErrorCategory, ErrorCode
from devicebind.core.logging import get_secure_logger, SecureLogFilter

__all__ = [
    "DeviceBindConfig",
    "DeviceBindError",
    "ErrorCategory",
    "ErrorCode",
    "get_secure_logger",
    "SecureLogFilter",
]

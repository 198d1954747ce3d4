"""
Utils module - Input validation helpers shared by the authority and the web layer.
"""

from devicebind.utils.validators import (
    validate_credentials,
    validate_email,
    validate_password,
    validate_string_safe,
    validate_username,
)

__all__ = [
    "validate_credentials",
    "validate_email",
    "validate_password",
    "validate_string_safe",
    "validate_username",
]

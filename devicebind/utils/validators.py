"""
Validation Utilities
====================

Input validation for registration and login.

Every failure raises ValidationError(INVALID_INPUT) with the field name
in the details, never the offending value.
"""

from __future__ import annotations

import re
from typing import Any, Final

from devicebind.core.errors import ErrorCode, ValidationError


USERNAME_MIN_LENGTH: Final[int] = 3
USERNAME_MAX_LENGTH: Final[int] = 64
PASSWORD_MIN_LENGTH: Final[int] = 6
PASSWORD_MAX_LENGTH: Final[int] = 128
EMAIL_MAX_LENGTH: Final[int] = 254

_USERNAME_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9_]+$")
_EMAIL_RE: Final[re.Pattern[str]] = re.compile(
    r"^[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+@[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)+$"
)


def _invalid(field: str, message: str) -> ValidationError:
    return ValidationError(ErrorCode.INVALID_INPUT, message, details={"field": field})


def validate_string_safe(
    value: Any,
    min_length: int = 0,
    max_length: int = 1000,
    allow_empty: bool = False,
    field_name: str = "value",
) -> str:
    """
    Validate a string value for safety.

    Args:
        value: The value to validate
        min_length: Minimum allowed length
        max_length: Maximum allowed length
        allow_empty: If False, empty strings are rejected
        field_name: Name of the field for error messages

    Returns:
        Validated string

    Raises:
        ValidationError: If validation fails
    """
    if not isinstance(value, str):
        raise _invalid(field_name, f"{field_name} must be a string")

    if not allow_empty and not value:
        raise _invalid(field_name, f"{field_name} is required")

    if len(value) < min_length:
        raise _invalid(field_name, f"{field_name} must be at least {min_length} characters")

    if len(value) > max_length:
        raise _invalid(field_name, f"{field_name} must be at most {max_length} characters")

    # Null bytes never belong in credentials
    if "\x00" in value:
        raise _invalid(field_name, f"{field_name} contains invalid characters")

    return value


def validate_username(username: Any) -> str:
    """At least 3 characters of letters, digits and underscores."""
    username = validate_string_safe(
        username,
        min_length=USERNAME_MIN_LENGTH,
        max_length=USERNAME_MAX_LENGTH,
        field_name="username",
    )
    if not _USERNAME_RE.match(username):
        raise _invalid("username", "Username can only contain letters, numbers, and underscores")
    return username


def validate_email(email: Any) -> str:
    """Syntactic check; returns the lower-cased address."""
    email = validate_string_safe(email, max_length=EMAIL_MAX_LENGTH, field_name="email").strip()
    if not _EMAIL_RE.match(email):
        raise _invalid("email", "Please provide a valid email address")
    return email.lower()


def validate_password(password: Any) -> str:
    """
    At least 6 characters with an uppercase letter, a lowercase letter
    and a digit.
    """
    password = validate_string_safe(
        password,
        min_length=PASSWORD_MIN_LENGTH,
        max_length=PASSWORD_MAX_LENGTH,
        field_name="password",
    )

    if not (
        any(c.islower() for c in password)
        and any(c.isupper() for c in password)
        and any(c.isdigit() for c in password)
    ):
        raise _invalid(
            "password",
            "Password must contain at least one uppercase letter, one lowercase letter, and one number",
        )
    return password


def validate_credentials(login: Any, password: Any) -> tuple[str, str]:
    """Presence checks for a login attempt (username or email)."""
    login = validate_string_safe(login, min_length=1, max_length=EMAIL_MAX_LENGTH, field_name="username")
    password = validate_string_safe(password, min_length=1, max_length=PASSWORD_MAX_LENGTH, field_name="password")
    return login.strip(), password

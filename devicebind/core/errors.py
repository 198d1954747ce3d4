"""
Structured Errors
=================

Closed set of error codes returned by the device-binding core.

Every failure carries a machine-readable code and a category so callers
branch on the code (retry, ask the user, trigger a binding reset) and
never on message text.

Categories:
- validation: malformed input, never mutates state
- device-binding: local binding missing / mismatched / expired
- conflict: exclusivity or uniqueness would be violated
- authentication: bad credentials or inactive account
- token: expired, invalidated or malformed session token
- storage: transaction failure or contention (retry with backoff)
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Final, Optional


class ErrorCategory(str, Enum):
    """Logical error categories."""
    VALIDATION = "validation"
    DEVICE_BINDING = "device-binding"
    CONFLICT = "conflict"
    AUTHENTICATION = "authentication"
    TOKEN = "token"
    STORAGE = "storage"


class ErrorCode(str, Enum):
    """Every error code the core can return."""
    # Validation
    INVALID_DEVICE_HASH = "INVALID_DEVICE_HASH"
    DEVICE_HASH_REQUIRED = "DEVICE_HASH_REQUIRED"
    STALE_DEVICE_HASH = "STALE_DEVICE_HASH"
    INVALID_INPUT = "INVALID_INPUT"

    # Device binding (client side)
    DEVICE_BINDING_MISSING = "DEVICE_BINDING_MISSING"
    DEVICE_FINGERPRINT_MISMATCH = "DEVICE_FINGERPRINT_MISMATCH"
    DEVICE_BINDING_EXPIRED = "DEVICE_BINDING_EXPIRED"
    LOW_CONFIDENCE_FINGERPRINT = "LOW_CONFIDENCE_FINGERPRINT"

    # Conflict
    DEVICE_ALREADY_REGISTERED = "DEVICE_ALREADY_REGISTERED"
    ACCOUNT_ACTIVE_ON_OTHER_DEVICE = "ACCOUNT_ACTIVE_ON_OTHER_DEVICE"
    USERNAME_TAKEN = "USERNAME_TAKEN"
    EMAIL_TAKEN = "EMAIL_TAKEN"

    # Authentication
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    ACCOUNT_INACTIVE = "ACCOUNT_INACTIVE"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"

    # Token
    TOKEN_INVALID = "TOKEN_INVALID"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_REQUIRED = "TOKEN_REQUIRED"

    # Storage
    STORAGE_BUSY = "STORAGE_BUSY"
    STORAGE_FAILURE = "STORAGE_FAILURE"


_DEFAULT_MESSAGES: Final[Dict[ErrorCode, str]] = {
    ErrorCode.INVALID_DEVICE_HASH: "Invalid device hash format",
    ErrorCode.DEVICE_HASH_REQUIRED: "Device authentication required",
    ErrorCode.STALE_DEVICE_HASH: "Device hash timestamp outside the accepted window",
    ErrorCode.INVALID_INPUT: "Validation failed",
    ErrorCode.DEVICE_BINDING_MISSING: "No device binding found",
    ErrorCode.DEVICE_FINGERPRINT_MISMATCH: "Hardware fingerprint mismatch",
    ErrorCode.DEVICE_BINDING_EXPIRED: "Device binding expired",
    ErrorCode.LOW_CONFIDENCE_FINGERPRINT: "Hardware fingerprint could not be read reliably",
    ErrorCode.DEVICE_ALREADY_REGISTERED: "Device is already registered to another account",
    ErrorCode.ACCOUNT_ACTIVE_ON_OTHER_DEVICE: "Account is active on another device",
    ErrorCode.USERNAME_TAKEN: "Username already exists",
    ErrorCode.EMAIL_TAKEN: "Email already exists",
    ErrorCode.INVALID_CREDENTIALS: "Invalid credentials",
    ErrorCode.ACCOUNT_INACTIVE: "Account is deactivated",
    ErrorCode.ACCOUNT_NOT_FOUND: "Account not found",
    ErrorCode.TOKEN_INVALID: "Token not found or invalidated",
    ErrorCode.TOKEN_EXPIRED: "Token has expired",
    ErrorCode.TOKEN_REQUIRED: "Token required",
    ErrorCode.STORAGE_BUSY: "Storage is busy, retry later",
    ErrorCode.STORAGE_FAILURE: "Storage failure",
}


class DeviceBindError(Exception):
    """
    Base class for all structured errors.

    Attributes:
        code: The error code
        category: Category of the error (set per subclass)
        retryable: Whether the same request may succeed if retried unchanged
        details: Optional extra, non-sensitive context
    """

    category: ErrorCategory = ErrorCategory.STORAGE
    retryable: bool = False

    def __init__(
        self,
        code: ErrorCode,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.code = code
        self.message = message or _DEFAULT_MESSAGES.get(code, code.value)
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Render the error for a response body."""
        body: Dict[str, Any] = {
            "error": self.message,
            "code": self.code.value,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.details:
            body["details"] = self.details
        return body

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value})"


class ValidationError(DeviceBindError):
    """Malformed device hash or credentials. Never mutates state."""
    category = ErrorCategory.VALIDATION


class DeviceBindingError(DeviceBindError):
    """The local device binding cannot produce a usable device hash."""
    category = ErrorCategory.DEVICE_BINDING


class DeviceValidationError(DeviceBindingError):
    """Raised by the device hash generator when the binding is invalid."""

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        self.reason = reason
        super().__init__(
            _REASON_CODES.get(reason, ErrorCode.DEVICE_BINDING_MISSING),
            message or f"Device validation failed: {reason}",
            details={"reason": reason},
        )


class ConflictError(DeviceBindError):
    """The request would violate exclusivity or a uniqueness rule."""
    category = ErrorCategory.CONFLICT


class AuthenticationError(DeviceBindError):
    """Bad credentials or inactive account."""
    category = ErrorCategory.AUTHENTICATION


class TokenError(DeviceBindError):
    """Expired, invalidated or malformed session token."""
    category = ErrorCategory.TOKEN


class StorageError(DeviceBindError):
    """Transaction failure or contention; no partial state is left behind."""
    category = ErrorCategory.STORAGE

    @property
    def retryable(self) -> bool:
        return self.code is ErrorCode.STORAGE_BUSY


_REASON_CODES: Final[Dict[str, ErrorCode]] = {
    "missing-binding": ErrorCode.DEVICE_BINDING_MISSING,
    "fingerprint-mismatch": ErrorCode.DEVICE_FINGERPRINT_MISMATCH,
    "binding-expired": ErrorCode.DEVICE_BINDING_EXPIRED,
}

_CATEGORY_CLASSES: Final[Dict[ErrorCategory, type]] = {
    ErrorCategory.VALIDATION: ValidationError,
    ErrorCategory.DEVICE_BINDING: DeviceBindingError,
    ErrorCategory.CONFLICT: ConflictError,
    ErrorCategory.AUTHENTICATION: AuthenticationError,
    ErrorCategory.TOKEN: TokenError,
    ErrorCategory.STORAGE: StorageError,
}

_CODE_CATEGORIES: Final[Dict[ErrorCode, ErrorCategory]] = {
    ErrorCode.INVALID_DEVICE_HASH: ErrorCategory.VALIDATION,
    ErrorCode.DEVICE_HASH_REQUIRED: ErrorCategory.VALIDATION,
    ErrorCode.STALE_DEVICE_HASH: ErrorCategory.VALIDATION,
    ErrorCode.INVALID_INPUT: ErrorCategory.VALIDATION,
    ErrorCode.DEVICE_BINDING_MISSING: ErrorCategory.DEVICE_BINDING,
    ErrorCode.DEVICE_FINGERPRINT_MISMATCH: ErrorCategory.DEVICE_BINDING,
    ErrorCode.DEVICE_BINDING_EXPIRED: ErrorCategory.DEVICE_BINDING,
    ErrorCode.LOW_CONFIDENCE_FINGERPRINT: ErrorCategory.DEVICE_BINDING,
    ErrorCode.DEVICE_ALREADY_REGISTERED: ErrorCategory.CONFLICT,
    ErrorCode.ACCOUNT_ACTIVE_ON_OTHER_DEVICE: ErrorCategory.CONFLICT,
    ErrorCode.USERNAME_TAKEN: ErrorCategory.CONFLICT,
    ErrorCode.EMAIL_TAKEN: ErrorCategory.CONFLICT,
    ErrorCode.INVALID_CREDENTIALS: ErrorCategory.AUTHENTICATION,
    ErrorCode.ACCOUNT_INACTIVE: ErrorCategory.AUTHENTICATION,
    ErrorCode.ACCOUNT_NOT_FOUND: ErrorCategory.AUTHENTICATION,
    ErrorCode.TOKEN_INVALID: ErrorCategory.TOKEN,
    ErrorCode.TOKEN_EXPIRED: ErrorCategory.TOKEN,
    ErrorCode.TOKEN_REQUIRED: ErrorCategory.TOKEN,
    ErrorCode.STORAGE_BUSY: ErrorCategory.STORAGE,
    ErrorCode.STORAGE_FAILURE: ErrorCategory.STORAGE,
}


def category_of(code: ErrorCode) -> ErrorCategory:
    """Get the category a code belongs to."""
    return _CODE_CATEGORIES[code]


def error_from_code(
    code: ErrorCode | str,
    message: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> DeviceBindError:
    """
    Rebuild the matching exception from a code.

    Used by clients to turn a structured response body back into the
    exception class the server raised.

    Raises:
        ValueError: If the code is not part of the closed set
    """
    code = ErrorCode(code)
    cls = _CATEGORY_CLASSES[category_of(code)]
    if cls is DeviceBindingError and code in _REASON_CODES.values():
        reason = next(r for r, c in _REASON_CODES.items() if c == code)
        return DeviceValidationError(reason, message)
    return cls(code, message, details)

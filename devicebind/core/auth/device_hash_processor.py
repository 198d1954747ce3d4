"""
Device Hash Processing
======================

Server-side handling of the device hash a client submits.

Steps:
1. Format check (hex, bounded length)
2. Freshness check of the accompanying timestamp
3. Salting: processed = sha256(f"{device_hash}-{salt}")

Only the processed hash is ever stored or compared. Raw device hashes
are never logged.
"""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Final, Optional

from devicebind.core.errors import ErrorCode, ValidationError


DEFAULT_MIN_LENGTH: Final[int] = 32
DEFAULT_MAX_LENGTH: Final[int] = 128
DEFAULT_FRESHNESS_WINDOW: Final[timedelta] = timedelta(seconds=300)

_HEX_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Fa-f0-9]+$")


def redact_hash(value: str, keep: int = 8) -> str:
    """First and last ``keep`` characters joined by an ellipsis."""
    if len(value) <= keep * 2:
        return value[:keep] + "..."
    return f"{value[:keep]}...{value[-keep:]}"


class DeviceHashProcessor:
    """
    Validates and salts device hashes.

    Usage:
        processor = DeviceHashProcessor(salt)
        processor.validate_format(device_hash)
        processor.check_freshness(timestamp_ms, now)
        processed = processor.process(device_hash)
    """

    __slots__ = ("_salt", "_min_length", "_max_length", "_window", "_require_timestamp")

    def __init__(
        self,
        salt: str,
        min_length: int = DEFAULT_MIN_LENGTH,
        max_length: int = DEFAULT_MAX_LENGTH,
        freshness_window: Optional[timedelta] = DEFAULT_FRESHNESS_WINDOW,
        require_timestamp: bool = False,
    ) -> None:
        """
        Args:
            salt: Server-held device salt
            min_length: Shortest accepted hash
            max_length: Longest accepted hash
            freshness_window: Accepted clock distance; None or zero disables
            require_timestamp: Reject hashes sent without a timestamp
        """
        if not salt:
            raise ValueError("Device salt cannot be empty")
        if min_length < DEFAULT_MIN_LENGTH or max_length < min_length:
            raise ValueError("Invalid device hash length bounds")
        self._salt = salt
        self._min_length = min_length
        self._max_length = max_length
        self._window = freshness_window if freshness_window else None
        self._require_timestamp = require_timestamp

    def validate_format(self, device_hash: Any) -> str:
        """
        Raises:
            ValidationError: DEVICE_HASH_REQUIRED when absent,
                INVALID_DEVICE_HASH when malformed
        """
        if device_hash is None or device_hash == "":
            raise ValidationError(ErrorCode.DEVICE_HASH_REQUIRED)
        if not isinstance(device_hash, str):
            raise ValidationError(ErrorCode.INVALID_DEVICE_HASH)
        if not (self._min_length <= len(device_hash) <= self._max_length):
            raise ValidationError(ErrorCode.INVALID_DEVICE_HASH)
        if not _HEX_RE.match(device_hash):
            raise ValidationError(ErrorCode.INVALID_DEVICE_HASH)
        return device_hash

    def check_freshness(self, timestamp: Any, now: datetime) -> None:
        """
        Reject timestamps (epoch milliseconds) outside now +/- window.

        Raises:
            ValidationError: STALE_DEVICE_HASH, or INVALID_INPUT for a
                timestamp that is not a number
        """
        if timestamp is None:
            if self._require_timestamp:
                raise ValidationError(ErrorCode.STALE_DEVICE_HASH, "Device hash timestamp required")
            return

        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            raise ValidationError(
                ErrorCode.INVALID_INPUT,
                "Device timestamp must be a number",
                details={"field": "deviceTimestamp"},
            )

        if self._window is None:
            return

        try:
            generated_at = datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise ValidationError(ErrorCode.STALE_DEVICE_HASH) from e

        if abs(now - generated_at) > self._window:
            raise ValidationError(ErrorCode.STALE_DEVICE_HASH)

    def process(self, device_hash: str) -> str:
        """Salted SHA-256 of the device hash."""
        return hashlib.sha256(f"{device_hash}-{self._salt}".encode("utf-8")).hexdigest()

    @staticmethod
    def redact(processed_hash: str) -> str:
        """Display label for a processed hash."""
        return redact_hash(processed_hash)

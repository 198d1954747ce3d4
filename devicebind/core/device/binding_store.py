"""
Device Binding Store
====================

Persists the single device binding of this installation, encrypted,
and revalidates it on every run.

Storage:
- Primary: JSON envelope, AES-256-GCM, authoritative
- Backup: "iv:tag:ciphertext" hex file, AES-256-GCM, fresh IV per write

Both keys derive from hardware attributes (machine id, platform, arch)
that are distinct from the binding fingerprint, so the files are
unreadable on other hardware.

Lifecycle:
1. initialize_if_needed() on startup creates a binding when none is valid
2. validate() recomputes the fingerprint on every run
3. reset() destroys the binding and its backup

WARNING:
- Single writer: the hosting process owns these files exclusively
- Absence of a valid binding means no device hash can be generated
"""

from __future__ import annotations

import base64
import json
import logging
import os
import platform
import tempfile
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Final, Optional

from devicebind import __version__
from devicebind.core.crypto.aes_gcm import AesGcmCipher, DecryptionError, SealedData
from devicebind.core.crypto.kdf import derive_store_key
from devicebind.core.device.hardware_fingerprint import HardwareIdentityExtractor
from devicebind.core.errors import DeviceBindingError, ErrorCode


PRIMARY_FILE_NAME: Final[str] = "secure-device.json"
BACKUP_FILE_NAME: Final[str] = ".device_binding"
STORE_FORMAT_VERSION: Final[int] = 1
DEFAULT_MAX_BINDING_AGE: Final[timedelta] = timedelta(days=365)

_PRIMARY_AAD: Final[bytes] = b"devicebind/primary/v1"
_BACKUP_AAD: Final[bytes] = b"devicebind/backup/v1"

_log = logging.getLogger("devicebind.device.binding")


class BindingFailure(str, Enum):
    """Why a binding is not valid."""
    MISSING = "missing-binding"
    FINGERPRINT_MISMATCH = "fingerprint-mismatch"
    EXPIRED = "binding-expired"


@dataclass(frozen=True, slots=True)
class DeviceBinding:
    """
    The one device binding of this installation.

    Immutable once created; replaced only through reset().
    """

    device_id: str
    hardware_fingerprint: str
    bind_time: datetime
    platform: str
    arch: str
    hostname: str
    app_version: str
    low_confidence: bool = False

    def __repr__(self) -> str:
        return (
            f"DeviceBinding(device_id={self.device_id[:8]}..., "
            f"bind_time={self.bind_time.isoformat()}, low_confidence={self.low_confidence})"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "hardwareFingerprint": self.hardware_fingerprint,
            "bindTime": self.bind_time.isoformat(),
            "platform": self.platform,
            "arch": self.arch,
            "hostname": self.hostname,
            "appVersion": self.app_version,
            "lowConfidence": self.low_confidence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeviceBinding":
        bind_time = datetime.fromisoformat(data["bindTime"])
        if bind_time.tzinfo is None:
            bind_time = bind_time.replace(tzinfo=timezone.utc)
        return cls(
            device_id=data["deviceId"],
            hardware_fingerprint=data["hardwareFingerprint"],
            bind_time=bind_time,
            platform=data.get("platform", ""),
            arch=data.get("arch", ""),
            hostname=data.get("hostname", ""),
            app_version=data.get("appVersion", ""),
            low_confidence=bool(data.get("lowConfidence", False)),
        )


@dataclass(frozen=True, slots=True)
class BindingValidation:
    """Result of validate()."""

    valid: bool
    reason: Optional[BindingFailure] = None
    binding: Optional[DeviceBinding] = None

    @property
    def reason_text(self) -> Optional[str]:
        return self.reason.value if self.reason else None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeviceBindingStore:
    """
    Encrypted local store holding one DeviceBinding.

    Usage:
        store = DeviceBindingStore(data_dir)
        binding = store.initialize_if_needed()

        result = store.validate()
        if not result.valid:
            print(result.reason_text)

    Constructed explicitly at startup and passed to whatever needs it;
    there is no module-level instance.
    """

    __slots__ = (
        "_data_dir", "_extractor", "_max_age", "_write_backup",
        "_reject_low_confidence", "_clock", "_primary_cipher", "_backup_cipher",
    )

    def __init__(
        self,
        data_dir: Path | str,
        extractor: Optional[HardwareIdentityExtractor] = None,
        max_age: timedelta = DEFAULT_MAX_BINDING_AGE,
        write_backup: bool = True,
        reject_low_confidence: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """
        Initialize the binding store.

        Args:
            data_dir: Directory holding the primary and backup files
            extractor: Hardware identity extractor (default: real hardware)
            max_age: Bindings older than this are treated as expired
            write_backup: Whether to maintain the redundant backup file
            reject_low_confidence: Refuse to bind on a low confidence fingerprint
            clock: Source of the current UTC time
        """
        self._data_dir = Path(data_dir)
        self._extractor = extractor or HardwareIdentityExtractor()
        self._max_age = max_age
        self._write_backup = write_backup
        self._reject_low_confidence = reject_low_confidence
        self._clock = clock

        material = self._extractor.store_key_material()
        self._primary_cipher = AesGcmCipher(derive_store_key(material, b"primary"))
        self._backup_cipher = AesGcmCipher(derive_store_key(material, b"backup"))

    @property
    def primary_path(self) -> Path:
        return self._data_dir / PRIMARY_FILE_NAME

    @property
    def backup_path(self) -> Path:
        return self._data_dir / BACKUP_FILE_NAME

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def initialize_if_needed(self) -> DeviceBinding:
        """
        Return the valid binding, creating a new one if needed.

        Raises:
            DeviceBindingError: If the fingerprint is low confidence and
                the store is configured to reject that, or the binding
                cannot be written
        """
        validation = self.validate()
        if validation.valid and validation.binding is not None:
            _log.info("Device binding is valid")
            return validation.binding

        _log.info(f"Creating new device binding (previous state: {validation.reason_text})")
        return self._create_binding()

    def validate(self) -> BindingValidation:
        """Recompute the fingerprint and compare it to the stored binding."""
        binding = self.load()
        if binding is None:
            return BindingValidation(valid=False, reason=BindingFailure.MISSING)

        current = self._extractor.fingerprint()
        if not current.matches_hash(binding.hardware_fingerprint):
            _log.warning("Device binding fingerprint mismatch")
            return BindingValidation(
                valid=False,
                reason=BindingFailure.FINGERPRINT_MISMATCH,
                binding=binding,
            )

        age = self._clock() - binding.bind_time
        if age > self._max_age:
            _log.warning(f"Device binding expired ({age.days} days old)")
            return BindingValidation(
                valid=False,
                reason=BindingFailure.EXPIRED,
                binding=binding,
            )

        return BindingValidation(valid=True, binding=binding)

    def reset(self) -> bool:
        """
        Delete the binding and its backup.

        Returns:
            True if every file is gone afterwards
        """
        ok = True
        for path in (self.primary_path, self.backup_path):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                _log.error(f"Could not remove {path.name}: {e}")
                ok = False

        if ok:
            _log.info("Device binding reset successfully")
        return ok

    def load(self) -> Optional[DeviceBinding]:
        """
        Read the stored binding.

        The primary file is authoritative. When it is absent, a backup
        that authenticates is used to restore it. An undecryptable
        primary reads as missing.
        """
        if self.primary_path.exists():
            try:
                return self._read_primary()
            except (DecryptionError, ValueError, KeyError, OSError) as e:
                _log.warning(f"Primary device binding unreadable: {type(e).__name__}")
                return None

        if not self.backup_path.exists():
            return None

        binding = self._read_backup()
        if binding is not None:
            _log.info("Restoring primary device binding from backup")
            try:
                self._write_primary(binding)
            except OSError as e:
                _log.warning(f"Could not restore primary device binding: {e}")
        return binding

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _create_binding(self) -> DeviceBinding:
        fingerprint = self._extractor.fingerprint()
        if fingerprint.low_confidence and self._reject_low_confidence:
            raise DeviceBindingError(
                ErrorCode.LOW_CONFIDENCE_FINGERPRINT,
                details={"failedSources": sorted(fingerprint.failed_sources)},
            )

        binding = DeviceBinding(
            device_id=str(uuid.uuid4()),
            hardware_fingerprint=fingerprint.fingerprint_hash,
            bind_time=self._clock(),
            platform=platform.system().lower(),
            arch=platform.machine(),
            hostname=platform.node(),
            app_version=__version__,
            low_confidence=fingerprint.low_confidence,
        )

        try:
            self._write_primary(binding)
        except OSError as e:
            _log.error(f"Error creating device binding: {e}")
            raise DeviceBindingError(
                ErrorCode.DEVICE_BINDING_MISSING,
                "Failed to create device binding",
            ) from e

        if self._write_backup:
            try:
                self._write_backup_file(binding)
            except OSError as e:
                _log.warning(f"Could not create device binding backup file: {e}")

        _log.info("Device binding created successfully")
        return binding

    def _read_primary(self) -> DeviceBinding:
        envelope = json.loads(self.primary_path.read_text(encoding="utf-8"))
        if not isinstance(envelope, dict):
            raise ValueError("Device binding store is not a JSON object")
        if envelope.get("version") != STORE_FORMAT_VERSION:
            raise ValueError("Unsupported device binding store version")
        for field in ("nonce", "ciphertext", "tag"):
            if not isinstance(envelope.get(field), str):
                raise ValueError(f"Device binding store field {field} is malformed")

        sealed = SealedData(
            nonce=base64.b64decode(envelope["nonce"]),
            ciphertext=base64.b64decode(envelope["ciphertext"]),
            tag=base64.b64decode(envelope["tag"]),
        )
        plaintext = self._primary_cipher.decrypt(sealed, aad=_PRIMARY_AAD)
        return DeviceBinding.from_dict(json.loads(plaintext))

    def _write_primary(self, binding: DeviceBinding) -> None:
        sealed = self._primary_cipher.encrypt(
            json.dumps(binding.to_dict()).encode("utf-8"),
            aad=_PRIMARY_AAD,
        )
        envelope = {
            "version": STORE_FORMAT_VERSION,
            "nonce": base64.b64encode(sealed.nonce).decode("ascii"),
            "ciphertext": base64.b64encode(sealed.ciphertext).decode("ascii"),
            "tag": base64.b64encode(sealed.tag).decode("ascii"),
        }
        self._atomic_write(self.primary_path, json.dumps(envelope))

    def _read_backup(self) -> Optional[DeviceBinding]:
        """Decrypt the backup. Failures are logged, never raised."""
        try:
            sealed = SealedData.from_colon_hex(self.backup_path.read_text(encoding="utf-8"))
            plaintext = self._backup_cipher.decrypt(sealed, aad=_BACKUP_AAD)
            return DeviceBinding.from_dict(json.loads(plaintext))
        except (DecryptionError, ValueError, KeyError, OSError) as e:
            _log.warning(f"Device binding backup unreadable: {type(e).__name__}")
            return None

    def _write_backup_file(self, binding: DeviceBinding) -> None:
        sealed = self._backup_cipher.encrypt(
            json.dumps(binding.to_dict()).encode("utf-8"),
            aad=_BACKUP_AAD,
        )
        self._atomic_write(self.backup_path, sealed.to_colon_hex())

    def _atomic_write(self, path: Path, content: str) -> None:
        """Write via a temp file and rename; owner-only on POSIX."""
        self._data_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._data_dir, prefix=".tmp-", text=True)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            if platform.system().lower() != "windows":
                os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

"""
Configuration Module
====================

Immutable, environment-aware configuration for the device-binding
client and server.

Features:
- Frozen dataclass sections validated at construction
- Environment variable overrides (DEVICEBIND_SECTION__KEY)
- Sensitive keys are never read through the generic override path
- OS-aware path defaults
- Server secrets loaded explicitly and required
"""

from __future__ import annotations

import hashlib
import os
import platform
import stat
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Final, Optional


_SENSITIVE_KEYS: Final[frozenset[str]] = frozenset({
    "password", "secret", "key", "token_secret", "salt", "credential",
})

ENV_PREFIX: Final[str] = "DEVICEBIND"


def _is_sensitive_key(key: str) -> bool:
    """Check if a configuration key might contain sensitive data."""
    key_lower = key.lower()
    return any(sensitive in key_lower for sensitive in _SENSITIVE_KEYS)


def _get_default_data_dir() -> Path:
    """Get OS-appropriate default data directory."""
    system = platform.system().lower()

    if system == "windows":
        base = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
    elif system == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))

    return base / "DeviceBind"


def _get_default_log_dir() -> Path:
    """Get OS-appropriate default log directory."""
    system = platform.system().lower()

    if system == "windows":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
        return base / "DeviceBind" / "Logs"
    elif system == "darwin":
        return Path.home() / "Library" / "Logs" / "DeviceBind"
    else:
        return Path(os.environ.get("XDG_STATE_HOME", Path.home() / ".local" / "state")) / "DeviceBind" / "logs"


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True, slots=True)
class PathConfig:
    """Immutable path configuration with OS-aware defaults."""

    data_dir: Path = field(default_factory=_get_default_data_dir)
    log_dir: Path = field(default_factory=_get_default_log_dir)

    def __post_init__(self) -> None:
        for field_name in ("data_dir", "log_dir"):
            path = getattr(self, field_name)
            if not path.is_absolute():
                raise ValueError(f"{field_name} must be an absolute path: {path}")


@dataclass(frozen=True, slots=True)
class BindingConfig:
    """Local device binding settings."""

    max_age_days: int = 365
    write_backup: bool = True
    reject_low_confidence: bool = False

    def __post_init__(self) -> None:
        if self.max_age_days < 1:
            raise ValueError("max_age_days must be at least 1")


@dataclass(frozen=True, slots=True)
class AuthorityConfig:
    """Server-side device authority settings."""

    token_lifetime_seconds: int = 24 * 60 * 60
    freshness_window_seconds: int = 300  # 0 disables the check
    require_timestamp: bool = False
    device_hash_min_length: int = 32
    device_hash_max_length: int = 128
    token_retention_days: int = 7
    purge_interval_seconds: int = 3600

    def __post_init__(self) -> None:
        if self.token_lifetime_seconds < 60:
            raise ValueError("token_lifetime_seconds must be at least 60")
        if self.freshness_window_seconds < 0:
            raise ValueError("freshness_window_seconds cannot be negative")
        if self.device_hash_min_length < 32:
            raise ValueError("device_hash_min_length must be at least 32")
        if self.device_hash_max_length < self.device_hash_min_length:
            raise ValueError("device_hash_max_length must be >= device_hash_min_length")
        if self.token_retention_days < 0:
            raise ValueError("token_retention_days cannot be negative")
        if self.purge_interval_seconds < 1:
            raise ValueError("purge_interval_seconds must be at least 1")


@dataclass(frozen=True, slots=True)
class DatabaseConfig:
    """
    Persistence settings.

    url is "sqlite:///<path>" or a "postgresql://" DSN. Empty means
    SQLite under the data directory.
    """

    url: str = ""
    busy_timeout_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.url and not self.url.startswith(("sqlite:///", "postgresql://", "postgres://")):
            raise ValueError(f"Unsupported database url scheme: {self.url.split(':', 1)[0]}")
        if self.busy_timeout_seconds <= 0:
            raise ValueError("busy_timeout_seconds must be positive")


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Immutable logging configuration."""

    level: str = "INFO"
    max_file_size_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5
    enable_console: bool = True
    enable_file: bool = True
    enable_json: bool = False

    def __post_init__(self) -> None:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if self.level.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {self.level}")


@dataclass(frozen=True, slots=True)
class ServerSecrets:
    """
    Server-held secrets.

    Never part of DeviceBindConfig and never logged.
    """

    token_secret: str
    device_salt: str

    def __repr__(self) -> str:
        return "ServerSecrets(<redacted>)"

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX) -> "ServerSecrets":
        """
        Read DEVICEBIND_TOKEN_SECRET and DEVICEBIND_DEVICE_SALT.

        Raises:
            RuntimeError: If either is missing or too short
        """
        token_secret = os.environ.get(f"{prefix}_TOKEN_SECRET", "")
        device_salt = os.environ.get(f"{prefix}_DEVICE_SALT", "")

        if not token_secret:
            raise RuntimeError(f"{prefix}_TOKEN_SECRET env var missing.")
        if not device_salt:
            raise RuntimeError(f"{prefix}_DEVICE_SALT env var missing.")
        if len(token_secret) < 32:
            raise RuntimeError(f"{prefix}_TOKEN_SECRET must be at least 32 characters.")

        return cls(token_secret=token_secret, device_salt=device_salt)


_SECTIONS: Final[dict[str, type]] = {
    "paths": PathConfig,
    "binding": BindingConfig,
    "authority": AuthorityConfig,
    "database": DatabaseConfig,
    "logging": LoggingConfig,
}


def _coerce(section_cls: type, name: str, raw: str) -> Any:
    """Convert an environment string to the type of a dataclass field."""
    default = getattr(section_cls(), name)
    if isinstance(default, bool):
        return _parse_bool(raw)
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    if isinstance(default, Path):
        return Path(raw)
    return raw


class DeviceBindConfig:
    """
    Immutable configuration with environment variable overrides.

    Usage:
        config = DeviceBindConfig.load()
        window = config.authority.freshness_window_seconds
        db_url = config.database_url()
    """

    __slots__ = ("_paths", "_binding", "_authority", "_database", "_logging", "_frozen", "_config_hash")

    def __init__(
        self,
        paths: Optional[PathConfig] = None,
        binding: Optional[BindingConfig] = None,
        authority: Optional[AuthorityConfig] = None,
        database: Optional[DatabaseConfig] = None,
        logging: Optional[LoggingConfig] = None,
    ) -> None:
        object.__setattr__(self, "_frozen", False)
        object.__setattr__(self, "_paths", paths or PathConfig())
        object.__setattr__(self, "_binding", binding or BindingConfig())
        object.__setattr__(self, "_authority", authority or AuthorityConfig())
        object.__setattr__(self, "_database", database or DatabaseConfig())
        object.__setattr__(self, "_logging", logging or LoggingConfig())
        object.__setattr__(self, "_config_hash", self._compute_hash())
        object.__setattr__(self, "_frozen", True)

    def _compute_hash(self) -> str:
        config_str = f"{self._paths}|{self._binding}|{self._authority}|{self._database}|{self._logging}"
        return hashlib.sha256(config_str.encode()).hexdigest()[:16]

    @property
    def paths(self) -> PathConfig:
        return self._paths

    @property
    def binding(self) -> BindingConfig:
        return self._binding

    @property
    def authority(self) -> AuthorityConfig:
        return self._authority

    @property
    def database(self) -> DatabaseConfig:
        return self._database

    @property
    def logging(self) -> LoggingConfig:
        return self._logging

    @property
    def config_hash(self) -> str:
        return self._config_hash

    def database_url(self) -> str:
        """Resolve the effective database url."""
        if self._database.url:
            return self._database.url
        return f"sqlite:///{self._paths.data_dir / 'devicebind.db'}"

    @classmethod
    def load(cls, env_prefix: str = ENV_PREFIX) -> "DeviceBindConfig":
        """
        Load configuration with environment variable overrides.

        Examples:
            DEVICEBIND_LOGGING__LEVEL=DEBUG
            DEVICEBIND_AUTHORITY__FRESHNESS_WINDOW_SECONDS=120
            DEVICEBIND_PATHS__DATA_DIR=/srv/devicebind

        DATABASE_URL is honoured when DEVICEBIND_DATABASE__URL is unset.
        """
        overrides = cls._parse_env_overrides(env_prefix)

        if "database.url" not in overrides and os.environ.get("DATABASE_URL"):
            overrides["database.url"] = os.environ["DATABASE_URL"]

        sections: dict[str, Any] = {}
        for section_name, section_cls in _SECTIONS.items():
            known = {f.name for f in fields(section_cls)}
            kwargs = {}
            for key, raw in overrides.items():
                prefix, _, name = key.partition(".")
                if prefix == section_name and name in known:
                    kwargs[name] = _coerce(section_cls, name, raw)
            sections[section_name] = section_cls(**kwargs) if kwargs else None

        return cls(**sections)

    @staticmethod
    def _parse_env_overrides(prefix: str) -> dict[str, str]:
        """Parse environment variables with the given prefix."""
        overrides: dict[str, str] = {}
        prefix_upper = f"{prefix.upper()}_"

        for key, value in os.environ.items():
            if key.startswith(prefix_upper):
                config_key = key[len(prefix_upper):].lower().replace("__", ".")
                if _is_sensitive_key(config_key):
                    continue
                overrides[config_key] = value

        return overrides

    def ensure_directories(self) -> None:
        """Create data and log directories, owner-only on POSIX."""
        for directory in (self._paths.data_dir, self._paths.log_dir):
            directory.mkdir(parents=True, exist_ok=True)
            if platform.system().lower() != "windows":
                directory.chmod(stat.S_IRWXU)

    def __repr__(self) -> str:
        return f"DeviceBindConfig(hash={self._config_hash})"

    def __setattr__(self, name: str, value: Any) -> None:
        if getattr(self, "_frozen", False):
            raise AttributeError("DeviceBindConfig is immutable after initialization")
        super().__setattr__(name, value)

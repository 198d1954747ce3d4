"""Shared fixtures: temporary stores, a controllable clock, simulated hardware."""

from __future__ import annotations

import hashlib
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import pytest

from devicebind.core.auth.accounts import AccountManager
from devicebind.core.auth.argon2_auth import Argon2Hasher
from devicebind.core.auth.authority import DeviceAuthority
from devicebind.core.auth.device_hash_processor import DeviceHashProcessor
from devicebind.core.auth.tokens import TokenSigner
from devicebind.core.device.binding_store import DeviceBindingStore
from devicebind.core.device.hardware_fingerprint import HardwareIdentityExtractor
from devicebind.db.sqlite_store import SqliteDeviceStore


TOKEN_SECRET = "test-token-secret-0123456789abcdef0123456789"
DEVICE_SALT = "test-device-salt"
PASSWORD = "Secret123"


class FakeClock:
    """Callable returning a settable aware UTC time."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)

    def millis(self) -> int:
        return int(self.now.timestamp() * 1000)


def device_hash(label: str) -> str:
    """A well-formed 64-char device hash for a label."""
    return hashlib.sha256(label.encode()).hexdigest()


class FakeHardware:
    """Mutable attribute values fed to HardwareIdentityExtractor overrides."""

    def __init__(self) -> None:
        self.values: Dict[str, Any] = {
            "machine_id": "4c4c4544-0042-3510-8052-b4c04f384d32",
            "cpu_model": "Intel(R) Core(TM) i7-8650U CPU @ 1.90GHz",
            "platform": "linux",
            "arch": "x86_64",
            "hostname": "alice-laptop",
            "total_memory": 16 * 1024 ** 3,
            "mac_addresses": ("3c:52:82:aa:bb:cc",),
        }

    def reader(self, name: str):
        def read() -> Any:
            value = self.values[name]
            if isinstance(value, Exception):
                raise value
            return value
        return read

    def extractor(self) -> HardwareIdentityExtractor:
        return HardwareIdentityExtractor(
            overrides={name: self.reader(name) for name in self.values}
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture(scope="session")
def hasher() -> Argon2Hasher:
    # Lowest parameters the hasher accepts
    return Argon2Hasher(memory_cost=65536, time_cost=2, parallelism=1)


@pytest.fixture
def store(tmp_path) -> SqliteDeviceStore:
    sqlite_store = SqliteDeviceStore(tmp_path / "devicebind.db", busy_timeout=30.0)
    sqlite_store.initialize()
    return sqlite_store


@pytest.fixture
def accounts(store, hasher, clock) -> AccountManager:
    return AccountManager(store, hasher, clock=clock)


@pytest.fixture
def signer() -> TokenSigner:
    return TokenSigner(TOKEN_SECRET, lifetime=timedelta(hours=24))


@pytest.fixture
def processor() -> DeviceHashProcessor:
    return DeviceHashProcessor(DEVICE_SALT, freshness_window=timedelta(seconds=300))


@pytest.fixture
def authority(store, accounts, signer, processor, clock) -> DeviceAuthority:
    return DeviceAuthority(store, accounts, signer, processor, clock=clock)


@pytest.fixture
def hardware() -> FakeHardware:
    return FakeHardware()


@pytest.fixture
def binding_store(tmp_path, hardware, clock) -> DeviceBindingStore:
    return DeviceBindingStore(
        tmp_path / "device",
        extractor=hardware.extractor(),
        clock=clock,
    )

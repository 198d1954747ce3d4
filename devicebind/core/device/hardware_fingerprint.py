"""
Hardware Fingerprinting
=======================

Derives a stable fingerprint from locally observable machine attributes.

Attributes:
- Machine identifier (Windows MachineGuid / Linux machine-id / macOS IOPlatformUUID)
- CPU model string
- OS platform and architecture
- Hostname
- Total physical memory
- Physical NIC MAC addresses (virtual adapters excluded by vendor prefix)

Security Properties:
- Only the SHA-256 digest leaves this module
- Attribute read failures never abort; the fingerprint is flagged
  low confidence instead
- The local store key uses a separate subset of attributes

WARNING:
- Hostname or NIC changes alter the fingerprint
- Hypervisor NICs are filtered so VM NIC churn does not
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import platform
import re
import socket
import subprocess
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Final, Mapping, Optional, Tuple

import psutil


# Known virtual adapter vendor prefixes
VIRTUAL_MAC_PREFIXES: Final[tuple[str, ...]] = (
    "00:15:5d",  # Hyper-V
    "00:50:56",  # VMware
    "00:0c:29",  # VMware
    "00:05:69",  # VMware
    "08:00:27",  # VirtualBox
    "52:54:00",  # QEMU/KVM
    "00:16:3e",  # Xen
    "00:1c:42",  # Parallels
)

NULL_MAC: Final[str] = "00:00:00:00:00:00"
UNKNOWN_VALUE: Final[str] = "unknown"

# Used when collection fails wholesale
FALLBACK_FINGERPRINT_SEED: Final[bytes] = b"DeviceBind_FallbackFingerprint_v1"

ATTRIBUTE_NAMES: Final[tuple[str, ...]] = (
    "machine_id",
    "cpu_model",
    "platform",
    "arch",
    "hostname",
    "total_memory",
    "mac_addresses",
)

_MAC_RE: Final[re.Pattern[str]] = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")

_log = logging.getLogger("devicebind.device.fingerprint")


@dataclass(frozen=True, slots=True)
class HardwareAttributes:
    """Raw attributes feeding the fingerprint. Never persisted or sent."""

    machine_id: str
    cpu_model: str
    platform: str
    arch: str
    hostname: str
    total_memory: int
    mac_addresses: Tuple[str, ...]

    def __repr__(self) -> str:
        return f"HardwareAttributes(platform={self.platform}, arch={self.arch})"

    def canonical_json(self) -> str:
        """Deterministic serialization used for hashing."""
        data = asdict(self)
        data["mac_addresses"] = ",".join(self.mac_addresses)
        return json.dumps(data, sort_keys=True, separators=(",", ":"))


@dataclass(frozen=True, slots=True)
class HardwareFingerprint:
    """
    Immutable hardware fingerprint.

    Attributes:
        fingerprint_hash: SHA-256 hex digest of the attributes
        low_confidence: True when any attribute could not be read
        failed_sources: Names of the attributes that failed
    """

    fingerprint_hash: str
    low_confidence: bool = False
    failed_sources: frozenset[str] = frozenset()

    def __repr__(self) -> str:
        return (
            f"HardwareFingerprint(low_confidence={self.low_confidence}, "
            f"failed={sorted(self.failed_sources)})"
        )

    def matches(self, other: "HardwareFingerprint") -> bool:
        """Constant-time comparison with another fingerprint."""
        return self.matches_hash(other.fingerprint_hash)

    def matches_hash(self, hash_value: str) -> bool:
        """Constant-time comparison with a stored hash."""
        return hmac.compare_digest(
            self.fingerprint_hash.encode(),
            hash_value.encode(),
        )


def normalize_mac(mac: str) -> str:
    """Lowercase, colon-separated form ("AA-BB-..." becomes "aa:bb:...")."""
    return mac.strip().lower().replace("-", ":")


def is_physical_mac(mac: str) -> bool:
    """True unless the MAC is null, malformed or a known virtual vendor."""
    mac = normalize_mac(mac)
    if not _MAC_RE.match(mac) or mac == NULL_MAC:
        return False
    return not mac.startswith(VIRTUAL_MAC_PREFIXES)


def filter_physical_macs(macs: list[str]) -> Tuple[str, ...]:
    """Normalize, drop virtual adapters, deduplicate and sort."""
    return tuple(sorted({normalize_mac(m) for m in macs if is_physical_mac(m)}))


class HardwareIdentityExtractor:
    """
    Collects hardware attributes and digests them.

    Every attribute has a reader method. Readers can be replaced through
    ``overrides`` (attribute name -> zero-argument callable), which is how
    a hostname change or a failing source is simulated.

    Usage:
        extractor = HardwareIdentityExtractor()
        fingerprint = extractor.fingerprint()

        # Later, verify
        if not extractor.fingerprint().matches_hash(stored_hash):
            ...
    """

    __slots__ = ("_platform", "_readers")

    def __init__(self, overrides: Optional[Mapping[str, Callable[[], Any]]] = None) -> None:
        self._platform = platform.system().lower()
        self._readers: Dict[str, Callable[[], Any]] = {
            "machine_id": self._read_machine_id,
            "cpu_model": self._read_cpu_model,
            "platform": lambda: self._platform,
            "arch": platform.machine,
            "hostname": socket.gethostname,
            "total_memory": lambda: int(psutil.virtual_memory().total),
            "mac_addresses": self._read_mac_addresses,
        }
        for name, reader in (overrides or {}).items():
            if name not in self._readers:
                raise ValueError(f"Unknown hardware attribute: {name}")
            self._readers[name] = reader

    def collect_attributes(self) -> Tuple[HardwareAttributes, frozenset[str]]:
        """
        Read every attribute.

        Returns:
            (attributes, names of attributes that failed to read)
        """
        values: Dict[str, Any] = {}
        failed: set[str] = set()

        for name in ATTRIBUTE_NAMES:
            try:
                value = self._readers[name]()
            except Exception as e:
                _log.warning(f"Hardware attribute '{name}' unavailable: {type(e).__name__}")
                value = None

            if value in (None, "", ()):
                failed.add(name)
                value = UNKNOWN_VALUE

            values[name] = value

        if values["total_memory"] == UNKNOWN_VALUE:
            values["total_memory"] = 0
        if values["mac_addresses"] == UNKNOWN_VALUE:
            values["mac_addresses"] = ()
        else:
            values["mac_addresses"] = tuple(values["mac_addresses"])

        return HardwareAttributes(**values), frozenset(failed)

    def fingerprint(self) -> HardwareFingerprint:
        """
        Compute the hardware fingerprint.

        Never raises: on a wholesale failure a fixed fallback digest is
        returned, flagged low confidence.
        """
        try:
            attributes, failed = self.collect_attributes()
            digest = hashlib.sha256(attributes.canonical_json().encode()).hexdigest()
        except Exception as e:
            _log.error(f"Hardware fingerprint collection failed, using fallback: {type(e).__name__}")
            return HardwareFingerprint(
                fingerprint_hash=hashlib.sha256(FALLBACK_FINGERPRINT_SEED).hexdigest(),
                low_confidence=True,
                failed_sources=frozenset(ATTRIBUTE_NAMES),
            )

        if failed:
            _log.warning(f"Low confidence fingerprint, failed sources: {sorted(failed)}")

        return HardwareFingerprint(
            fingerprint_hash=digest,
            low_confidence=bool(failed),
            failed_sources=failed,
        )

    def store_key_material(self) -> bytes:
        """
        Key material for the local store: machine id, platform, arch.

        Independent of the binding fingerprint.
        """
        parts = []
        for name in ("machine_id", "platform", "arch"):
            try:
                value = self._readers[name]() or UNKNOWN_VALUE
            except Exception:
                _log.warning(f"Store key attribute '{name}' unavailable, using fallback")
                value = UNKNOWN_VALUE
            parts.append(str(value))
        parts.append("secure-device-key")
        return "-".join(parts).encode("utf-8")

    def _read_machine_id(self) -> Optional[str]:
        """Read the platform machine identifier."""
        if self._platform == "windows":
            import winreg
            key = winreg.OpenKey(
                winreg.HKEY_LOCAL_MACHINE,
                r"SOFTWARE\Microsoft\Cryptography",
            )
            try:
                machine_guid, _ = winreg.QueryValueEx(key, "MachineGuid")
            finally:
                winreg.CloseKey(key)
            return str(machine_guid)

        if self._platform == "darwin":
            result = subprocess.run(
                ["ioreg", "-rd1", "-c", "IOPlatformExpertDevice"],
                capture_output=True,
                text=True,
                timeout=5,
            )
            if result.returncode == 0:
                match = re.search(r'"IOPlatformUUID"\s*=\s*"([^"]+)"', result.stdout)
                if match:
                    return match.group(1)
            return None

        for candidate in (Path("/etc/machine-id"), Path("/var/lib/dbus/machine-id")):
            if candidate.exists():
                machine_id = candidate.read_text().strip()
                if machine_id:
                    return machine_id
        return None

    def _read_cpu_model(self) -> Optional[str]:
        """Read the CPU model string."""
        if self._platform == "linux":
            cpuinfo_path = Path("/proc/cpuinfo")
            if cpuinfo_path.exists():
                for line in cpuinfo_path.read_text().splitlines():
                    if line.lower().startswith("model name"):
                        _, _, model = line.partition(":")
                        if model.strip():
                            return model.strip()

        elif self._platform == "darwin":
            result = subprocess.run(
                ["sysctl", "-n", "machdep.cpu.brand_string"],
                capture_output=True,
                text=True,
                timeout=5,
            )
            if result.returncode == 0 and result.stdout.strip():
                return result.stdout.strip()

        return platform.processor() or None

    @staticmethod
    def _read_mac_addresses() -> Tuple[str, ...]:
        """Collect non-loopback, non-virtual link-layer addresses."""
        macs: list[str] = []
        for _name, addresses in psutil.net_if_addrs().items():
            for address in addresses:
                if address.family == psutil.AF_LINK and address.address:
                    macs.append(address.address)
        return filter_physical_macs(macs)

"""
Device Hash Generation
======================

Produces the opaque device hash sent with register and login requests.

The hash is SHA-256 over the canonical JSON of the binding's device id,
its hardware fingerprint, the generation timestamp and optional context.
Raw hardware attributes never appear in it.

WARNING:
- Each call yields a new hash because the timestamp changes
- A hash is only produced while the local binding validates
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict

from devicebind.core.device.binding_store import DeviceBindingStore
from devicebind.core.errors import DeviceValidationError


_log = logging.getLogger("devicebind.device.hash")


def _now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


@dataclass(frozen=True, slots=True)
class DeviceHashEnvelope:
    """
    A device hash and the timestamp it was generated with.

    Attributes:
        device_hash: 64-char lowercase hex digest
        timestamp: Milliseconds since the Unix epoch
    """

    device_hash: str
    timestamp: int

    def __repr__(self) -> str:
        return f"DeviceHashEnvelope(timestamp={self.timestamp})"

    def as_payload(self) -> Dict[str, object]:
        """Request body fields for the authority."""
        return {"deviceHash": self.device_hash, "deviceTimestamp": self.timestamp}


def compute_device_hash(
    device_id: str,
    hardware_fingerprint: str,
    timestamp: int,
    additional_data: str = "",
) -> str:
    """Hash the canonical JSON of the four inputs."""
    payload = json.dumps(
        {
            "deviceId": device_id,
            "hardwareFingerprint": hardware_fingerprint,
            "timestamp": timestamp,
            "additionalData": additional_data,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class DeviceHashGenerator:
    """
    Generates device hashes from a validated local binding.

    Usage:
        generator = DeviceHashGenerator(store)
        envelope = generator.generate()
        requests.post(url, json={**credentials, **envelope.as_payload()})
    """

    __slots__ = ("_store", "_clock_ms")

    def __init__(
        self,
        store: DeviceBindingStore,
        clock_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self._clock_ms = clock_ms

    def generate(self, context_data: str = "") -> DeviceHashEnvelope:
        """
        Validate the binding and hash it with the current timestamp.

        Raises:
            DeviceValidationError: If the binding is missing, mismatched
                or expired
        """
        validation = self._store.validate()
        if not validation.valid or validation.binding is None:
            reason = validation.reason_text or "missing-binding"
            _log.warning(f"Device hash refused: {reason}")
            raise DeviceValidationError(reason)

        timestamp = self._clock_ms()
        binding = validation.binding
        device_hash = compute_device_hash(
            binding.device_id,
            binding.hardware_fingerprint,
            timestamp,
            context_data,
        )
        return DeviceHashEnvelope(device_hash=device_hash, timestamp=timestamp)

    def generate_device_hash(self, context_data: str = "") -> str:
        """Return only the hash. See generate()."""
        return self.generate(context_data).device_hash

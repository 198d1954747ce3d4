"""
DeviceBind Device Module
========================

Client-side hardware fingerprinting, the encrypted binding store and
device hash generation.

Security Features:
- Multiple hardware identifier sources
- Only hashes leave the device (never raw identifiers)
- Binding revalidated on every run

Components:
- hardware_fingerprint.py: Collect and hash hardware attributes
- binding_store.py: Persist and validate the device binding
- device_hash.py: Derive per-request device hashes
"""

from devicebind.core.device.hardware_fingerprint import (
    HardwareFingerprint,
    HardwareIdentityExtractor,
)
from devicebind.core.device.binding_store import (
    BindingFailure,
    BindingValidation,
    DeviceBinding,
    DeviceBindingStore,
)
from devicebind.core.device.device_hash import (
    DeviceHashEnvelope,
    DeviceHashGenerator,
)

__all__ = [
    "HardwareFingerprint",
    "HardwareIdentityExtractor",
    "BindingFailure",
    "BindingValidation",
    "DeviceBinding",
    "DeviceBindingStore",
    "DeviceHashEnvelope",
    "DeviceHashGenerator",
]

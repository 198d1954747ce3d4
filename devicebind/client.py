"""
Client Helpers
==============

Glue for an application talking to the device authority over HTTP.

- DeviceClient builds request bodies carrying a fresh device hash
- DeviceClient.from_config places the binding store under the configured
  data directory with the binding section settings
- raise_for_error turns a structured error body back into the
  exception the server raised, by code only
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from devicebind.core.config import DeviceBindConfig
from devicebind.core.device.binding_store import DeviceBinding, DeviceBindingStore
from devicebind.core.device.device_hash import DeviceHashGenerator
from devicebind.core.device.hardware_fingerprint import HardwareIdentityExtractor
from devicebind.core.errors import DeviceBindError, ErrorCode, error_from_code


_log = logging.getLogger("devicebind.client")


BINDING_SUBDIR = "device"


def raise_for_error(body: Optional[Mapping[str, Any]]) -> None:
    """
    Raise the matching DeviceBindError if body is an error response.

    Bodies with an unknown code raise a generic STORAGE_FAILURE so they
    are never mistaken for success.
    """
    if not body or "code" not in body:
        return

    details = body.get("details") or None
    try:
        error = error_from_code(body["code"], body.get("error"), details)
    except ValueError:
        _log.warning(f"Unknown error code in response: {body['code']!r}")
        raise DeviceBindError(ErrorCode.STORAGE_FAILURE, body.get("error")) from None
    raise error


class DeviceClient:
    """
    Client-side facade over the binding store and hash generator.

    Usage:
        client = DeviceClient(DeviceBindingStore(data_dir))
        client.bootstrap()
        body = client.login_payload("alice", "Secret123")
    """

    __slots__ = ("_store", "_generator")

    def __init__(
        self,
        store: DeviceBindingStore,
        generator: Optional[DeviceHashGenerator] = None,
    ) -> None:
        self._store = store
        self._generator = generator or DeviceHashGenerator(store)

    @classmethod
    def from_config(
        cls,
        config: Optional[DeviceBindConfig] = None,
        extractor: Optional[HardwareIdentityExtractor] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> "DeviceClient":
        """Build a client whose binding store follows config.binding."""
        config = config or DeviceBindConfig.load()
        settings = config.binding
        store = DeviceBindingStore(
            config.paths.data_dir / BINDING_SUBDIR,
            extractor=extractor,
            max_age=timedelta(days=settings.max_age_days),
            write_backup=settings.write_backup,
            reject_low_confidence=settings.reject_low_confidence,
            clock=clock,
        )
        return cls(store)

    @property
    def binding_store(self) -> DeviceBindingStore:
        return self._store

    def bootstrap(self) -> DeviceBinding:
        """
        Ensure a valid binding exists. Call once at startup.

        Raises:
            DeviceBindingError: The application cannot proceed
        """
        binding = self._store.initialize_if_needed()
        if binding.low_confidence:
            _log.warning("Device binding is based on a low confidence fingerprint")
        return binding

    def device_payload(self, context_data: str = "") -> Dict[str, Any]:
        return self._generator.generate(context_data).as_payload()

    def register_payload(self, username: str, email: str, password: str) -> Dict[str, Any]:
        return {
            "username": username,
            "email": email,
            "password": password,
            **self.device_payload(),
        }

    def login_payload(self, login: str, password: str) -> Dict[str, Any]:
        return {"username": login, "password": password, **self.device_payload()}

    def logout_other_devices_payload(self) -> Dict[str, Any]:
        return self.device_payload()

    def reset_binding(self) -> bool:
        """Drop the local binding; the next bootstrap() creates a new device id."""
        return self._store.reset()

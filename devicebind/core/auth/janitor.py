"""
Token Janitor
=============

Background purge of expired and long-invalidated session tokens.

Best effort: a failed run is logged and retried on the next interval.
Purging never touches live tokens, so it has no bearing on exclusivity.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Final, Optional

from devicebind.core.errors import DeviceBindError
from devicebind.db.base import DEFAULT_TOKEN_RETENTION, DeviceStore


DEFAULT_PURGE_INTERVAL: Final[float] = 3600.0

_log = logging.getLogger("devicebind.auth.janitor")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenJanitor:
    """
    Daemon thread calling DeviceStore.purge_tokens() periodically.

    Usage:
        janitor = TokenJanitor(store, interval=3600)
        janitor.start()
        ...
        janitor.stop()
    """

    __slots__ = ("_store", "_interval", "_retention", "_clock", "_stop_event", "_thread")

    def __init__(
        self,
        store: DeviceStore,
        interval: float = DEFAULT_PURGE_INTERVAL,
        retention: timedelta = DEFAULT_TOKEN_RETENTION,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._store = store
        self._interval = interval
        self._retention = retention
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def purge_once(self) -> int:
        """Run one purge now and return the number of tokens deleted."""
        deleted = self._store.purge_tokens(self._clock(), self._retention)
        if deleted:
            _log.info(f"Purged {deleted} expired or invalidated token(s)")
        return deleted

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="devicebind-token-janitor",
            daemon=True,
        )
        self._thread.start()
        _log.debug(f"Token janitor started (interval={self._interval}s)")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self.purge_once()
            except DeviceBindError as e:
                _log.warning(f"Token purge failed ({e.code.value}), retrying next interval")

# supervisor.py
from __future__ import annotations

import threading
from typing import Dict, Optional, Tuple

from .model import Event


class CancelToken:
    """Cancellation flag shared by one run and every job/step process in it."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)


class RunSupervisor:
    """
    Tracks in-flight runs per (repository, ref).

    Starting a run for a ref cancels the run already in flight for it, so a
    newer push supersedes an older one instead of racing it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: Dict[Tuple[str, str], CancelToken] = {}

    @staticmethod
    def _key(event: Event) -> Tuple[str, str]:
        return (event.repository.lower(), event.ref)

    def begin(self, event: Event) -> CancelToken:
        token = CancelToken()
        with self._lock:
            previous = self._active.get(self._key(event))
            self._active[self._key(event)] = token
        if previous is not None:
            previous.cancel(f"superseded by a newer event on {event.ref}")
        return token

    def end(self, event: Event, token: CancelToken) -> None:
        with self._lock:
            if self._active.get(self._key(event)) is token:
                del self._active[self._key(event)]

    def active(self, event: Event) -> Optional[CancelToken]:
        with self._lock:
            return self._active.get(self._key(event))

    def cancel(self, event: Event, reason: str = "cancelled") -> bool:
        token = self.active(event)
        if token is None:
            return False
        token.cancel(reason)
        return True

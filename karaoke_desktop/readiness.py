"""Write-once readiness and failure signals shared with the UI."""

import threading
from typing import Optional

PENDING = "pending"
READY = "ready"
FAILED = "failed"


class ReadinessTracker:
    """Once ready or failed, the status never changes for the life of the process."""

    def __init__(self) -> None:
        self._ready = threading.Event()
        self._failed = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None

    def mark_ready(self) -> bool:
        with self._lock:
            if self._ready.is_set() or self._failed.is_set():
                return False
            self._ready.set()
            return True

    def mark_failed(self, reason: str) -> bool:
        with self._lock:
            if self._ready.is_set() or self._failed.is_set():
                return False
            self._reason = reason
            self._failed.set()
            return True

    def is_ready(self) -> bool:
        return self._ready.is_set()

    def is_failed(self) -> bool:
        return self._failed.is_set()

    def failure_reason(self) -> Optional[str]:
        return self._reason

    def status(self) -> str:
        if self._ready.is_set():
            return READY
        if self._failed.is_set():
            return FAILED
        return PENDING

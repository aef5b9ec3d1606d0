"""Concurrency cap for download jobs."""
from __future__ import annotations

import logging
import threading

logger = logging.getLogger(__name__)


class AdmissionController:
    """Counts in-flight jobs against a fixed cap.

    ``try_admit`` never blocks: a full controller answers ``False`` and the
    caller reports the server as busy. Every successful admission must be
    paired with exactly one ``release``.
    """

    def __init__(self, max_concurrent: int) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._max = max_concurrent
        self._active = 0
        self._lock = threading.Lock()

    @property
    def max_concurrent(self) -> int:
        return self._max

    @property
    def active_count(self) -> int:
        with self._lock:
            return self._active

    @property
    def available(self) -> int:
        with self._lock:
            return self._max - self._active

    def try_admit(self) -> bool:
        with self._lock:
            if self._active >= self._max:
                logger.info("Admission rejected active=%d max=%d", self._active, self._max)
                return False
            self._active += 1
            logger.debug("Admitted active=%d max=%d", self._active, self._max)
            return True

    def release(self) -> None:
        with self._lock:
            if self._active <= 0:
                raise RuntimeError("release() called with no admitted jobs")
            self._active -= 1
            logger.debug("Released active=%d max=%d", self._active, self._max)

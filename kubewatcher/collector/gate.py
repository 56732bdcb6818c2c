"""Admission gate bounding how many sessions start listing at once.

A session acquires a slot before its first snapshot load.  By default the
slot is held until the session exits; ``release_admission_on_watch``
lets the engine hand it back once the session reaches steady-state
watching instead.
"""

from __future__ import annotations

import asyncio

from kubewatcher.observability.logging import get_logger

_log = get_logger("collector.gate")

_DEFAULT_CAPACITY: int = 2


class AdmissionGate:
    """Bounded semaphore with a deadline-aware acquire."""

    def __init__(self, capacity: int = _DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("admission gate capacity must be >= 1")
        self._capacity = capacity
        self._semaphore = asyncio.BoundedSemaphore(capacity)
        self._closed = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def closed(self) -> bool:
        return self._closed

    async def acquire(self, timeout_s: float | None = None) -> bool:
        """Wait for a slot; return False on timeout or if the gate is closed."""
        if self._closed:
            return False
        try:
            async with asyncio.timeout(timeout_s):
                await self._semaphore.acquire()
        except TimeoutError:
            _log.warning("admission_timeout", timeout_s=timeout_s, capacity=self._capacity)
            return False
        if self._closed:
            self._semaphore.release()
            return False
        return True

    def release(self) -> None:
        self._semaphore.release()

    def close(self) -> None:
        """Stop admitting new sessions; holders keep their slots until release."""
        self._closed = True

"""Cooperative cancellation for executor runs.

A :class:`CancellationToken` is handed to one executor run. Setting it wakes
the run from any sleep between polls so the cancellation path starts
without waiting for the next poll interval. The persisted ``cancelling``
flag stays authoritative; the token is only a faster wake-up.
"""

from __future__ import annotations

import asyncio


class CancellationToken:
    """One-shot cancellation signal backed by an :class:`asyncio.Event`."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to *seconds*; True if cancelled before or during the sleep."""
        if self._event.is_set():
            return True
        if seconds <= 0:
            await asyncio.sleep(0)
            return self._event.is_set()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True


__all__ = ["CancellationToken"]

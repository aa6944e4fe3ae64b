"""Cooperative cancellation for long-running sessions."""

from __future__ import annotations

import asyncio
from typing import Optional

from .exceptions import CancellationRequested


class CancelToken:
    """
    One-shot cancellation flag shared between a session and its owner.

    Sessions check the token between units of work and may await wait() to
    race it against in-flight work.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self, exc_type: type[CancellationRequested] = CancellationRequested) -> None:
        if self._event.is_set():
            raise exc_type(self.reason or "cancelled")

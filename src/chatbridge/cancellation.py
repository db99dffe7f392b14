"""Caller-owned cancellation token."""

from __future__ import annotations

import asyncio
import contextlib


class CancellationToken:
    """One-shot cancellation signal shared by transport, decoder and adapter.

    Cancelling is idempotent and cannot be undone.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        await self._event.wait()

    async def sleep(self, delay: float) -> bool:
        """Sleep for *delay* seconds unless cancelled first.

        Returns True when the sleep was interrupted by cancellation.
        """
        if self.is_cancelled:
            return True
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, delay))
        return self.is_cancelled

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.is_cancelled})"

"""
Cooperative cancellation for the speaking path.

One token is issued per speak operation. `cancel()` is synchronous so the media
handler can call it while the speak coroutine is suspended (e.g. awaiting the
synthesizer); every await point in the speak path re-checks the token.
"""

from __future__ import annotations

import asyncio
from typing import Optional


class CancellationToken:
    def __init__(self) -> None:
        self._event: Optional[asyncio.Event] = None
        self._cancelled = False
        self.reason = ""

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled}, reason={self.reason!r})"

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "") -> bool:
        """
        Cancel the token.

        Returns:
            True only for the call that actually cancelled it
        """
        if self._cancelled:
            return False
        self._cancelled = True
        self.reason = reason
        if self._event is not None:
            self._event.set()
        return True

    async def wait(self, timeout: float) -> bool:
        """
        Pause for up to `timeout` seconds, returning early on cancellation.

        Returns:
            True if the token was cancelled before or during the pause
        """
        if self._cancelled:
            return True
        if timeout <= 0:
            return False
        if self._event is None:
            self._event = asyncio.Event()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self._cancelled

"""Cooperative cancellation for pipeline runs."""

import asyncio
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Per-run cancellation signal.

    Once triggered it stays triggered. The scheduler stops dispatching,
    cancels in-flight executor calls, and executors can poll `cancelled`
    or await `wait()` to stop cooperatively.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._callbacks: list[Callable[[str], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "Cancelled by user") -> bool:
        """
        Trigger cancellation.

        Returns:
            False if the token was already cancelled
        """
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        for callback in list(self._callbacks):
            try:
                callback(reason)
            except Exception as e:
                logger.error(f"Cancellation callback failed: {e}")
        return True

    def add_callback(self, callback: Callable[[str], None]) -> None:
        """Call `callback(reason)` on cancel (immediately if already cancelled)."""
        if self.cancelled:
            callback(self._reason or "")
            return
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[str], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise asyncio.CancelledError(self._reason)

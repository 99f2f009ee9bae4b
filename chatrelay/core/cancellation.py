"""
chatrelay - Cancellation

Caller-owned cancellation signal. It can be polled, awaited, or subscribed
to; the orchestrator races every suspension point against it.
"""

import asyncio
from typing import Callable, List

from .errors import RequestCancelledError


class CancellationSignal:
    """One-shot cancellation flag shared between a caller and a request."""

    def __init__(self):
        self._cancelled = False
        self._event = None
        self._callbacks: List[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def _get_event(self) -> asyncio.Event:
        # Created lazily so the signal can be built outside a running loop
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        return self._event

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._event is not None:
            self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def subscribe(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Run ``callback`` once on cancellation (immediately if already cancelled).

        Returns a function that removes the subscription.
        """
        if self._cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    async def wait(self) -> None:
        await self._get_event().wait()

    def raise_if_cancelled(self, provider: str = None, request_id: str = "") -> None:
        if self._cancelled:
            raise RequestCancelledError(provider, request_id)

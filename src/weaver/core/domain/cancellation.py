"""Session-wide cancellation token."""

import asyncio
import weakref


class CancellationToken:
    """
    Cooperative cancellation signal shared by one session.

    In-flight provider calls race against `wait()`; the executor checks
    `cancelled` between steps. A child token is cancelled together with its
    parent but can also be cancelled on its own.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._children: weakref.WeakSet[CancellationToken] = weakref.WeakSet()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for child in list(self._children):
            child.cancel(reason)

    def child(self) -> "CancellationToken":
        """Token cancelled when this one is, without cancelling it back."""
        token = CancellationToken()
        if self.cancelled:
            token.cancel(self.reason or "cancelled")
        else:
            self._children.add(token)
        return token

    async def wait(self) -> None:
        await self._event.wait()

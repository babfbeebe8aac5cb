"""Hierarchical cancellation tokens for batches and individual items."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from enum import StrEnum

from tracegen.errors import AbortedError


class CancelReason(StrEnum):
    """Why a token was cancelled. Drives terminal status classification."""

    USER = "user"
    TIMEOUT = "timeout"


class CancellationToken:
    """
    Cooperative cancellation signal with parent → child propagation.

    A batch owns one root token; every item gets a child via :meth:`child`.
    Cancelling the root cancels every live child. Cancelling a child never
    touches its parent or siblings.

    Example::

        batch = CancellationToken()
        item = batch.child()
        batch.cancel()
        assert item.cancelled
    """

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = asyncio.Event()
        self._reason: CancelReason | None = None
        self._children: set[CancellationToken] = set()
        self._callbacks: list[Callable[[CancelReason], None]] = []
        self._parent = parent
        if parent is not None:
            parent._children.add(self)
            if parent.cancelled:
                self.cancel(parent.reason or CancelReason.USER)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> CancelReason | None:
        return self._reason

    def child(self) -> CancellationToken:
        """Return a new token that is cancelled whenever this one is."""
        return CancellationToken(parent=self)

    def detach(self) -> None:
        """Unlink from the parent so a finished item token can be collected."""
        if self._parent is not None:
            self._parent._children.discard(self)
            self._parent = None

    def cancel(self, reason: CancelReason = CancelReason.USER) -> None:
        """Cancel this token and all descendants. Idempotent."""
        if self.cancelled:
            return
        self._reason = reason
        self._event.set()
        for child in list(self._children):
            child.cancel(reason)
        for callback in list(self._callbacks):
            callback(reason)

    def on_cancel(self, callback: Callable[[CancelReason], None]) -> None:
        """Register a sync callback run on cancellation (immediately if already cancelled)."""
        if self.cancelled:
            callback(self._reason or CancelReason.USER)
            return
        self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        """Raise :class:`AbortedError` if the token has been cancelled."""
        if self.cancelled:
            raise AbortedError()

    async def wait(self) -> CancelReason:
        """Block until cancelled and return the reason."""
        await self._event.wait()
        return self._reason or CancelReason.USER

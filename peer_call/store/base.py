from __future__ import annotations

import abc
from typing import Callable

from ..errors import CallError
from ..models import SessionDescription, Slot

ChangeHandler = Callable[["SessionDescription | None"], None]
ErrorHandler = Callable[[CallError], None]


class Subscription:
    """Handle for one active listener on a slot.

    ``cancel()`` is synchronous: once it returns, the store delivers
    nothing more to this handle's callbacks.
    """

    def __init__(
        self,
        room: str,
        slot: Slot,
        on_change: ChangeHandler,
        on_error: ErrorHandler | None = None,
        on_cancel: Callable[[Subscription], None] | None = None,
    ) -> None:
        self.room = room
        self.slot = slot
        self._on_change = on_change
        self._on_error = on_error
        self._on_cancel = on_cancel
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def deliver(self, description: SessionDescription | None) -> None:
        if self._active:
            self._on_change(description)

    def fail(self, error: CallError) -> None:
        if self._active and self._on_error is not None:
            self._on_error(error)

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        if self._on_cancel is not None:
            self._on_cancel(self)

    def __repr__(self) -> str:
        state = "active" if self._active else "cancelled"
        return f"<Subscription {self.room}/{self.slot.value} {state}>"


class RendezvousStore(abc.ABC):
    """Key-value medium the two peers meet on.

    Each room has an ``offer`` and an ``answer`` slot holding at most one
    ``SessionDescription``. There are no transactions: every multi-step
    sequence must tolerate an interleaved write from the other peer.
    """

    @abc.abstractmethod
    async def read_once(self, room: str, slot: Slot) -> SessionDescription | None:
        """Return the current value of a slot without subscribing."""

    @abc.abstractmethod
    async def write(self, room: str, slot: Slot, description: SessionDescription) -> None:
        ...

    @abc.abstractmethod
    async def delete(self, room: str, slot: Slot) -> None:
        """Clear a slot. Clearing an absent slot is not an error."""

    @abc.abstractmethod
    async def subscribe(
        self,
        room: str,
        slot: Slot,
        on_change: ChangeHandler,
        on_error: ErrorHandler | None = None,
    ) -> Subscription:
        """Listen for changes of a slot.

        A value already present is delivered once right after
        subscribing; later writes and deletes (``None``) follow.
        """

    @abc.abstractmethod
    async def on_disconnect_remove(self, room: str, slot: Slot) -> None:
        """Clear ``slot`` server-side if this client is lost abruptly."""

    @abc.abstractmethod
    async def cancel_disconnect_remove(self, room: str, slot: Slot) -> None:
        """Withdraw an ``on_disconnect_remove`` registration, if any."""

    async def close(self) -> None:
        pass

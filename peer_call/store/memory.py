from __future__ import annotations

import asyncio
import itertools

from ..errors import StoreUnavailable
from ..logging import get_logger
from ..models import SessionDescription, Slot
from .base import ChangeHandler, ErrorHandler, RendezvousStore, Subscription

logger = get_logger(__name__)

_client_ids = itertools.count(1)


class InMemoryRendezvous:
    """Shared in-process backend: the "server" several stores talk to.

    Notifications are delivered on the next loop iteration, never inside
    the writer's call, the way a networked store behaves.
    """

    def __init__(self) -> None:
        self._values: dict[tuple[str, Slot], SessionDescription] = {}
        self._subscriptions: dict[tuple[str, Slot], list[Subscription]] = {}
        # client id -> keys to clear if that client is lost
        self._disconnect_triggers: dict[str, set[tuple[str, Slot]]] = {}
        self.available = True
        self.writes: list[tuple[str, Slot, SessionDescription]] = []

    def connect(self, client_id: str | None = None) -> InMemoryStore:
        return InMemoryStore(self, client_id or f"client-{next(_client_ids)}")

    def value(self, room: str, slot: Slot) -> SessionDescription | None:
        return self._values.get((room, slot))

    def subscriber_count(self, room: str, slot: Slot) -> int:
        return len(self._subscriptions.get((room, slot), []))

    def drop_client(self, client_id: str) -> None:
        """Simulate an abrupt loss of ``client_id``: fire its triggers."""
        for room, slot in self._disconnect_triggers.pop(client_id, set()):
            logger.info("disconnect_trigger_fired", client=client_id, room=room, slot=slot.value)
            self._set(room, slot, None)

    def _check(self) -> None:
        if not self.available:
            raise StoreUnavailable("in-memory rendezvous is unavailable")

    def _set(self, room: str, slot: Slot, value: SessionDescription | None) -> None:
        key = (room, slot)
        if value is None:
            if self._values.pop(key, None) is None:
                return
        else:
            self._values[key] = value
            self.writes.append((room, slot, value))
        loop = asyncio.get_running_loop()
        for sub in list(self._subscriptions.get(key, [])):
            loop.call_soon(sub.deliver, value)

    def _add_subscription(self, sub: Subscription) -> None:
        key = (sub.room, sub.slot)
        self._subscriptions.setdefault(key, []).append(sub)
        current = self._values.get(key)
        if current is not None:
            asyncio.get_running_loop().call_soon(sub.deliver, current)

    def _remove_subscription(self, sub: Subscription) -> None:
        subs = self._subscriptions.get((sub.room, sub.slot), [])
        if sub in subs:
            subs.remove(sub)


class InMemoryStore(RendezvousStore):
    """One client's view of an ``InMemoryRendezvous``."""

    def __init__(self, backend: InMemoryRendezvous, client_id: str) -> None:
        self.backend = backend
        self.client_id = client_id
        self._subscriptions: list[Subscription] = []

    async def read_once(self, room: str, slot: Slot) -> SessionDescription | None:
        self.backend._check()
        await asyncio.sleep(0)
        return self.backend.value(room, slot)

    async def write(self, room: str, slot: Slot, description: SessionDescription) -> None:
        self.backend._check()
        await asyncio.sleep(0)
        self.backend._set(room, slot, description)

    async def delete(self, room: str, slot: Slot) -> None:
        self.backend._check()
        await asyncio.sleep(0)
        self.backend._set(room, slot, None)

    async def subscribe(
        self,
        room: str,
        slot: Slot,
        on_change: ChangeHandler,
        on_error: ErrorHandler | None = None,
    ) -> Subscription:
        self.backend._check()
        sub = Subscription(room, slot, on_change, on_error, on_cancel=self._release)
        self._subscriptions.append(sub)
        self.backend._add_subscription(sub)
        return sub

    def _release(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)
        self.backend._remove_subscription(sub)

    async def on_disconnect_remove(self, room: str, slot: Slot) -> None:
        self.backend._check()
        self.backend._disconnect_triggers.setdefault(self.client_id, set()).add((room, slot))

    async def cancel_disconnect_remove(self, room: str, slot: Slot) -> None:
        self.backend._disconnect_triggers.get(self.client_id, set()).discard((room, slot))

    def fail_subscriptions(self, error: StoreUnavailable) -> None:
        """Report a lost backend to every live subscription of this client."""
        for sub in list(self._subscriptions):
            sub.fail(error)

    async def close(self) -> None:
        for sub in list(self._subscriptions):
            sub.cancel()
        # A clean disconnect withdraws the triggers.
        self.backend._disconnect_triggers.pop(self.client_id, None)

"""Negotiation state machine for a two-party call.

A ``NegotiationSession`` meets exactly one other peer in a room of the
rendezvous store. It reads the room once, decides whether to lead
(Initiator, writes ``offer``) or follow (Responder, writes ``answer``),
drives the description exchanger, clears the room once connected and then
listens on ``offer`` so either side can lead a later renegotiation.

Startup classification:

    offer    answer   scenario             action
    -----    ------   --------             ------
    absent   absent   FRESH                lead
    present  absent   AWAITING_RESPONDER   respond to the offer
    any      present  STALE                clear both slots, then lead

Store and peer-connection callbacks never touch session state. They post
events to a queue that a single consumer task processes in order.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Callable

from .errors import (
    CallError,
    ConnectionFailed,
    ConnectionTimeout,
    DescriptionFailed,
    RemoteDescriptionRejected,
)
from .logging import get_logger
from .models import (
    AnswerObserved,
    ConnectDeadlineElapsed,
    ConnectionStateChanged,
    GatheringComplete,
    OfferObserved,
    Role,
    Scenario,
    SessionDescription,
    SessionEvent,
    SessionState,
    Slot,
    StoreOpFailed,
)

if TYPE_CHECKING:
    from .exchanger import SessionDescriptionExchanger
    from .metrics import CallMetrics
    from .store import RendezvousStore, Subscription

logger = get_logger(__name__)

DROPPED_STATES = ("disconnected", "failed", "closed")
# aiortc never leaves these; there is no ICE restart.
TERMINAL_STATES = ("failed", "closed")

# States in which a new offer on the room is answered.
_LISTENING_STATES = (SessionState.CONNECTED, SessionState.RECOVERING)


class _SessionDisposed(Exception):
    """Raised inside the session when dispose() ran during a suspension."""


class NegotiationSession:
    """One call attempt in one room, from classification to dispose()."""

    def __init__(
        self,
        room: str,
        store: RendezvousStore,
        exchanger: SessionDescriptionExchanger,
        connect_timeout: float = 15.0,
        metrics: CallMetrics | None = None,
        on_connection_state_changed: Callable[[str], None] | None = None,
        on_negotiation_failed: Callable[[CallError], None] | None = None,
    ) -> None:
        self.room = room
        self.store = store
        self.exchanger = exchanger
        self.connect_timeout = connect_timeout
        self.metrics = metrics
        self.on_connection_state_changed = on_connection_state_changed
        self.on_negotiation_failed = on_negotiation_failed

        self.state = SessionState.IDLE
        self.role: Role | None = None
        self.scenario: Scenario | None = None
        self.round_no = 0
        self.owned_slots: set[Slot] = set()

        self._events: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._consumer: asyncio.Task | None = None
        self._finished: asyncio.Future | None = None
        self._deadline: asyncio.TimerHandle | None = None
        self._disposed = False
        self._has_connected = False
        self._in_recovery = False
        self._local_offer: SessionDescription | None = None

        # Listener for the answer to our offer (Initiator rounds).
        self._answer_sub: Subscription | None = None
        # Watches the offer slot while we wait for an answer, to notice
        # another peer taking over the lead.
        self._takeover_sub: Subscription | None = None
        # Renegotiation listener, armed only after connect + cleanup.
        self._offer_sub: Subscription | None = None

        self._handlers = {
            OfferObserved: self._on_offer,
            AnswerObserved: self._on_answer,
            GatheringComplete: self._on_gathering_complete,
            ConnectionStateChanged: self._on_connection_state,
            StoreOpFailed: self._on_store_failed,
            ConnectDeadlineElapsed: self._on_deadline,
        }
        self._log = logger.bind(room=room)

    @property
    def listening(self) -> bool:
        """True while the renegotiation listener is armed."""
        return self._offer_sub is not None and self._offer_sub.active

    @property
    def disposed(self) -> bool:
        return self._disposed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> Scenario | None:
        """Classify the room and run the first round up to its first wait.

        Errors raised here were not retried; the caller decides whether to
        start a new session. Returns None if dispose() ran meanwhile.
        """
        if self.state is not SessionState.IDLE:
            raise RuntimeError(f"session already started (state={self.state.value})")

        self._finished = asyncio.get_running_loop().create_future()
        self.exchanger.on_connection_state_change = self._connection_state_changed
        self.exchanger.on_gathering_complete = self._gathering_completed

        self._set_state(SessionState.CLASSIFYING)
        try:
            scenario = await self._classify()
        except _SessionDisposed:
            return None
        except CallError as exc:
            self._release_subscriptions()
            self._cancel_deadline()
            self._set_state(SessionState.FAILED)
            if self.metrics:
                self.metrics.negotiation_failures += 1
            self._log.error("start_failed", reason=exc.reason, error=str(exc))
            self._finish(exc)
            raise

        self._consumer = asyncio.create_task(self._run())
        return scenario

    async def wait_finished(self) -> CallError | None:
        """Wait until the session fails (returns the error) or is disposed."""
        if self._finished is None:
            raise RuntimeError("session not started")
        return await asyncio.shield(self._finished)

    async def dispose(self) -> None:
        """Detach everything, delete the slots this peer owns, close the connection."""
        if self._disposed:
            return
        # Synchronous part: after this no queued or late event has any effect.
        self._disposed = True
        self._release_subscriptions()
        self._cancel_deadline()
        self.exchanger.on_connection_state_change = None
        self.exchanger.on_gathering_complete = None
        self._set_state(SessionState.DISPOSED)

        if self._consumer is not None and self._consumer is not asyncio.current_task():
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
        self._consumer = None

        for slot in sorted(self.owned_slots, key=lambda s: s.value):
            try:
                await self.store.delete(self.room, slot)
                await self.store.cancel_disconnect_remove(self.room, slot)
            except CallError as exc:
                self._log.warning("owned_slot_cleanup_failed", slot=slot.value, error=str(exc))
        self.owned_slots.clear()

        await self.exchanger.close()
        self._finish(None)
        self._log.info("session_disposed", rounds=self.round_no)

    # ------------------------------------------------------------------
    # Classification and rounds
    # ------------------------------------------------------------------

    async def _classify(self) -> Scenario:
        offer, answer = await asyncio.gather(
            self.store.read_once(self.room, Slot.OFFER),
            self.store.read_once(self.room, Slot.ANSWER),
        )
        self._ensure_live()

        if offer is None and answer is None:
            scenario = Scenario.FRESH
        elif answer is None:
            scenario = Scenario.AWAITING_RESPONDER
        else:
            scenario = Scenario.STALE
        self.scenario = scenario
        self._log.info(
            "room_classified",
            scenario=scenario.value,
            offer_present=offer is not None,
            answer_present=answer is not None,
        )

        if scenario is Scenario.STALE:
            if self.metrics:
                self.metrics.stale_rooms_cleared += 1
            await self._clear_room()
            self._ensure_live()

        if scenario is Scenario.AWAITING_RESPONDER:
            await self._respond(offer)
        else:
            await self._lead()
        return scenario

    async def _lead(self) -> None:
        self._begin_round(Role.INITIATOR)
        offer = await self.exchanger.create_complete_offer()
        self._ensure_live()
        await self._publish(Slot.OFFER, offer)
        self._local_offer = offer

        self._set_state(SessionState.AWAITING_ANSWER)
        self._answer_sub = await self.store.subscribe(
            self.room, Slot.ANSWER, self._answer_changed, self._store_failed
        )
        self._takeover_sub = await self.store.subscribe(
            self.room, Slot.OFFER, self._offer_changed, self._store_failed
        )
        self._log.info("awaiting_answer", round=self.round_no)

    async def _respond(self, offer: SessionDescription) -> None:
        self._begin_round(Role.RESPONDER)
        answer = await self.exchanger.create_complete_answer(offer)
        self._ensure_live()
        await self._publish(Slot.ANSWER, answer)
        self._await_connection()

    async def _prepare_to_answer(self) -> None:
        """Swap in a fresh peer connection when the current one cannot answer.

        A dropped connection is dead for good, and one holding our own
        offer rejects a remote offer.
        """
        if (
            self.state is SessionState.RECOVERING
            or self.exchanger.connection_state in TERMINAL_STATES
            or self.exchanger.signaling_state != "stable"
        ):
            await self.exchanger.renew()
            self._ensure_live()

    def _begin_round(self, role: Role) -> None:
        self.round_no += 1
        self.role = role
        self._local_offer = None
        if self.metrics:
            self.metrics.rounds += 1
            self.metrics.role = role.value
            if role is Role.INITIATOR:
                self.metrics.initiator_rounds += 1
            else:
                self.metrics.responder_rounds += 1
        self._log.info("round_started", round=self.round_no, role=role.value)

    async def _publish(self, slot: Slot, description: SessionDescription) -> None:
        if not self.exchanger.gathering_complete:
            raise DescriptionFailed(f"refusing to publish {slot.value} before ICE gathering completed")
        await self.store.write(self.room, slot, description)
        if self._disposed:
            await self.store.delete(self.room, slot)
            raise _SessionDisposed()
        self.owned_slots.add(slot)
        await self.store.on_disconnect_remove(self.room, slot)
        self._log.info("slot_published", slot=slot.value, round=self.round_no)

    def _await_connection(self) -> None:
        self._set_state(SessionState.AWAITING_CONNECTION)
        self._arm_deadline()
        # Renegotiating a live connection does not produce a new transition.
        if self.exchanger.connection_state == "connected":
            self._post(ConnectionStateChanged("connected", self.exchanger.generation))

    async def _clear_room(self) -> None:
        await self.store.delete(self.room, Slot.OFFER)
        await self.store.delete(self.room, Slot.ANSWER)
        self._log.info("room_cleared")

    async def _cleanup_after_connect(self) -> None:
        await self._clear_room()
        for slot in list(self.owned_slots):
            await self.store.cancel_disconnect_remove(self.room, slot)
        self.owned_slots.clear()

    async def _arm_listener(self) -> None:
        self._offer_sub = await self.store.subscribe(
            self.room, Slot.OFFER, self._offer_changed, self._store_failed
        )
        self._log.info("renegotiation_listener_armed", round=self.round_no)

    # ------------------------------------------------------------------
    # Event queue
    # ------------------------------------------------------------------

    def _post(self, event: SessionEvent) -> None:
        if self._disposed or self.state is SessionState.FAILED:
            return
        self._events.put_nowait(event)

    def _offer_changed(self, description: SessionDescription | None) -> None:
        self._post(OfferObserved(description))

    def _answer_changed(self, description: SessionDescription | None) -> None:
        self._post(AnswerObserved(description))

    def _connection_state_changed(self, state: str) -> None:
        self._post(ConnectionStateChanged(state, self.exchanger.generation))

    def _gathering_completed(self) -> None:
        self._post(GatheringComplete())

    def _store_failed(self, error: CallError) -> None:
        self._post(StoreOpFailed(error))

    async def _run(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self._handlers[type(event)](event)
            except _SessionDisposed:
                return
            except CallError as exc:
                self._fail(exc)
                return
            except Exception as exc:
                self._log.exception("event_handler_crashed", event=type(event).__name__)
                self._fail(CallError(f"unexpected error handling {type(event).__name__}: {exc}"))
                return

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _on_answer(self, event: AnswerObserved) -> None:
        description = event.description
        if self.state is not SessionState.AWAITING_ANSWER or description is None:
            return
        if description.kind != "answer":
            raise RemoteDescriptionRejected(f"answer slot holds a {description.kind!r}")

        self._cancel(self._answer_sub)
        self._cancel(self._takeover_sub)
        self._answer_sub = self._takeover_sub = None
        await self.exchanger.apply_remote(description)
        self._ensure_live()
        self._await_connection()

    async def _on_offer(self, event: OfferObserved) -> None:
        description = event.description
        if description is None:
            return

        if self.state is SessionState.AWAITING_ANSWER:
            if self._local_offer is not None and description.sdp == self._local_offer.sdp:
                return
            # Both peers led; the last writer keeps the lead.
            self._log.warning("lead_taken_over", round=self.round_no)
            self._cancel(self._answer_sub)
            self._cancel(self._takeover_sub)
            self._answer_sub = self._takeover_sub = None
            self.owned_slots.discard(Slot.OFFER)
            await self.store.cancel_disconnect_remove(self.room, Slot.OFFER)
            await self._prepare_to_answer()
            await self._respond(description)
            return

        if self.state not in _LISTENING_STATES:
            return
        self._log.info("renegotiation_offer_observed", round=self.round_no)
        self._cancel(self._offer_sub)
        self._offer_sub = None
        await self._prepare_to_answer()
        await self._respond(description)

    async def _on_gathering_complete(self, event: GatheringComplete) -> None:
        self._log.debug("ice_gathering_complete", round=self.round_no)

    async def _on_connection_state(self, event: ConnectionStateChanged) -> None:
        if event.generation != self.exchanger.generation:
            return
        state = event.state
        if self.on_connection_state_changed is not None:
            self.on_connection_state_changed(state)

        if state == "connected":
            if self.state in (SessionState.AWAITING_CONNECTION, SessionState.RECOVERING):
                await self._connected()
            return

        if state not in DROPPED_STATES:
            return
        if self.metrics:
            self.metrics.connected = False
        if self.state is SessionState.RECOVERING:
            return
        if not self._has_connected:
            raise ConnectionFailed(f"connection {state} before it was established")
        if self._in_recovery:
            raise ConnectionFailed(f"connection {state} again while renegotiating")
        await self._enter_recovery(state)

    async def _on_store_failed(self, event: StoreOpFailed) -> None:
        raise event.error

    async def _on_deadline(self, event: ConnectDeadlineElapsed) -> None:
        if event.round_no != self.round_no:
            return
        if self.state is SessionState.RECOVERING:
            raise ConnectionFailed(
                f"no renegotiation within {self.connect_timeout:.1f}s after the connection dropped"
            )
        if self.state is not SessionState.AWAITING_CONNECTION:
            return
        if self._in_recovery:
            raise ConnectionFailed("renegotiation did not reconnect")
        if self.role is Role.RESPONDER and not self._has_connected:
            # The offer we answered is presumably dead; leave an empty room
            # so the next attempt leads instead of answering it again.
            await self._clear_room()
            self.owned_slots.discard(Slot.ANSWER)
        raise ConnectionTimeout(f"not connected within {self.connect_timeout:.1f}s")

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _connected(self) -> None:
        self._cancel_deadline()
        self._has_connected = True
        self._in_recovery = False
        if self.metrics:
            self.metrics.connections += 1
            self.metrics.connected = True

        await self._cleanup_after_connect()
        self._ensure_live()
        self._set_state(SessionState.CONNECTED)
        if not self.listening:
            await self._arm_listener()
        self._log.info("connected", round=self.round_no, role=self.role.value)

    async def _enter_recovery(self, state: str) -> None:
        if self.metrics:
            self.metrics.connection_failures += 1
        self._log.warning("connection_dropped", state=state, round=self.round_no)
        self._in_recovery = True
        self._set_state(SessionState.RECOVERING)
        if not self.listening:
            await self._arm_listener()
        self._arm_deadline()

    def _fail(self, error: CallError) -> None:
        if self.state in (SessionState.FAILED, SessionState.DISPOSED):
            return
        self._release_subscriptions()
        self._cancel_deadline()
        self._set_state(SessionState.FAILED)
        if self.metrics:
            self.metrics.negotiation_failures += 1
            self.metrics.connected = False
        self._log.error("negotiation_failed", reason=error.reason, error=str(error), round=self.round_no)
        if self.on_negotiation_failed is not None:
            self.on_negotiation_failed(error)
        self._finish(error)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _set_state(self, state: SessionState) -> None:
        if state is self.state:
            return
        self._log.debug("session_state", previous=self.state.value, state=state.value)
        self.state = state
        if self.metrics:
            self.metrics.state = state.value

    def _ensure_live(self) -> None:
        if self._disposed:
            raise _SessionDisposed()

    def _arm_deadline(self) -> None:
        self._cancel_deadline()
        loop = asyncio.get_running_loop()
        event = ConnectDeadlineElapsed(self.round_no)
        self._deadline = loop.call_later(self.connect_timeout, self._post, event)

    def _cancel_deadline(self) -> None:
        if self._deadline is not None:
            self._deadline.cancel()
            self._deadline = None

    @staticmethod
    def _cancel(sub: Subscription | None) -> None:
        if sub is not None:
            sub.cancel()

    def _release_subscriptions(self) -> None:
        for sub in (self._answer_sub, self._takeover_sub, self._offer_sub):
            self._cancel(sub)
        self._answer_sub = self._takeover_sub = self._offer_sub = None

    def _finish(self, result: CallError | None) -> None:
        if self._finished is not None and not self._finished.done():
            self._finished.set_result(result)

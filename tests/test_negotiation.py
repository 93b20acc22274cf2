import asyncio

import pytest

from peer_call.errors import (
    ConnectionFailed,
    ConnectionTimeout,
    RemoteDescriptionRejected,
    StoreUnavailable,
)
from peer_call.exchanger import SessionDescriptionExchanger
from peer_call.metrics import CallMetrics
from peer_call.models import Role, Scenario, SessionDescription, SessionState, Slot

from fakes import ROOM, RecordingStore, wait_until

CONNECTED = SessionState.CONNECTED


def both_connected(*sessions):
    return lambda: all(s.state is CONNECTED for s in sessions)


async def seed(backend, offer=None, answer=None):
    """Leave slots behind as a vanished peer would."""
    store = backend.connect("ghost")
    if offer is not None:
        await store.write(ROOM, Slot.OFFER, SessionDescription(kind="offer", sdp=offer))
    if answer is not None:
        await store.write(ROOM, Slot.ANSWER, SessionDescription(kind="answer", sdp=answer))
    return store


class TestClassification:
    @pytest.mark.asyncio
    async def test_first_peer_leads_second_responds(self, backend, make_session):
        a = make_session("A")
        assert await a.start() is Scenario.FRESH
        assert a.role is Role.INITIATOR
        assert a.state is SessionState.AWAITING_ANSWER
        assert backend.value(ROOM, Slot.OFFER) == SessionDescription(kind="offer", sdp="A")
        assert backend.value(ROOM, Slot.ANSWER) is None

        b = make_session("B")
        assert await b.start() is Scenario.AWAITING_RESPONDER
        assert b.role is Role.RESPONDER
        assert b.exchanger.pc.applied_remote == ["A"]

        await wait_until(both_connected(a, b))
        assert a.exchanger.pc.applied_remote == ["B"]
        assert backend.value(ROOM, Slot.OFFER) is None
        assert backend.value(ROOM, Slot.ANSWER) is None
        await wait_until(lambda: a.listening and b.listening)

    @pytest.mark.asyncio
    async def test_stale_room_is_cleared_then_led(self, backend, make_session, network):
        await seed(backend, offer="X", answer="Y")
        metrics = CallMetrics()

        c = make_session("C", metrics=metrics)
        assert await c.start() is Scenario.STALE
        assert c.role is Role.INITIATOR
        assert backend.value(ROOM, Slot.OFFER) == SessionDescription(kind="offer", sdp="C")
        assert backend.value(ROOM, Slot.ANSWER) is None
        assert metrics.stale_rooms_cleared == 1

        d = make_session("D")
        assert await d.start() is Scenario.AWAITING_RESPONDER
        await wait_until(both_connected(c, d))

        for pc in network.connections:
            assert "X" not in pc.applied_remote
            assert "Y" not in pc.applied_remote

    @pytest.mark.asyncio
    async def test_answer_without_offer_is_stale(self, backend, make_session):
        await seed(backend, answer="Y")

        c = make_session("C")
        assert await c.start() is Scenario.STALE
        assert c.role is Role.INITIATOR
        assert backend.value(ROOM, Slot.ANSWER) is None

    @pytest.mark.asyncio
    async def test_start_twice_is_an_error(self, make_session):
        a = make_session("A")
        await a.start()
        with pytest.raises(RuntimeError):
            await a.start()


class TestCleanupAndListener:
    @pytest.mark.asyncio
    async def test_room_cleared_before_listener_armed(self, backend, make_session):
        store = RecordingStore(backend, "A")
        a = make_session("A", store=store)
        store.watched_pc = a.exchanger.pc
        await a.start()
        b = make_session("B")
        await b.start()
        await wait_until(both_connected(a, b))
        await wait_until(lambda: a.listening)

        steps = [(op, slot) for op, slot, *_ in store.ops]
        assert steps == [
            ("write", Slot.OFFER),
            ("subscribe", Slot.ANSWER),
            ("subscribe", Slot.OFFER),
            ("delete", Slot.OFFER),
            ("delete", Slot.ANSWER),
            ("subscribe", Slot.OFFER),
        ]
        _, _, offer_present, answer_present, _ = store.ops[-1]
        assert not offer_present and not answer_present

    @pytest.mark.asyncio
    async def test_descriptions_written_only_when_gathering_complete(self, backend, make_session):
        stores = []
        for name in ("A", "B"):
            store = RecordingStore(backend, name)
            session = make_session(name, store=store)
            store.watched_pc = session.exchanger.pc
            stores.append((store, session))
        for _, session in stores:
            await session.start()
        await wait_until(both_connected(*(s for _, s in stores)))

        writes = [entry for store, _ in stores for entry in store.ops if entry[0] == "write"]
        assert len(writes) == 2
        assert all(gathering == "complete" for *_, gathering in writes)

    @pytest.mark.asyncio
    async def test_owned_disconnect_triggers_withdrawn_after_connect(self, backend, make_session):
        a, b = make_session("A"), make_session("B")
        await a.start()
        await b.start()
        await wait_until(both_connected(a, b))
        await wait_until(lambda: a.listening and b.listening)

        # Losing either client now must not clear anything written later.
        assert not backend._disconnect_triggers.get("A")
        assert not backend._disconnect_triggers.get("B")
        assert a.owned_slots == set()
        assert b.owned_slots == set()


class TestConcurrentLead:
    @pytest.mark.asyncio
    async def test_simultaneous_leads_converge(self, backend, make_session):
        a, b = make_session("A"), make_session("B")

        scenarios = await asyncio.gather(a.start(), b.start())

        assert scenarios == [Scenario.FRESH, Scenario.FRESH]
        await wait_until(both_connected(a, b))
        assert {a.role, b.role} == {Role.INITIATOR, Role.RESPONDER}
        # The overtaken peer answers on a fresh connection; its own still
        # holds the offer it wrote.
        overtaken = a if a.role is Role.RESPONDER else b
        assert overtaken.exchanger.generation == 1
        assert backend.value(ROOM, Slot.OFFER) is None
        assert backend.value(ROOM, Slot.ANSWER) is None


class TestRenegotiation:
    @pytest.mark.asyncio
    async def test_peer_that_hangs_up_is_answered_on_a_fresh_connection(self, backend, make_session):
        metrics = CallMetrics()
        a = make_session("A", metrics=metrics)
        b = make_session("B")
        await a.start()
        await b.start()
        await wait_until(both_connected(a, b))
        await wait_until(lambda: a.listening)
        first_pc = a.exchanger.pc

        # B hangs up cleanly, which closes A's side for good.
        await b.dispose()
        await wait_until(lambda: a.state is SessionState.RECOVERING)
        assert first_pc.signalingState == "closed"

        b2 = make_session("B2")
        assert await b2.start() is Scenario.FRESH
        await wait_until(both_connected(a, b2))

        assert a.exchanger.pc is not first_pc
        assert a.exchanger.pc.name == "A2"
        assert a.exchanger.pc.applied_remote == ["B2"]
        assert a.exchanger.generation == 1
        assert first_pc.closed
        assert a.role is Role.RESPONDER
        assert a.round_no == 2
        assert metrics.connections == 2
        assert metrics.connection_failures == 1
        assert metrics.connected
        assert backend.value(ROOM, Slot.OFFER) is None
        assert backend.value(ROOM, Slot.ANSWER) is None
        await wait_until(lambda: a.listening)

    @pytest.mark.asyncio
    async def test_vanished_peer_is_answered_after_transport_failure(self, network, make_session):
        a, b = make_session("A"), make_session("B")
        await a.start()
        await b.start()
        await wait_until(both_connected(a, b))
        first_pc = a.exchanger.pc

        network.drop(b.exchanger.pc, state="failed")
        await wait_until(lambda: a.state is SessionState.RECOVERING)
        await b.dispose()
        assert first_pc.connectionState == "failed"

        b2 = make_session("B2")
        assert await b2.start() is Scenario.FRESH
        await wait_until(both_connected(a, b2))

        assert a.exchanger.pc.name == "A2"
        assert first_pc.closed

    @pytest.mark.asyncio
    async def test_offer_on_live_connection_is_answered_on_same_connection(self, backend, network, make_session):
        a = make_session("A")
        await a.start()
        # The far end is driven by hand so it can renegotiate without a session.
        remote = SessionDescriptionExchanger(network.create("B"), gathering_timeout=1.0)
        ghost = backend.connect("ghost")
        answer = await remote.create_complete_answer(backend.value(ROOM, Slot.OFFER))
        await ghost.write(ROOM, Slot.ANSWER, answer)
        await wait_until(lambda: a.state is CONNECTED and a.listening)
        pc = a.exchanger.pc

        await ghost.write(ROOM, Slot.OFFER, await remote.create_complete_offer())
        await wait_until(lambda: a.round_no == 2 and a.state is CONNECTED and a.listening)

        assert a.exchanger.pc is pc
        assert a.exchanger.generation == 0
        assert pc.applied_remote == ["B", "B.2"]
        assert a.role is Role.RESPONDER
        assert backend.value(ROOM, Slot.OFFER) is None
        assert backend.value(ROOM, Slot.ANSWER) is None
        await remote.close()

    @pytest.mark.asyncio
    async def test_no_renegotiation_after_drop_fails(self, network, make_session):
        failures = []
        a = make_session("A", connect_timeout=0.2, on_negotiation_failed=failures.append)
        b = make_session("B")
        await a.start()
        await b.start()
        await wait_until(both_connected(a, b))

        network.drop(b.exchanger.pc, state="failed")
        error = await asyncio.wait_for(a.wait_finished(), timeout=2.0)

        assert isinstance(error, ConnectionFailed)
        assert failures == [error]
        assert a.state is SessionState.FAILED
        assert not a.listening


class TestTimeoutsAndFailures:
    @pytest.mark.asyncio
    async def test_responder_to_dead_offer_times_out_and_clears_room(self, backend, make_session):
        await seed(backend, offer="ghost")
        b = make_session("B", connect_timeout=0.1)
        assert await b.start() is Scenario.AWAITING_RESPONDER

        error = await asyncio.wait_for(b.wait_finished(), timeout=2.0)

        assert isinstance(error, ConnectionTimeout)
        assert backend.value(ROOM, Slot.OFFER) is None
        assert backend.value(ROOM, Slot.ANSWER) is None

    @pytest.mark.asyncio
    async def test_initiator_times_out_when_never_connected(self, network, make_session):
        network.auto_connect = False
        a = make_session("A", connect_timeout=0.1)
        b = make_session("B", connect_timeout=5.0)
        await a.start()
        await b.start()

        error = await asyncio.wait_for(a.wait_finished(), timeout=2.0)
        assert isinstance(error, ConnectionTimeout)

    @pytest.mark.asyncio
    async def test_failure_before_connect_is_terminal(self, network, make_session):
        network.auto_connect = False
        a, b = make_session("A"), make_session("B")
        await a.start()
        await b.start()
        await wait_until(lambda: a.state is SessionState.AWAITING_CONNECTION)

        a.exchanger.pc.set_connection_state("failed")
        error = await asyncio.wait_for(a.wait_finished(), timeout=2.0)

        assert isinstance(error, ConnectionFailed)

    @pytest.mark.asyncio
    async def test_store_unavailable_at_start(self, backend, make_session):
        metrics = CallMetrics()
        a = make_session("A", metrics=metrics)
        backend.available = False

        with pytest.raises(StoreUnavailable):
            await a.start()

        assert a.state is SessionState.FAILED
        assert isinstance(await a.wait_finished(), StoreUnavailable)
        assert metrics.negotiation_failures == 1

    @pytest.mark.asyncio
    async def test_lost_store_while_waiting_fails_session(self, make_session):
        failures = []
        a = make_session("A", on_negotiation_failed=failures.append)
        await a.start()

        a.store.fail_subscriptions(StoreUnavailable("broker went away"))
        error = await asyncio.wait_for(a.wait_finished(), timeout=2.0)

        assert isinstance(error, StoreUnavailable)
        assert failures == [error]

    @pytest.mark.asyncio
    async def test_malformed_offer_rejected_at_start(self, backend, make_session):
        await seed(backend, offer="bad offer")
        b = make_session("B")

        with pytest.raises(RemoteDescriptionRejected):
            await b.start()
        assert b.state is SessionState.FAILED

    @pytest.mark.asyncio
    async def test_answer_slot_holding_an_offer_is_rejected(self, backend, make_session):
        a = make_session("A")
        await a.start()
        store = backend.connect("confused")
        await store.write(ROOM, Slot.ANSWER, SessionDescription(kind="offer", sdp="Z"))

        error = await asyncio.wait_for(a.wait_finished(), timeout=2.0)
        assert isinstance(error, RemoteDescriptionRejected)


class TestDispose:
    @pytest.mark.asyncio
    async def test_dispose_removes_owned_offer_and_listeners(self, backend, make_session):
        a = make_session("A")
        await a.start()
        await a.dispose()

        assert a.state is SessionState.DISPOSED
        assert a.exchanger.pc.closed
        assert backend.value(ROOM, Slot.OFFER) is None
        assert backend.subscriber_count(ROOM, Slot.OFFER) == 0
        assert backend.subscriber_count(ROOM, Slot.ANSWER) == 0
        assert await a.wait_finished() is None

    @pytest.mark.asyncio
    async def test_dispose_keeps_slots_owned_by_the_other_peer(self, backend, network, make_session):
        network.auto_connect = False
        a, b = make_session("A"), make_session("B")
        await a.start()
        await b.start()
        await b.dispose()

        assert backend.value(ROOM, Slot.OFFER) == SessionDescription(kind="offer", sdp="A")
        assert backend.value(ROOM, Slot.ANSWER) is None

    @pytest.mark.asyncio
    async def test_late_events_after_dispose_are_ignored(self, backend, make_session):
        failures, states = [], []
        a = make_session(
            "A",
            on_negotiation_failed=failures.append,
            on_connection_state_changed=states.append,
        )
        await a.start()
        pc = a.exchanger.pc
        await a.dispose()

        await seed(backend, answer="late")
        pc.set_connection_state("failed")
        await asyncio.sleep(0.05)

        assert a.state is SessionState.DISPOSED
        assert failures == []
        assert states == []

    @pytest.mark.asyncio
    async def test_dispose_during_start(self, backend, make_session):
        a = make_session("A")
        task = asyncio.create_task(a.start())
        await asyncio.sleep(0)
        await a.dispose()

        assert await task is None
        assert backend.value(ROOM, Slot.OFFER) is None
        assert backend.writes == []

    @pytest.mark.asyncio
    async def test_dispose_is_idempotent(self, make_session):
        a = make_session("A")
        await a.start()
        await a.dispose()
        await a.dispose()
        assert a.disposed

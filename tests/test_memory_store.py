import asyncio

import pytest

from peer_call.errors import StoreUnavailable
from peer_call.models import Slot

from fakes import ROOM, SessionDescriptionFactory


async def settle():
    """Let call_soon deliveries run."""
    for _ in range(3):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_read_absent_slot_returns_none(backend):
    store = backend.connect()
    assert await store.read_once(ROOM, Slot.OFFER) is None


@pytest.mark.asyncio
async def test_write_then_read(backend):
    store = backend.connect()
    offer = SessionDescriptionFactory()
    await store.write(ROOM, Slot.OFFER, offer)
    assert await store.read_once(ROOM, Slot.OFFER) == offer
    assert await store.read_once(ROOM, Slot.ANSWER) is None
    assert await store.read_once("another-room", Slot.OFFER) is None


@pytest.mark.asyncio
async def test_delete_absent_slot_is_not_an_error(backend):
    store = backend.connect()
    await store.delete(ROOM, Slot.ANSWER)
    await store.delete(ROOM, Slot.ANSWER)
    assert backend.value(ROOM, Slot.ANSWER) is None


@pytest.mark.asyncio
async def test_subscribe_delivers_current_value_then_changes(backend):
    writer, reader = backend.connect("w"), backend.connect("r")
    first, second = SessionDescriptionFactory(), SessionDescriptionFactory()
    await writer.write(ROOM, Slot.OFFER, first)

    seen = []
    await reader.subscribe(ROOM, Slot.OFFER, seen.append)
    await settle()
    await writer.write(ROOM, Slot.OFFER, second)
    await settle()
    await writer.delete(ROOM, Slot.OFFER)
    await settle()

    assert seen == [first, second, None]


@pytest.mark.asyncio
async def test_subscribe_on_empty_slot_delivers_nothing_until_written(backend):
    store = backend.connect()
    seen = []
    await store.subscribe(ROOM, Slot.ANSWER, seen.append)
    await settle()
    assert seen == []


@pytest.mark.asyncio
async def test_delivery_never_happens_inside_write(backend):
    store = backend.connect()
    seen = []
    await store.subscribe(ROOM, Slot.OFFER, seen.append)
    backend._set(ROOM, Slot.OFFER, SessionDescriptionFactory())
    assert seen == []
    await settle()
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_cancelled_subscription_receives_nothing(backend):
    store = backend.connect()
    seen = []
    sub = await store.subscribe(ROOM, Slot.OFFER, seen.append)
    await store.write(ROOM, Slot.OFFER, SessionDescriptionFactory())
    # Delivery is queued; cancelling now must still suppress it.
    sub.cancel()
    sub.cancel()
    await settle()
    assert seen == []
    assert not sub.active
    assert backend.subscriber_count(ROOM, Slot.OFFER) == 0


@pytest.mark.asyncio
async def test_disconnect_trigger_clears_slot_on_abrupt_loss(backend):
    store, observer = backend.connect("peer-a"), backend.connect("peer-b")
    await store.write(ROOM, Slot.OFFER, SessionDescriptionFactory())
    await store.on_disconnect_remove(ROOM, Slot.OFFER)

    seen = []
    await observer.subscribe(ROOM, Slot.OFFER, seen.append)
    await settle()
    backend.drop_client("peer-a")
    await settle()

    assert backend.value(ROOM, Slot.OFFER) is None
    assert seen[-1] is None


@pytest.mark.asyncio
async def test_cancelled_disconnect_trigger_does_not_fire(backend):
    store = backend.connect("peer-a")
    offer = SessionDescriptionFactory()
    await store.write(ROOM, Slot.OFFER, offer)
    await store.on_disconnect_remove(ROOM, Slot.OFFER)
    await store.cancel_disconnect_remove(ROOM, Slot.OFFER)
    # Cancelling twice, or without a registration, is harmless.
    await store.cancel_disconnect_remove(ROOM, Slot.OFFER)
    await store.cancel_disconnect_remove(ROOM, Slot.ANSWER)

    backend.drop_client("peer-a")
    assert backend.value(ROOM, Slot.OFFER) == offer


@pytest.mark.asyncio
async def test_clean_close_withdraws_triggers_and_subscriptions(backend):
    store = backend.connect("peer-a")
    offer = SessionDescriptionFactory()
    await store.write(ROOM, Slot.OFFER, offer)
    await store.on_disconnect_remove(ROOM, Slot.OFFER)
    await store.subscribe(ROOM, Slot.ANSWER, lambda _: None)

    await store.close()
    backend.drop_client("peer-a")

    assert backend.value(ROOM, Slot.OFFER) == offer
    assert backend.subscriber_count(ROOM, Slot.ANSWER) == 0


@pytest.mark.asyncio
async def test_unavailable_backend_raises_store_unavailable(backend):
    store = backend.connect()
    backend.available = False
    with pytest.raises(StoreUnavailable):
        await store.read_once(ROOM, Slot.OFFER)
    with pytest.raises(StoreUnavailable):
        await store.write(ROOM, Slot.OFFER, SessionDescriptionFactory())
    with pytest.raises(StoreUnavailable):
        await store.subscribe(ROOM, Slot.OFFER, lambda _: None)


@pytest.mark.asyncio
async def test_fail_subscriptions_reports_to_error_handlers(backend):
    store = backend.connect()
    errors = []
    await store.subscribe(ROOM, Slot.OFFER, lambda _: None, errors.append)
    await store.subscribe(ROOM, Slot.ANSWER, lambda _: None)

    error = StoreUnavailable("gone")
    store.fail_subscriptions(error)
    assert errors == [error]

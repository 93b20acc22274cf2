"""Shared fixtures for the peer_call tests."""

import pytest
import pytest_asyncio

from peer_call.exchanger import SessionDescriptionExchanger
from peer_call.negotiation import NegotiationSession
from peer_call.store import InMemoryRendezvous

from fakes import ROOM, FakeNetwork


@pytest.fixture
def backend():
    return InMemoryRendezvous()


@pytest.fixture
def network():
    return FakeNetwork()


@pytest_asyncio.fixture
async def make_session(backend, network):
    """Build a NegotiationSession on its own store client and fake pcs."""
    created = []

    def make(name, connect_timeout=2.0, store=None, **kwargs):
        store = store or backend.connect(name)
        pc_factory = network.factory(name)
        exchanger = SessionDescriptionExchanger(pc_factory(), gathering_timeout=1.0, pc_factory=pc_factory)
        session = NegotiationSession(ROOM, store, exchanger, connect_timeout=connect_timeout, **kwargs)
        created.append(session)
        return session

    yield make

    backend.available = True
    for session in created:
        await session.dispose()

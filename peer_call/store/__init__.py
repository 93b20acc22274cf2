"""Rendezvous store backends.

Classes:
    RendezvousStore: interface the negotiation session consumes
    Subscription: handle of one active slot listener
    MQTTStore: retained-message store on an MQTT broker
    InMemoryRendezvous / InMemoryStore: in-process backend and client view
"""

from .base import RendezvousStore, Subscription
from .memory import InMemoryRendezvous, InMemoryStore
from .mqtt import MQTTStore

__all__ = [
    "RendezvousStore",
    "Subscription",
    "InMemoryRendezvous",
    "InMemoryStore",
    "MQTTStore",
]

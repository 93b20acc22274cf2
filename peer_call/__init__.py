"""Two-party video calls negotiated through a shared rendezvous store.

Classes:
    SessionController: join / end / switch camera facade
    NegotiationSession: offer/answer state machine for one call attempt
    SessionDescriptionExchanger: complete (ICE-gathered) descriptions from aiortc
    CallConfig: configuration from flags and PEERCALL_* environment variables
"""

from .config import CallConfig
from .controller import SessionController
from .errors import (
    CallError,
    ConnectionFailed,
    ConnectionTimeout,
    DescriptionFailed,
    GatheringTimeout,
    MediaAcquisitionFailed,
    RemoteDescriptionRejected,
    StoreUnavailable,
)
from .exchanger import SessionDescriptionExchanger
from .models import Role, Scenario, SessionDescription, SessionState, Slot, derive_room_key
from .negotiation import NegotiationSession

__all__ = [
    "CallConfig",
    "SessionController",
    "NegotiationSession",
    "SessionDescriptionExchanger",
    "SessionDescription",
    "Slot",
    "Role",
    "Scenario",
    "SessionState",
    "derive_room_key",
    # Errors
    "CallError",
    "MediaAcquisitionFailed",
    "DescriptionFailed",
    "GatheringTimeout",
    "RemoteDescriptionRejected",
    "ConnectionTimeout",
    "ConnectionFailed",
    "StoreUnavailable",
]

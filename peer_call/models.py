from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from typing import Union

from .errors import CallError

DESCRIPTION_KINDS = ("offer", "answer")


class Slot(str, Enum):
    """The two shared slots of a room."""

    OFFER = "offer"
    ANSWER = "answer"


class Role(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class Scenario(str, Enum):
    """What startup classification found in the room."""

    FRESH = "fresh"
    AWAITING_RESPONDER = "awaiting_responder"
    STALE = "stale"


class SessionState(str, Enum):
    IDLE = "idle"
    CLASSIFYING = "classifying"
    AWAITING_ANSWER = "awaiting_answer"
    AWAITING_CONNECTION = "awaiting_connection"
    CONNECTED = "connected"
    RECOVERING = "recovering"
    FAILED = "failed"
    DISPOSED = "disposed"


@dataclass(frozen=True)
class SessionDescription:
    """A complete local description of one peer, as stored in a slot.

    On the store it is serialized as ``{"type": kind, "sdp": sdp}``.
    """

    kind: str
    sdp: str

    def __post_init__(self) -> None:
        if self.kind not in DESCRIPTION_KINDS:
            raise ValueError(f"invalid description kind: {self.kind!r}")

    def to_payload(self) -> dict:
        return {"type": self.kind, "sdp": self.sdp}

    @classmethod
    def from_payload(cls, payload: dict) -> SessionDescription:
        if not isinstance(payload, dict):
            raise ValueError("description payload must be an object")
        kind = payload.get("type")
        sdp = payload.get("sdp")
        if not isinstance(sdp, str):
            raise ValueError("description payload has no sdp string")
        return cls(kind=kind, sdp=sdp)

    def to_json(self) -> str:
        return json.dumps(self.to_payload())

    @classmethod
    def from_json(cls, raw: str | bytes) -> SessionDescription:
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"description is not valid JSON: {exc}") from exc
        return cls.from_payload(payload)


def derive_room_key(secret: str, memory: str) -> str:
    """Derive a room key from the two phrases both participants know.

    The same pair always maps to the same room, and the key reveals
    neither phrase.
    """
    secret = secret.strip()
    memory = memory.strip()
    if not secret or not memory:
        raise ValueError("both secret and memory are required")
    digest = hashlib.sha256(f"{secret}\x00{memory}".encode()).hexdigest()
    return digest[:32]


# ------------------------------------------------------------------
# Session events
# ------------------------------------------------------------------


@dataclass(frozen=True)
class OfferObserved:
    description: SessionDescription | None


@dataclass(frozen=True)
class AnswerObserved:
    description: SessionDescription | None


@dataclass(frozen=True)
class GatheringComplete:
    pass


@dataclass(frozen=True)
class ConnectionStateChanged:
    state: str
    # Which peer connection reported it; bumped when the handle is renewed.
    generation: int = 0


@dataclass(frozen=True)
class StoreOpFailed:
    error: CallError


@dataclass(frozen=True)
class ConnectDeadlineElapsed:
    round_no: int


SessionEvent = Union[
    OfferObserved,
    AnswerObserved,
    GatheringComplete,
    ConnectionStateChanged,
    StoreOpFailed,
    ConnectDeadlineElapsed,
]

"""Failure taxonomy for a two-party call.

Every error a caller of the session controller can observe derives from
``CallError``. Library exceptions (aiortc, aiomqtt, PyAV) are wrapped with
``raise ... from exc`` at the boundary where they occur.
"""


class CallError(Exception):
    """Base class for call setup and negotiation failures."""

    #: Short machine-readable reason, used in logs and metrics.
    reason = "call_error"


class MediaAcquisitionFailed(CallError):
    """Local camera or microphone could not be opened."""

    reason = "media_acquisition_failed"


class DescriptionFailed(CallError):
    """The peer connection could not create a local description."""

    reason = "description_failed"


class GatheringTimeout(CallError):
    """ICE gathering did not complete within the configured bound."""

    reason = "gathering_timeout"


class RemoteDescriptionRejected(CallError):
    """The remote offer/answer was malformed or incompatible."""

    reason = "remote_description_rejected"


class ConnectionTimeout(CallError):
    """The connection did not reach ``connected`` in time."""

    reason = "connection_timeout"


class ConnectionFailed(CallError):
    """The connection failed, or dropped and could not be renegotiated."""

    reason = "connection_failed"


class StoreUnavailable(CallError):
    """The rendezvous store could not be reached."""

    reason = "store_unavailable"

from __future__ import annotations

import asyncio
import inspect
from typing import Callable, Iterable

from aiortc import MediaStreamTrack, RTCPeerConnection, RTCSessionDescription
from aiortc.exceptions import InvalidAccessError, InvalidStateError

from .errors import ConnectionFailed, DescriptionFailed, GatheringTimeout, RemoteDescriptionRejected
from .logging import get_logger
from .models import SessionDescription

logger = get_logger(__name__)


class SessionDescriptionExchanger:
    """Produces complete local descriptions from one peer connection.

    The rendezvous store carries one full snapshot per slot and no
    trickled candidates, so a description is only handed out once ICE
    gathering has completed.

    With a ``pc_factory`` the exchanger can ``renew()`` its peer
    connection: the old one is closed and a fresh one takes over the same
    outbound tracks. Events from a replaced connection are dropped.
    """

    def __init__(
        self,
        pc: RTCPeerConnection,
        gathering_timeout: float = 10.0,
        pc_factory: Callable[[], RTCPeerConnection] | None = None,
    ) -> None:
        self.pc = pc
        self.gathering_timeout = gathering_timeout
        self.generation = 0
        self._pc_factory = pc_factory
        self._gathered = asyncio.Event()
        self._outbound: list[MediaStreamTrack] = []

        # Set by the owner.
        self.on_connection_state_change: Callable[[str], None] | None = None
        self.on_gathering_complete: Callable[[], None] | None = None
        self.on_track: Callable[[MediaStreamTrack], None] | None = None

        self._attach(pc)

    @property
    def connection_state(self) -> str:
        return self.pc.connectionState

    @property
    def signaling_state(self) -> str:
        return self.pc.signalingState

    @property
    def gathering_complete(self) -> bool:
        return self.pc.iceGatheringState == "complete"

    def add_local_tracks(self, tracks: Iterable[MediaStreamTrack]) -> None:
        for track in tracks:
            self.pc.addTrack(track)
            self._outbound.append(track)
            logger.debug("local_track_added", kind=track.kind)

    async def renew(self) -> None:
        """Close the current peer connection and continue on a fresh one."""
        if self._pc_factory is None:
            raise ConnectionFailed(
                f"peer connection is {self.connection_state} and cannot be rebuilt"
            )
        old = self.pc
        self.pc = self._pc_factory()
        self.generation += 1
        self._gathered = asyncio.Event()
        self._attach(self.pc)
        for track in self._outbound:
            self.pc.addTrack(track)
        logger.info(
            "peer_connection_renewed",
            generation=self.generation,
            previous_state=old.connectionState,
        )
        await old.close()

    async def create_complete_offer(self) -> SessionDescription:
        try:
            offer = await self.pc.createOffer()
        except (InvalidStateError, InvalidAccessError, ValueError) as exc:
            raise DescriptionFailed(f"could not create offer: {exc}") from exc
        return await self._complete(offer)

    async def create_complete_answer(self, remote: SessionDescription) -> SessionDescription:
        if remote.kind != "offer":
            raise RemoteDescriptionRejected(f"expected an offer, got {remote.kind!r}")
        await self.apply_remote(remote)
        try:
            answer = await self.pc.createAnswer()
        except (InvalidStateError, InvalidAccessError, ValueError) as exc:
            raise DescriptionFailed(f"could not create answer: {exc}") from exc
        return await self._complete(answer)

    async def apply_remote(self, description: SessionDescription) -> None:
        remote = RTCSessionDescription(sdp=description.sdp, type=description.kind)
        try:
            await self.pc.setRemoteDescription(remote)
        except (InvalidStateError, InvalidAccessError, ValueError) as exc:
            raise RemoteDescriptionRejected(f"remote {description.kind} rejected: {exc}") from exc
        logger.info("remote_description_applied", kind=description.kind)

    async def replace_outbound(self, kind: str, track: MediaStreamTrack) -> bool:
        """Swap the track of the ``kind`` sender without renegotiating."""
        for sender in self.pc.getSenders():
            if sender.track is not None and sender.track.kind == kind:
                previous = sender.track
                # Sync in aiortc, a coroutine in some forks.
                result = sender.replaceTrack(track)
                if inspect.isawaitable(result):
                    await result
                self._outbound = [track if t is previous else t for t in self._outbound]
                logger.info("outbound_track_replaced", kind=kind)
                return True
        logger.warning("no_sender", kind=kind)
        return False

    async def replace_outbound_video(self, track: MediaStreamTrack) -> bool:
        return await self.replace_outbound("video", track)

    async def close(self) -> None:
        self.on_connection_state_change = None
        self.on_gathering_complete = None
        self.on_track = None
        await self.pc.close()

    async def _complete(self, description: RTCSessionDescription) -> SessionDescription:
        self._gathered.clear()
        try:
            await self.pc.setLocalDescription(description)
        except (InvalidStateError, InvalidAccessError, ValueError) as exc:
            raise DescriptionFailed(f"could not apply local {description.type}: {exc}") from exc

        await self._wait_ice_gathering()

        local = self.pc.localDescription
        logger.info("local_description_complete", kind=local.type, sdp_chars=len(local.sdp))
        return SessionDescription(kind=local.type, sdp=local.sdp)

    async def _wait_ice_gathering(self) -> None:
        """Block until ICE gathering is complete."""
        if self.gathering_complete:
            return
        try:
            await asyncio.wait_for(self._gathered.wait(), timeout=self.gathering_timeout)
        except asyncio.TimeoutError as exc:
            raise GatheringTimeout(
                f"ICE gathering not complete after {self.gathering_timeout:.1f}s"
            ) from exc

    def _attach(self, pc: RTCPeerConnection) -> None:
        pc.on("connectionstatechange", lambda: self._connection_state_changed(pc))
        pc.on("icegatheringstatechange", lambda: self._gathering_state_changed(pc))
        pc.on("track", lambda track: self._track_received(pc, track))

    def _gathering_state_changed(self, pc: RTCPeerConnection) -> None:
        if pc is not self.pc:
            return
        state = pc.iceGatheringState
        logger.debug("ice_gathering_state", state=state)
        if state == "complete":
            self._gathered.set()
            if self.on_gathering_complete is not None:
                self.on_gathering_complete()

    def _connection_state_changed(self, pc: RTCPeerConnection) -> None:
        if pc is not self.pc:
            return
        state = pc.connectionState
        logger.info("connection_state", state=state, generation=self.generation)
        if self.on_connection_state_change is not None:
            self.on_connection_state_change(state)

    def _track_received(self, pc: RTCPeerConnection, track: MediaStreamTrack) -> None:
        if pc is not self.pc:
            return
        logger.info("remote_track_received", kind=track.kind)
        if self.on_track is not None:
            self.on_track(track)

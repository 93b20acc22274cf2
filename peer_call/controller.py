from __future__ import annotations

import asyncio
from typing import Callable

from aiortc import MediaStreamTrack, RTCConfiguration, RTCIceServer, RTCPeerConnection
from aiortc.contrib.media import MediaBlackhole, MediaRecorder

from .config import CallConfig
from .errors import CallError
from .exchanger import SessionDescriptionExchanger
from .logging import get_logger
from .media import LocalMedia
from .metrics import CallMetrics
from .models import Scenario
from .negotiation import NegotiationSession
from .store import RendezvousStore

logger = get_logger(__name__)


def build_ice_servers(config: CallConfig) -> list[RTCIceServer]:
    servers = [RTCIceServer(urls=[url]) for url in config.stun_urls]
    if config.has_turn_server:
        servers.append(
            RTCIceServer(
                urls=[config.turn_url],
                username=config.turn_username,
                credential=config.turn_credential,
            )
        )
    return servers


class SessionController:
    """Entry and exit points of a call: join, end, switch or mute media.

    One ``NegotiationSession``, one peer connection and one set of local
    tracks per join; ``end()`` releases all of them and leaves the room
    re-enterable.
    """

    def __init__(
        self,
        config: CallConfig,
        store: RendezvousStore,
        metrics: CallMetrics | None = None,
        media_factory: Callable[[], LocalMedia] | None = None,
        pc_factory: Callable[[], RTCPeerConnection] | None = None,
        on_remote_stream: Callable[[MediaStreamTrack], None] | None = None,
        on_connection_state_changed: Callable[[str], None] | None = None,
        on_negotiation_failed: Callable[[CallError], None] | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.metrics = metrics
        self._media_factory = media_factory or self._default_media
        self._pc_factory = pc_factory or self._default_peer_connection

        self.on_remote_stream = on_remote_stream
        self.on_connection_state_changed = on_connection_state_changed
        self.on_negotiation_failed = on_negotiation_failed

        self.room_key: str | None = None
        self.session: NegotiationSession | None = None
        self.media: LocalMedia | None = None
        self._sink: MediaBlackhole | MediaRecorder | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_call(self) -> bool:
        return self.session is not None

    def _default_media(self) -> LocalMedia:
        return LocalMedia(
            video_devices=self.config.video_devices,
            video_format=self.config.video_format,
            audio_device=self.config.audio_device,
            audio_format=self.config.audio_format,
            width=self.config.video_width,
            height=self.config.video_height,
        )

    def _default_peer_connection(self) -> RTCPeerConnection:
        configuration = RTCConfiguration(iceServers=build_ice_servers(self.config))
        return RTCPeerConnection(configuration=configuration)

    async def join(self, room_key: str) -> Scenario | None:
        """Acquire media, build the peer connection and start negotiating.

        On failure everything acquired so far is released and the error is
        re-raised; retrying is up to the caller.
        """
        if self.session is not None:
            raise RuntimeError("already in a call; end() it before joining again")

        self.room_key = room_key
        if self.metrics:
            self.metrics.joins += 1
        logger.info("joining_room", room=room_key)

        try:
            self.media = self._media_factory()
            tracks = await self.media.acquire()

            exchanger = SessionDescriptionExchanger(
                self._pc_factory(),
                gathering_timeout=self.config.gathering_timeout,
                pc_factory=self._pc_factory,
            )
            exchanger.add_local_tracks(tracks)
            exchanger.on_track = self._remote_track
            if self.config.record_path:
                self._sink = MediaRecorder(self.config.record_path)
            else:
                self._sink = MediaBlackhole()

            self.session = NegotiationSession(
                room_key,
                self.store,
                exchanger,
                connect_timeout=self.config.connect_timeout,
                metrics=self.metrics,
                on_connection_state_changed=self._connection_state_changed,
                on_negotiation_failed=self._negotiation_failed,
            )
            return await self.session.start()
        except CallError:
            await self.end()
            raise

    async def end(self) -> None:
        """Hang up. Safe to call repeatedly and after a failure."""
        session, self.session = self.session, None
        if session is not None:
            await session.dispose()

        for task in list(self._tasks):
            task.cancel()
        if self._sink is not None:
            await self._sink.stop()
            self._sink = None
        if self.media is not None:
            self.media.stop()
            self.media = None
        if session is not None:
            logger.info("call_ended", room=self.room_key)

    async def switch_camera(self) -> None:
        """Swap the outbound camera between the user- and environment-facing one."""
        if self.session is None or self.media is None:
            raise RuntimeError("not in a call")
        facing, track = self.media.open_other_camera()
        if track is None:
            logger.warning("camera_switch_skipped", reason="no_video_device")
            return
        if "video" not in self.media.muted:
            try:
                await self.session.exchanger.replace_outbound_video(track)
            except Exception:
                track.stop()
                raise
        self.media.adopt_camera(facing, track)
        if self.metrics:
            self.metrics.camera_switches += 1
        logger.info("camera_switched", facing=facing)

    async def toggle_microphone(self) -> bool:
        """Switch the outbound audio off or back on. Returns True when it is on."""
        return await self._toggle("audio")

    async def toggle_camera(self) -> bool:
        """Switch the outbound video off or back on. Returns True when it is on."""
        return await self._toggle("video")

    async def _toggle(self, kind: str) -> bool:
        # aiortc tracks have no enabled flag; the sender carries a
        # placeholder while the kind is off.
        if self.session is None or self.media is None:
            raise RuntimeError("not in a call")
        live = self.media.live_track(kind)
        if live is None:
            logger.warning("toggle_skipped", kind=kind, reason="no_local_track")
            return False

        muting = kind not in self.media.muted
        track = self.media.placeholder(kind) if muting else live
        if not await self.session.exchanger.replace_outbound(kind, track):
            return kind not in self.media.muted
        self.media.mark_muted(kind, muting)
        logger.info("local_track_toggled", kind=kind, enabled=not muting)
        return not muting

    async def wait_closed(self) -> CallError | None:
        """Wait until the current call fails (returns the error) or ends."""
        if self.session is None:
            raise RuntimeError("not in a call")
        return await self.session.wait_finished()

    # ------------------------------------------------------------------
    # Callbacks from the session / exchanger
    # ------------------------------------------------------------------

    def _remote_track(self, track: MediaStreamTrack) -> None:
        if self._sink is not None:
            self._sink.addTrack(track)
        if self.on_remote_stream is not None:
            self.on_remote_stream(track)

    def _connection_state_changed(self, state: str) -> None:
        if state == "connected" and self._sink is not None:
            # Starts consuming any remote track added since the last start.
            task = asyncio.get_running_loop().create_task(self._sink.start())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        if self.on_connection_state_changed is not None:
            self.on_connection_state_changed(state)

    def _negotiation_failed(self, error: CallError) -> None:
        if self.on_negotiation_failed is not None:
            self.on_negotiation_failed(error)

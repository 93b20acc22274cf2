from __future__ import annotations

import av
import av.error
import numpy as np
from aiortc import AudioStreamTrack, MediaStreamTrack, VideoStreamTrack
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import MediaStreamError

from .errors import MediaAcquisitionFailed
from .logging import get_logger

logger = get_logger(__name__)

FACING_MODES = ("user", "environment")

# Device names that select a synthetic source instead of a capture device.
TEST_PATTERN_DEVICE = "testsrc"
SILENCE_DEVICE = "silence"

# Bar colours per facing mode, so a camera switch is visible on the far end.
_PATTERN_COLOURS = {
    "user": [(255, 255, 255), (255, 255, 0), (0, 255, 255), (0, 255, 0)],
    "environment": [(255, 0, 255), (255, 0, 0), (0, 0, 255), (16, 16, 16)],
}


class TestPatternTrack(VideoStreamTrack):
    """Outbound video track of moving colour bars.

    Used when no camera is configured; aiortc calls recv() to pull the next
    frame for encoding.
    """

    __test__ = False  # not a pytest class

    def __init__(self, width: int = 640, height: int = 480, facing: str = "user") -> None:
        super().__init__()
        self.width = width
        self.height = height
        self.facing = facing
        self._frames = 0

    def render(self) -> np.ndarray:
        """Return the current frame as an rgb24 array of shape (h, w, 3)."""
        colours = _PATTERN_COLOURS.get(self.facing, _PATTERN_COLOURS["user"])
        frame = np.zeros((self.height, self.width, 3), dtype=np.uint8)
        bar = max(1, self.width // len(colours))
        offset = (self._frames * 4) % self.width
        for i, colour in enumerate(colours):
            frame[:, i * bar:(i + 1) * bar] = colour
        return np.roll(frame, offset, axis=1)

    async def recv(self) -> av.VideoFrame:
        if self.readyState != "live":
            raise MediaStreamError

        pts, time_base = await self.next_timestamp()
        frame = av.VideoFrame.from_ndarray(self.render(), format="rgb24")
        frame.pts = pts
        frame.time_base = time_base
        self._frames += 1
        return frame


class BlankVideoTrack(TestPatternTrack):
    """Black frames, sent in place of the camera while it is switched off."""

    def render(self) -> np.ndarray:
        return np.zeros((self.height, self.width, 3), dtype=np.uint8)


class LocalMedia:
    """Local microphone and camera tracks for one call.

    Capture devices are opened through aiortc's ``MediaPlayer`` (ffmpeg
    input device + format, e.g. ``/dev/video0`` with ``v4l2``).
    """

    def __init__(
        self,
        video_devices: dict[str, str],
        video_format: str | None = None,
        audio_device: str | None = None,
        audio_format: str | None = None,
        width: int = 1280,
        height: int = 720,
        facing: str = "user",
    ) -> None:
        self.video_devices = video_devices
        self.video_format = video_format
        self.audio_device = audio_device
        self.audio_format = audio_format
        self.width = width
        self.height = height
        self.facing = facing

        self.audio_track: MediaStreamTrack | None = None
        self.video_track: MediaStreamTrack | None = None
        self._players: dict[MediaStreamTrack, MediaPlayer] = {}
        # Kinds switched off by the user, and the tracks sent instead.
        self.muted: set[str] = set()
        self._placeholders: dict[str, MediaStreamTrack] = {}

    @property
    def tracks(self) -> list[MediaStreamTrack]:
        return [t for t in (self.audio_track, self.video_track) if t is not None]

    async def acquire(self) -> list[MediaStreamTrack]:
        """Open the microphone and the camera for the current facing mode."""
        try:
            self.audio_track = self._open_audio()
            self.video_track = self._open_camera(self.facing, exact=False)
        except MediaAcquisitionFailed:
            self.stop()
            raise
        logger.info(
            "local_media_acquired",
            audio=self.audio_track is not None,
            video=self.video_track is not None,
            facing=self.facing,
        )
        return self.tracks

    def open_other_camera(self) -> tuple[str, MediaStreamTrack]:
        """Open the camera facing the other way; the current track is untouched.

        The device configured for the other facing mode is tried first,
        then the default (``user``) device.
        """
        facing = "environment" if self.facing == "user" else "user"
        try:
            track = self._open_camera(facing, exact=True)
        except MediaAcquisitionFailed as exc:
            logger.warning("exact_camera_unavailable", facing=facing, error=str(exc))
            track = self._open_camera(facing, exact=False)
        return facing, track

    def live_track(self, kind: str) -> MediaStreamTrack | None:
        return self.audio_track if kind == "audio" else self.video_track

    def placeholder(self, kind: str) -> MediaStreamTrack:
        """Silence or black frames to send while ``kind`` is switched off."""
        track = self._placeholders.get(kind)
        if track is None:
            if kind == "audio":
                track = AudioStreamTrack()
            else:
                track = BlankVideoTrack(self.width, self.height, self.facing)
            self._placeholders[kind] = track
        return track

    def mark_muted(self, kind: str, muted: bool) -> None:
        if muted:
            self.muted.add(kind)
            return
        self.muted.discard(kind)
        track = self._placeholders.pop(kind, None)
        if track is not None:
            track.stop()

    def adopt_camera(self, facing: str, track: MediaStreamTrack) -> None:
        """Make ``track`` the current video track and stop the previous one."""
        previous = self.video_track
        self.video_track = track
        self.facing = facing
        if previous is not None and previous is not track:
            self._stop_track(previous)

    def stop(self) -> None:
        for track in self.tracks:
            self._stop_track(track)
        for track in self._placeholders.values():
            track.stop()
        self._placeholders.clear()
        self.muted.clear()
        self.audio_track = None
        self.video_track = None

    def _open_audio(self) -> MediaStreamTrack | None:
        if not self.audio_device:
            return None
        if self.audio_device == SILENCE_DEVICE:
            return AudioStreamTrack()
        player = self._open_player(self.audio_device, self.audio_format, {})
        if player.audio is None:
            raise MediaAcquisitionFailed(f"{self.audio_device} has no audio stream")
        self._players[player.audio] = player
        return player.audio

    def _open_camera(self, facing: str, exact: bool) -> MediaStreamTrack | None:
        device = self.video_devices.get(facing)
        if device is None:
            if exact:
                raise MediaAcquisitionFailed(f"no camera configured for facing mode {facing!r}")
            device = self.video_devices.get("user")
        if not device:
            return None
        if device == TEST_PATTERN_DEVICE:
            return TestPatternTrack(self.width, self.height, facing)

        options = {"video_size": f"{self.width}x{self.height}"}
        player = self._open_player(device, self.video_format, options)
        if player.video is None:
            raise MediaAcquisitionFailed(f"{device} has no video stream")
        self._players[player.video] = player
        return player.video

    @staticmethod
    def _open_player(device: str, fmt: str | None, options: dict) -> MediaPlayer:
        try:
            return MediaPlayer(device, format=fmt, options=options)
        except (av.error.FFmpegError, OSError, ValueError) as exc:
            raise MediaAcquisitionFailed(f"cannot open {device} ({fmt or 'auto'}): {exc}") from exc

    def _stop_track(self, track: MediaStreamTrack) -> None:
        track.stop()
        self._players.pop(track, None)
        logger.debug("local_track_stopped", kind=track.kind)

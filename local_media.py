"""
Local capture and remote rendering on top of aiortc's media helpers.

`CaptureDevices` opens the camera, microphone and screen through
`aiortc.contrib.media.MediaPlayer`; every capture track is wrapped in a
`ToggleTrack` so mute and camera-off can be flipped without stopping the
device. `RemoteView` is the rendering target of one remote participant.
"""
import logging

import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame, VideoFrame
from av.error import FFmpegError

import call_config
from call_errors import MediaAccessError

logger = logging.getLogger(__name__)


def blank_frame(frame):
    """Return a silent / black copy of ``frame`` with the same timing."""
    if isinstance(frame, VideoFrame):
        blank = VideoFrame.from_ndarray(
            np.zeros((frame.height, frame.width, 3), dtype=np.uint8), format="rgb24"
        )
    else:
        blank = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
        for plane in blank.planes:
            plane.update(bytes(plane.buffer_size))
        blank.sample_rate = frame.sample_rate
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


class ToggleTrack(MediaStreamTrack):
    """A capture track that can be switched off while staying live."""

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True
        self._last = None
        source.on("ended", self.stop)

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError
        try:
            frame = await self.source.recv()
        except MediaStreamError:
            self.stop()
            if self._last is None:
                raise
            # one last frame keeps the sender alive while it is switched to another source
            return blank_frame(self._last)
        self._last = frame
        return frame if self.enabled else blank_frame(frame)

    def stop(self):
        super().stop()
        self.source.stop()


class LocalStream:
    """The local capture stream: one audio and one video track."""

    def __init__(self, audio=None, video=None, players=()):
        self.audio = audio
        self.video = video
        self.players = list(players)

    def tracks(self):
        return [t for t in (self.audio, self.video) if t is not None]

    def stop(self):
        for track in self.tracks():
            track.stop()


class CaptureDevices:
    def __init__(self,
                 camera=call_config.CAMERA_DEVICE, camera_format=call_config.CAMERA_FORMAT,
                 microphone=call_config.MIC_DEVICE, microphone_format=call_config.MIC_FORMAT,
                 screen=call_config.SCREEN_DEVICE, screen_format=call_config.SCREEN_FORMAT,
                 video_options=None):
        self.camera, self.camera_format = camera, camera_format
        self.microphone, self.microphone_format = microphone, microphone_format
        self.screen, self.screen_format = screen, screen_format
        self.video_options = video_options if video_options is not None else call_config.video_options()

    def _open(self, device, fmt, options=None):
        try:
            return MediaPlayer(device, format=fmt, options=options or {})
        except (FFmpegError, OSError) as e:
            raise MediaAccessError(f"cannot open {device} ({fmt}): {e}") from e

    def open_camera(self) -> LocalStream:
        camera = self._open(self.camera, self.camera_format, self.video_options)
        if camera.video is None:
            _stop_player(camera)
            raise MediaAccessError(f"no video track on {self.camera}")
        try:
            mic = self._open(self.microphone, self.microphone_format)
        except MediaAccessError:
            _stop_player(camera)
            raise
        if mic.audio is None:
            _stop_player(camera)
            _stop_player(mic)
            raise MediaAccessError(f"no audio track on {self.microphone}")
        logger.info(f"Capturing camera {self.camera} and microphone {self.microphone}")
        return LocalStream(audio=ToggleTrack(mic.audio), video=ToggleTrack(camera.video),
                           players=[camera, mic])

    def open_screen(self) -> ToggleTrack:
        screen = self._open(self.screen, self.screen_format, self.video_options)
        if screen.video is None:
            _stop_player(screen)
            raise MediaAccessError(f"no video track on {self.screen}")
        logger.info(f"Capturing screen {self.screen}")
        return ToggleTrack(screen.video)


def _stop_player(player):
    for track in (player.audio, player.video):
        if track is not None:
            track.stop()


class RemoteView:
    """Rendering target for the tracks received from one remote participant."""

    def __init__(self, peer_id, sink=None):
        self.peer_id = peer_id
        self.tracks = {}
        self.sink = sink if sink is not None else MediaBlackhole()

    async def add_track(self, track):
        self.tracks[track.kind] = track
        self.sink.addTrack(track)
        await self.sink.start()

    async def stop(self):
        self.tracks.clear()
        await self.sink.stop()

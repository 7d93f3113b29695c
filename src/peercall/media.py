"""Local capture and the stream container shared with observers."""

import asyncio
import logging
import uuid
from typing import Callable, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer

from peercall.errors import MediaAcquisitionError, MediaDevicesUnsupportedError

logger = logging.getLogger(__name__)


class LocalTrack(MediaStreamTrack):
    """Capture track with an ``enabled`` switch.

    aiortc tracks cannot be paused, so a disabled track keeps pulling frames
    from its source and blanks them: silence for audio, black for video.
    Timing is preserved so the remote decoder never stalls.
    """

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        if self.kind == "audio":
            return _silence(frame)
        return _black(frame)

    def stop(self):
        super().stop()
        self.source.stop()


def _silence(frame):
    for plane in frame.planes:
        plane.update(bytes(plane.buffer_size))
    return frame


def _black(frame):
    if frame.format.name != "yuv420p":
        frame = frame.reformat(format="yuv420p")
    luma, *chroma = frame.planes
    luma.update(bytes(luma.buffer_size))
    for plane in chroma:
        plane.update(b"\x80" * plane.buffer_size)
    return frame


class MediaStream:
    def __init__(self, tracks: Optional[list] = None):
        self.id = str(uuid.uuid4())
        self._tracks = list(tracks or [])

    @property
    def tracks(self) -> list:
        return list(self._tracks)

    @property
    def audio_tracks(self) -> list:
        return [t for t in self._tracks if t.kind == "audio"]

    @property
    def video_tracks(self) -> list:
        return [t for t in self._tracks if t.kind == "video"]

    def add_track(self, track):
        if track not in self._tracks:
            self._tracks.append(track)

    def stop(self):
        """Stop every track. Safe to call on an already stopped stream."""
        for track in self._tracks:
            try:
                track.stop()
            except Exception as e:
                logger.warning("Error stopping %s track: %s", track.kind, e)


class AiortcMediaDevices:
    """Opens capture devices through FFmpeg (PyAV) via aiortc's MediaPlayer.

    Device and format follow FFmpeg naming, e.g. ``default``/``pulse`` for a
    PulseAudio microphone or ``/dev/video0``/``v4l2`` for a Linux camera.
    Without a microphone configured the terminal cannot place calls at all.
    """

    def __init__(
        self,
        audio_device: str | None = None,
        audio_format: str | None = None,
        video_device: str | None = None,
        video_format: str | None = None,
        video_options: dict | None = None,
        player_factory: Callable[..., MediaPlayer] = MediaPlayer,
    ):
        self.audio_device = audio_device
        self.audio_format = audio_format
        self.video_device = video_device
        self.video_format = video_format
        self.video_options = video_options or {"video_size": "640x480", "framerate": "30"}
        self._player_factory = player_factory

    @property
    def supported(self) -> bool:
        return bool(self.audio_device)

    async def get_user_media(self, audio: bool = True, video: bool = False) -> MediaStream:
        if not self.supported:
            raise MediaDevicesUnsupportedError()

        stream = MediaStream()
        try:
            if audio:
                player = await self._open(self.audio_device, self.audio_format, None)
                if player.audio is None:
                    raise MediaAcquisitionError(f"No audio on {self.audio_device}")
                stream.add_track(LocalTrack(player.audio))
            if video:
                if not self.video_device:
                    raise MediaAcquisitionError("No camera configured")
                player = await self._open(self.video_device, self.video_format, self.video_options)
                if player.video is None:
                    raise MediaAcquisitionError(f"No video on {self.video_device}")
                stream.add_track(LocalTrack(player.video))
        except Exception:
            stream.stop()
            raise
        return stream

    async def _open(self, device: str, fmt: str | None, options: dict | None) -> MediaPlayer:
        try:
            # av.open blocks on device negotiation
            return await asyncio.to_thread(self._player_factory, device, format=fmt, options=options)
        except Exception as e:
            raise MediaAcquisitionError(f"Could not open {device}: {e}") from e

import av
import pytest

from conftest import FakeTrack
from peercall.errors import MediaAcquisitionError, MediaDevicesUnsupportedError
from peercall.media import AiortcMediaDevices, LocalTrack, MediaStream


def _audio_frame():
    frame = av.AudioFrame(format="s16", layout="mono", samples=160)
    for plane in frame.planes:
        plane.update(b"\x11" * plane.buffer_size)
    frame.sample_rate = 8000
    frame.pts = 480
    return frame


def _video_frame(fmt="yuv420p"):
    frame = av.VideoFrame(width=16, height=16, format=fmt)
    for plane in frame.planes:
        plane.update(b"\x55" * plane.buffer_size)
    return frame


class FrameSource(FakeTrack):
    def __init__(self, kind, frame):
        super().__init__(kind)
        self.frame = frame

    async def recv(self):
        return self.frame


class TestLocalTrack:
    @pytest.mark.asyncio
    async def test_enabled_passes_frames_through(self):
        frame = _audio_frame()
        track = LocalTrack(FrameSource("audio", frame))
        assert track.kind == "audio"
        assert await track.recv() is frame
        assert bytes(frame.planes[0]) == b"\x11" * frame.planes[0].buffer_size

    @pytest.mark.asyncio
    async def test_muted_audio_is_silence(self):
        track = LocalTrack(FrameSource("audio", _audio_frame()))
        track.enabled = False
        frame = await track.recv()
        assert set(bytes(frame.planes[0])) == {0}
        assert frame.pts == 480

    @pytest.mark.asyncio
    async def test_disabled_video_is_black(self):
        track = LocalTrack(FrameSource("video", _video_frame()))
        track.enabled = False
        frame = await track.recv()
        luma, u, v = frame.planes
        assert set(bytes(luma)) == {0}
        assert set(bytes(u)) == {0x80}
        assert set(bytes(v)) == {0x80}

    @pytest.mark.asyncio
    async def test_disabled_rgb_video_is_converted(self):
        track = LocalTrack(FrameSource("video", _video_frame("rgb24")))
        track.enabled = False
        frame = await track.recv()
        assert frame.format.name == "yuv420p"

    @pytest.mark.asyncio
    async def test_stop_releases_source(self):
        source = FakeTrack("audio")
        track = LocalTrack(source)
        track.stop()
        assert source.stop_calls == 1
        assert track.readyState == "ended"


class TestMediaStream:
    def test_tracks_by_kind(self):
        audio, video = FakeTrack("audio"), FakeTrack("video")
        stream = MediaStream([audio, video])
        assert stream.audio_tracks == [audio]
        assert stream.video_tracks == [video]
        assert stream.tracks == [audio, video]

    def test_add_track_ignores_duplicates(self):
        track = FakeTrack("audio")
        stream = MediaStream()
        stream.add_track(track)
        stream.add_track(track)
        assert stream.tracks == [track]

    def test_stop_continues_past_failing_track(self):
        broken, ok = FakeTrack("audio", fail_on_stop=True), FakeTrack("video")
        MediaStream([broken, ok]).stop()
        assert broken.stop_calls == 1
        assert ok.stop_calls == 1

    def test_streams_have_distinct_ids(self):
        assert MediaStream().id != MediaStream().id


class FakePlayer:
    def __init__(self, audio=None, video=None):
        self.audio = audio
        self.video = video


class PlayerFactory:
    def __init__(self, fail_on=None):
        self.opened = []
        self.fail_on = fail_on
        self.sources = []

    def __call__(self, device, format=None, options=None):
        self.opened.append((device, format, options))
        if device == self.fail_on:
            raise OSError("Device or resource busy")
        if device.startswith("/dev/video"):
            source = FakeTrack("video")
            self.sources.append(source)
            return FakePlayer(video=source)
        source = FakeTrack("audio")
        self.sources.append(source)
        return FakePlayer(audio=source)


class TestAiortcMediaDevices:
    @pytest.mark.asyncio
    async def test_unsupported_without_microphone(self):
        devices = AiortcMediaDevices(player_factory=PlayerFactory())
        assert devices.supported is False
        with pytest.raises(MediaDevicesUnsupportedError):
            await devices.get_user_media(audio=True)

    @pytest.mark.asyncio
    async def test_audio_only(self):
        factory = PlayerFactory()
        devices = AiortcMediaDevices(audio_device="default", audio_format="pulse", player_factory=factory)
        stream = await devices.get_user_media(audio=True, video=False)
        assert len(stream.audio_tracks) == 1
        assert stream.video_tracks == []
        assert factory.opened == [("default", "pulse", None)]

    @pytest.mark.asyncio
    async def test_audio_and_video(self):
        factory = PlayerFactory()
        devices = AiortcMediaDevices(
            audio_device="default", audio_format="pulse",
            video_device="/dev/video0", video_format="v4l2",
            player_factory=factory,
        )
        stream = await devices.get_user_media(audio=True, video=True)
        assert [t.kind for t in stream.tracks] == ["audio", "video"]
        assert factory.opened[1] == ("/dev/video0", "v4l2", {"video_size": "640x480", "framerate": "30"})

    @pytest.mark.asyncio
    async def test_missing_camera_releases_microphone(self):
        factory = PlayerFactory()
        devices = AiortcMediaDevices(audio_device="default", player_factory=factory)
        with pytest.raises(MediaAcquisitionError, match="No camera configured"):
            await devices.get_user_media(audio=True, video=True)
        assert factory.sources[0].stop_calls == 1

    @pytest.mark.asyncio
    async def test_busy_camera(self):
        factory = PlayerFactory(fail_on="/dev/video0")
        devices = AiortcMediaDevices(audio_device="default", video_device="/dev/video0", player_factory=factory)
        with pytest.raises(MediaAcquisitionError, match="Could not open /dev/video0"):
            await devices.get_user_media(audio=True, video=True)
        assert factory.sources[0].stop_calls == 1

    @pytest.mark.asyncio
    async def test_device_without_audio(self):
        devices = AiortcMediaDevices(
            audio_device="default",
            player_factory=lambda device, format=None, options=None: FakePlayer(),
        )
        with pytest.raises(MediaAcquisitionError, match="No audio on default"):
            await devices.get_user_media(audio=True)

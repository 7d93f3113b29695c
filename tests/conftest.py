import asyncio
from collections import defaultdict

import pytest
from aiortc import RTCSessionDescription

from peercall.errors import MediaAcquisitionError, SignalingError
from peercall.manager import CallManager
from peercall.media import MediaStream
from peercall.signaling import ChannelStatus

HANG = "hang"


class FakeTrack:
    def __init__(self, kind: str, fail_on_stop: bool = False):
        self.kind = kind
        self.enabled = True
        self.stop_calls = 0
        self.fail_on_stop = fail_on_stop

    def stop(self):
        self.stop_calls += 1
        if self.fail_on_stop:
            raise RuntimeError("track already released")


class FakeChannel:
    def __init__(self, relay: "FakeRelay", name: str):
        self.relay = relay
        self.name = name
        self.handlers = defaultdict(list)
        self.removed = False

    def on(self, event, handler):
        self.handlers[event].append(handler)
        return self

    def subscribe(self, callback=None):
        status = self.relay.statuses.get(self.name, ChannelStatus.SUBSCRIBED)
        if callback is not None and status != HANG:
            asyncio.get_running_loop().call_soon(callback, status)
        return self

    async def send(self, event, payload):
        if self.relay.fail_sends:
            raise SignalingError(f"send failed on {self.name}")
        self.relay.sent.append((self.name, event, payload))
        self.relay.deliver(self.name, event, payload)


class FakeRelay:
    """In-memory relay: records sends and forwards them to listeners on the same channel name."""

    def __init__(self):
        self.channels: list[FakeChannel] = []
        self.sent: list[tuple] = []
        self.removed: list[str] = []
        self.statuses: dict = {}
        self.fail_sends = False
        self._queues: dict[str, asyncio.Queue] = {}
        self._workers: list[asyncio.Task] = []

    def channel(self, name):
        ch = FakeChannel(self, name)
        self.channels.append(ch)
        return ch

    async def remove_channel(self, channel):
        channel.removed = True
        self.removed.append(channel.name)

    def listeners(self, name):
        return [c for c in self.channels if c.name == name and c.handlers and not c.removed]

    def sent_events(self, event=None):
        return [(name, ev, payload) for name, ev, payload in self.sent if event is None or ev == event]

    async def emit(self, name, event, payload):
        """Deliver a signal straight into the listeners' handlers."""
        for ch in self.listeners(name):
            for handler in list(ch.handlers[event]):
                await handler(payload)

    def deliver(self, name, event, payload):
        if not self.listeners(name):
            return
        if name not in self._queues:
            self._queues[name] = asyncio.Queue()
            self._workers.append(asyncio.create_task(self._drain(name)))
        self._queues[name].put_nowait((event, payload))

    async def _drain(self, name):
        queue = self._queues[name]
        while True:
            event, payload = await queue.get()
            try:
                await self.emit(name, event, payload)
            finally:
                queue.task_done()

    async def settle(self):
        for queue in list(self._queues.values()):
            await queue.join()

    def close(self):
        for worker in self._workers:
            worker.cancel()


class FakeMediaDevices:
    def __init__(self):
        self.supported = True
        self.fail_video = False
        self.fail_all = False
        self.fail_track_stop = False
        self.calls: list[tuple] = []
        self.streams: list[MediaStream] = []

    async def get_user_media(self, audio=True, video=False):
        self.calls.append((audio, video))
        if self.fail_all:
            raise MediaAcquisitionError("Permission denied")
        if video and self.fail_video:
            raise MediaAcquisitionError("Camera busy")
        tracks = []
        if audio:
            tracks.append(FakeTrack("audio", fail_on_stop=self.fail_track_stop))
        if video:
            tracks.append(FakeTrack("video", fail_on_stop=self.fail_track_stop))
        stream = MediaStream(tracks)
        self.streams.append(stream)
        return stream


class FakePeerConnection:
    def __init__(self, fail_remote: bool = False):
        self.handlers = defaultdict(list)
        self.tracks = []
        self.localDescription = None
        self.remoteDescription = None
        self.connectionState = "new"
        self.added_candidates = []
        self.close_calls = 0
        self.fail_remote = fail_remote

    def on(self, event, f=None):
        def register(fn):
            self.handlers[event].append(fn)
            return fn

        return register(f) if f is not None else register

    def emit(self, event, *args):
        for fn in list(self.handlers[event]):
            fn(*args)

    def addTrack(self, track):
        self.tracks.append(track)

    async def createOffer(self):
        return RTCSessionDescription(sdp="v=0 offer", type="offer")

    async def createAnswer(self):
        return RTCSessionDescription(sdp="v=0 answer", type="answer")

    async def setLocalDescription(self, desc):
        self.localDescription = desc

    async def setRemoteDescription(self, desc):
        if self.fail_remote:
            raise ValueError("Invalid SDP")
        self.remoteDescription = desc

    async def addIceCandidate(self, candidate):
        self.added_candidates.append(candidate)

    async def close(self):
        self.close_calls += 1
        self.connectionState = "closed"

    def set_connection_state(self, state):
        self.connectionState = state
        self.emit("connectionstatechange")


class FakePeerFactory:
    def __init__(self):
        self.created: list[FakePeerConnection] = []
        self.fail_remote = False

    def __call__(self):
        pc = FakePeerConnection(fail_remote=self.fail_remote)
        self.created.append(pc)
        return pc

    @property
    def last(self) -> FakePeerConnection:
        return self.created[-1]


class FakeBackend:
    def __init__(self):
        self.profiles = {"userB": {"full_name": "Bob", "profile_image": "https://img/bob.png"}}
        self.inserted: list[dict] = []
        self.updates: list[tuple] = []
        self.raise_on_write = False

    async def fetch_profile(self, user_id):
        return dict(self.profiles.get(user_id, {}))

    async def insert_call_log(self, row):
        if self.raise_on_write:
            raise RuntimeError("database unavailable")
        self.inserted.append(row)
        return {"success": True}

    async def update_call_log(self, call_id, fields):
        if self.raise_on_write:
            raise RuntimeError("database unavailable")
        self.updates.append((call_id, fields))
        return {"success": True}


class FakeRinger:
    def __init__(self):
        self.ringing = False
        self.start_calls = 0

    def start(self):
        self.ringing = True
        self.start_calls += 1

    def stop(self):
        self.ringing = False


@pytest.fixture
def relay():
    return FakeRelay()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def media():
    return FakeMediaDevices()


@pytest.fixture
def peers():
    return FakePeerFactory()


@pytest.fixture
def ringer():
    return FakeRinger()


def make_manager(relay, backend, media, peers, ringer, unattended=False) -> CallManager:
    manager = CallManager(
        relay=relay,
        backend=backend,
        media=media,
        peer_factory=peers,
        ringer=ringer,
        unattended=unattended,
    )
    manager.AUTO_ACCEPT_DELAY_S = 0.01
    manager.ENDED_RESET_DELAY_S = 0.05
    manager.SIGNAL_SUBSCRIBE_TIMEOUT_S = 0.2
    return manager


@pytest.fixture
def manager(relay, backend, media, peers, ringer):
    return make_manager(relay, backend, media, peers, ringer)

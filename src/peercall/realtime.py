"""Supabase Realtime broadcast relay.

Speaks the Phoenix channel protocol (v1 JSON frames) over a single aiohttp
websocket shared by every channel:

    {"topic": "realtime:calls:<user>", "event": "phx_join", "payload": {...}, "ref": "1", "join_ref": "1"}

Joins are answered with ``phx_reply``; broadcasts arrive as ``broadcast``
events whose payload carries the application event name and body. Inbound
broadcasts for a channel are handled one at a time, in arrival order, by a
per-channel worker so a slow handler never stalls the socket reader.
"""

import asyncio
import itertools
import logging
from collections import defaultdict
from typing import Callable, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import aiohttp

from peercall.errors import SignalingError
from peercall.signaling import ChannelStatus, SignalHandler

logger = logging.getLogger(__name__)

PHOENIX_TOPIC = "phoenix"


def realtime_endpoint(supabase_url: str, api_key: str) -> str:
    """Map a project URL (https://x.supabase.co) to its realtime websocket URL."""
    parts = urlsplit(supabase_url.rstrip("/"))
    scheme = "wss" if parts.scheme == "https" else "ws"
    query = urlencode({"apikey": api_key, "vsn": "1.0.0"})
    return urlunsplit((scheme, parts.netloc, parts.path + "/realtime/v1/websocket", query, ""))


class RealtimeChannel:
    def __init__(self, relay: "RealtimeRelay", name: str):
        self.relay = relay
        self.name = name
        self.topic = f"realtime:{name}"
        self.state = "closed"
        self._join_ref: Optional[str] = None
        self._handlers: dict[str, list[SignalHandler]] = defaultdict(list)
        self._status_callback: Optional[Callable[[ChannelStatus], None]] = None
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

    def on(self, event: str, handler: SignalHandler) -> "RealtimeChannel":
        self._handlers[event].append(handler)
        return self

    def subscribe(
        self, callback: Optional[Callable[[ChannelStatus], None]] = None
    ) -> "RealtimeChannel":
        """Start joining in the background; ``callback`` receives each status change."""
        self._status_callback = callback
        self.state = "joining"
        self.relay._spawn(self._join())
        return self

    async def send(self, event: str, payload: dict) -> None:
        if self.state != "joined":
            raise SignalingError(f"Channel {self.name} is not subscribed ({self.state})")
        await self.relay._push(
            self.topic,
            "broadcast",
            {"type": "broadcast", "event": event, "payload": payload},
            join_ref=self._join_ref,
        )

    async def _join(self):
        ref = self.relay._next_ref()
        self._join_ref = ref
        reply = self.relay._expect_reply(ref)
        try:
            await self.relay._push(
                self.topic,
                "phx_join",
                {
                    "config": {
                        "broadcast": {"self": False, "ack": False},
                        "presence": {"key": ""},
                        "postgres_changes": [],
                    },
                    "access_token": self.relay.access_token,
                },
                ref=ref,
                join_ref=ref,
            )
            payload = await asyncio.wait_for(reply, self.relay.JOIN_TIMEOUT_S)
        except asyncio.TimeoutError:
            self.relay._forget_reply(ref)
            self._set_status(ChannelStatus.TIMED_OUT)
            return
        except SignalingError as e:
            logger.warning("Join failed for %s: %s", self.name, e)
            self.relay._forget_reply(ref)
            self._set_status(ChannelStatus.CHANNEL_ERROR)
            return

        if payload.get("status") == "ok":
            self.state = "joined"
            if self._worker is None:
                self._worker = asyncio.create_task(self._drain_inbox())
            self._set_status(ChannelStatus.SUBSCRIBED)
        else:
            logger.warning("Join rejected for %s: %s", self.name, payload.get("response"))
            self._set_status(ChannelStatus.CHANNEL_ERROR)

    def _set_status(self, status: ChannelStatus):
        if status is not ChannelStatus.SUBSCRIBED:
            self.state = "errored" if status is ChannelStatus.CHANNEL_ERROR else "closed"
        if self._status_callback is not None:
            try:
                self._status_callback(status)
            except Exception as e:
                logger.error("Status callback for %s failed: %s", self.name, e)

    def _receive(self, event: str, payload: dict):
        if event == "broadcast":
            self._inbox.put_nowait((payload.get("event", ""), payload.get("payload") or {}))
        elif event == "phx_error":
            self._set_status(ChannelStatus.CHANNEL_ERROR)
        elif event == "phx_close":
            self._set_status(ChannelStatus.CLOSED)

    async def _drain_inbox(self):
        while True:
            event, body = await self._inbox.get()
            for handler in list(self._handlers.get(event, [])):
                try:
                    await handler(body)
                except Exception:
                    logger.exception("Handler for %s on %s failed", event, self.name)

    def _rejoin(self):
        self.state = "joining"
        self.relay._spawn(self._join())

    async def _leave(self):
        was_joined = self.state == "joined"
        self.state = "closed"
        self._status_callback = None
        if self._worker is not None:
            self._worker.cancel()
            self._worker = None
        if was_joined:
            await self.relay._push(self.topic, "phx_leave", {}, join_ref=self._join_ref)


class RealtimeRelay:
    """One websocket, many channels.

    Connects lazily on the first push. When the socket drops, channels that
    were joined are told CLOSED, then the relay reconnects with backoff and
    joins them again (they report SUBSCRIBED once back). Channels removed in
    the meantime are not rejoined.
    """

    HEARTBEAT_INTERVAL_S = 30.0
    JOIN_TIMEOUT_S = 10.0
    RECONNECT_BACKOFF_S = (1.0, 2.0, 5.0, 10.0)

    def __init__(
        self,
        endpoint: str,
        access_token: str = "",
        session: aiohttp.ClientSession | None = None,
    ):
        self.endpoint = endpoint
        self.access_token = access_token
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._connect_lock = asyncio.Lock()
        self._refs = itertools.count(1)
        self._replies: dict[str, asyncio.Future] = {}
        self._channels: list[RealtimeChannel] = []
        self._tasks: set[asyncio.Task] = set()
        self._reader: Optional[asyncio.Task] = None
        self._heartbeat: Optional[asyncio.Task] = None
        self._reconnect: Optional[asyncio.Task] = None
        self._dropped: list[RealtimeChannel] = []
        self._closing = False

    @classmethod
    def for_project(cls, supabase_url: str, api_key: str, access_token: str = "", **kwargs):
        return cls(
            realtime_endpoint(supabase_url, api_key),
            access_token=access_token or api_key,
            **kwargs,
        )

    def channel(self, name: str) -> RealtimeChannel:
        ch = RealtimeChannel(self, name)
        self._channels.append(ch)
        return ch

    async def remove_channel(self, channel: RealtimeChannel) -> None:
        if channel in self._channels:
            self._channels.remove(channel)
        await channel._leave()

    async def close(self):
        self._closing = True
        for ch in list(self._channels):
            try:
                await self.remove_channel(ch)
            except SignalingError as e:
                logger.debug("Leave during close failed for %s: %s", ch.name, e)
        for task in (self._heartbeat, self._reader, self._reconnect, *self._tasks):
            if task is not None:
                task.cancel()
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    # --- wire ---

    def _next_ref(self) -> str:
        return str(next(self._refs))

    def _expect_reply(self, ref: str) -> asyncio.Future:
        fut = asyncio.get_running_loop().create_future()
        self._replies[ref] = fut
        return fut

    def _forget_reply(self, ref: str):
        self._replies.pop(ref, None)

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _ensure_connected(self) -> aiohttp.ClientWebSocketResponse:
        async with self._connect_lock:
            if self._ws is not None and not self._ws.closed:
                return self._ws
            if self._session is None:
                self._session = aiohttp.ClientSession()
            try:
                self._ws = await self._session.ws_connect(self.endpoint)
            except (aiohttp.ClientError, OSError) as e:
                raise SignalingError(f"Realtime connect failed: {e}") from e
            logger.info("Realtime socket connected")
            self._reader = asyncio.create_task(self._read_loop(self._ws))
            self._heartbeat = asyncio.create_task(self._heartbeat_loop())
            return self._ws

    async def _push(
        self,
        topic: str,
        event: str,
        payload: dict,
        ref: str | None = None,
        join_ref: str | None = None,
    ):
        ws = await self._ensure_connected()
        frame = {
            "topic": topic,
            "event": event,
            "payload": payload,
            "ref": ref or self._next_ref(),
        }
        if join_ref is not None:
            frame["join_ref"] = join_ref
        try:
            await ws.send_json(frame)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            raise SignalingError(f"Realtime send failed on {topic}: {e}") from e

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse):
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        self._dispatch(msg.json())
                    except ValueError:
                        logger.warning("Dropping non-JSON realtime frame")
                elif msg.type in (aiohttp.WSMsgType.ERROR, aiohttp.WSMsgType.CLOSED):
                    break
        finally:
            logger.info("Realtime socket closed")
            if self._heartbeat is not None:
                self._heartbeat.cancel()
            for fut in self._replies.values():
                if not fut.done():
                    fut.set_exception(SignalingError("Realtime socket closed"))
            self._replies.clear()
            for ch in list(self._channels):
                if ch.state == "joined" and ch not in self._dropped:
                    self._dropped.append(ch)
                if ch.state in ("joined", "joining"):
                    ch._set_status(ChannelStatus.CLOSED)
            if self._dropped and not self._closing:
                if self._reconnect is None or self._reconnect.done():
                    self._reconnect = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self):
        for attempt in itertools.count():
            await asyncio.sleep(self.RECONNECT_BACKOFF_S[min(attempt, len(self.RECONNECT_BACKOFF_S) - 1)])
            try:
                await self._ensure_connected()
            except SignalingError as e:
                logger.warning("Realtime reconnect attempt %d failed: %s", attempt + 1, e)
                continue
            break
        dropped, self._dropped = self._dropped, []
        for ch in dropped:
            if ch in self._channels and ch.state not in ("joined", "joining"):
                logger.info("Rejoining %s", ch.name)
                ch._rejoin()

    def _dispatch(self, frame: dict):
        topic = frame.get("topic")
        event = frame.get("event")
        payload = frame.get("payload") or {}

        if event == "phx_reply":
            fut = self._replies.pop(str(frame.get("ref")), None)
            if fut is not None and not fut.done():
                fut.set_result(payload)
            return
        if topic == PHOENIX_TOPIC:
            return
        for ch in self._channels:
            if ch.topic == topic:
                ch._receive(event, payload)

    async def _heartbeat_loop(self):
        while True:
            await asyncio.sleep(self.HEARTBEAT_INTERVAL_S)
            try:
                await self._push(PHOENIX_TOPIC, "heartbeat", {})
            except SignalingError as e:
                logger.warning("Realtime heartbeat failed: %s", e)
                return

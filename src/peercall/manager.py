import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from aiortc import RTCSessionDescription

from peercall.errors import (
    CallBusyError,
    CallServiceNotInitializedError,
    MediaDevicesUnsupportedError,
)
from peercall.media import MediaStream
from peercall.peer import candidate_from_json, candidate_to_json, create_peer_connection
from peercall.session import CallState
from peercall.signaling import (
    CALL_ANSWER,
    CALL_END,
    CALL_OFFER,
    CALL_REJECT,
    ICE_CANDIDATE,
    send_signal,
    user_channel,
    wait_for_subscribed,
)
from peercall.states import TRANSITIONS, CallStatus, CallType

logger = logging.getLogger(__name__)

StateHandler = Callable[[CallState], None]

FAILED_CONNECTION_STATES = {"disconnected", "failed"}


def new_call_id() -> str:
    return f"call_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class SilentRinger:
    """Ringer for terminals without a speaker: records the ringing window in the log."""

    def __init__(self):
        self.ringing = False

    def start(self):
        self.ringing = True
        logger.info("Incoming call ringing")

    def stop(self):
        self.ringing = False


class CallManager:
    """Owns at most one peer-to-peer call for the bound user.

    Collaborators are injected: the signaling relay, the Supabase backend
    (call log + profiles), local media devices, a peer-connection factory and
    a ringer. ``unattended`` marks a kiosk terminal that answers incoming
    calls on its own after AUTO_ACCEPT_DELAY_S instead of ringing.

    The local stream and the peer connection belong to this object; observers
    receive state copies that reference them for rendering only and must
    never stop or close them.
    """

    AUTO_ACCEPT_DELAY_S = 0.3
    ENDED_RESET_DELAY_S = 2.0
    SIGNAL_SUBSCRIBE_TIMEOUT_S = 8.0

    def __init__(
        self,
        *,
        relay,
        backend,
        media,
        peer_factory: Callable = create_peer_connection,
        ringer=None,
        unattended: bool = False,
    ):
        self.relay = relay
        self.backend = backend
        self.media = media
        self.peer_factory = peer_factory
        self.ringer = ringer or SilentRinger()
        self.unattended = unattended

        self.user_id: Optional[str] = None
        self._state = CallState()
        self._listeners: list[StateHandler] = []
        self._channel = None
        self._pc = None
        self._local_stream: Optional[MediaStream] = None
        self._remote_stream: Optional[MediaStream] = None
        self._pending_offer: Optional[str] = None
        self._pending_candidates: list[dict] = []
        self._reset_task: Optional[asyncio.Task] = None
        self._auto_accept_task: Optional[asyncio.Task] = None
        # call id of an accept in progress; a second accept for it is a no-op
        self._accepting: Optional[str] = None
        self._side_effects: set[asyncio.Task] = set()

    # --- lifecycle ---

    async def initialize(self, user_id: str):
        """Bind to ``user_id`` and listen on its relay channel.

        Replaces any listener from a previous call to initialize, so it can be
        called again after a reconnect or a user switch.
        """
        if self._channel is not None:
            old, self._channel = self._channel, None
            try:
                await self.relay.remove_channel(old)
            except Exception as e:
                logger.warning("Failed to remove previous call listener: %s", e)

        self.user_id = user_id
        channel = self.relay.channel(user_channel(user_id))
        channel.on(CALL_OFFER, self._on_offer)
        channel.on(CALL_ANSWER, self._on_answer)
        channel.on(ICE_CANDIDATE, self._on_ice_candidate)
        channel.on(CALL_END, self._on_remote_end)
        channel.on(CALL_REJECT, self._on_remote_reject)
        self._channel = channel
        try:
            await wait_for_subscribed(channel, self.SIGNAL_SUBSCRIBE_TIMEOUT_S)
        except Exception:
            # unbound until a later initialize succeeds
            self.user_id = None
            if self._channel is channel:
                self._channel = None
            try:
                await self.relay.remove_channel(channel)
            except Exception as e:
                logger.warning("Failed to remove call listener: %s", e)
            raise
        logger.info("Listening for calls on %s", channel.name)

    async def dispose(self):
        """Hang up, stop listening and wait for outstanding log writes."""
        if self._state.status is not CallStatus.IDLE:
            await self.end_call()
        self._cancel_reset()
        if self._channel is not None:
            channel, self._channel = self._channel, None
            try:
                await self.relay.remove_channel(channel)
            except Exception as e:
                logger.warning("Failed to remove call listener: %s", e)
        await self.flush_side_effects()
        self.user_id = None

    # --- observers ---

    def subscribe(self, handler: StateHandler) -> Callable[[], None]:
        self._listeners.append(handler)
        self._call_listener(handler)

        def unsubscribe():
            if handler in self._listeners:
                self._listeners.remove(handler)

        return unsubscribe

    def get_state(self) -> CallState:
        return self._state.copy()

    def _call_listener(self, handler: StateHandler):
        try:
            handler(self._state.copy())
        except Exception:
            logger.exception("Call state observer failed")

    def _notify(self):
        for handler in list(self._listeners):
            self._call_listener(handler)

    def _transition(self, status: CallStatus, **fields) -> bool:
        current = self._state.status
        if status is not current and status not in TRANSITIONS[current]:
            logger.warning("Ignoring invalid transition %s -> %s", current.value, status.value)
            return False
        self._state.status = status
        for name, value in fields.items():
            setattr(self._state, name, value)
        self._notify()
        return True

    def _update(self, **fields):
        for name, value in fields.items():
            setattr(self._state, name, value)
        self._notify()

    def _reset_state(self):
        self._cancel_reset()
        self._pending_offer = None
        self._pending_candidates = []
        self._state = CallState()
        self._notify()

    def _is_current(self, call_id: str, status: CallStatus) -> bool:
        return self._state.call_id == call_id and self._state.status is status

    # --- outgoing ---

    async def start_call(
        self,
        recipient_id: str,
        recipient_name: str,
        recipient_image: Optional[str] = None,
        call_type: CallType | str = CallType.VOICE,
    ):
        if not self.user_id:
            raise CallServiceNotInitializedError()
        call_type = CallType(call_type)
        if not self._state.status.accepts_new_call:
            raise CallBusyError(self._state.call_id)

        self._cancel_reset()
        call_id = new_call_id()
        self._transition(
            CallStatus.CALLING,
            call_id=call_id,
            call_type=call_type,
            is_incoming=False,
            remote_user_id=recipient_id,
            remote_user_name=recipient_name,
            remote_user_image=recipient_image,
            start_time=None,
        )

        try:
            stream = await self._acquire_media(call_type, allow_audio_fallback=True)
            if not self._is_current(call_id, CallStatus.CALLING):
                # hung up while the devices were opening
                stream.stop()
                return
            self._local_stream = stream
            self._update(local_stream=stream)

            pc = self._create_peer_connection()
            for track in stream.tracks:
                pc.addTrack(track)
            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
            if not self._is_current(call_id, CallStatus.CALLING):
                return

            await self._send(recipient_id, CALL_OFFER, {
                "callId": call_id,
                "callType": call_type.value,
                "callerId": self.user_id,
                "offer": pc.localDescription.sdp,
            })
        except Exception as e:
            logger.error("Error starting call %s: %s", call_id, e)
            if self._state.call_id == call_id:
                self._cleanup()
                self._reset_state()
            raise

        if not self._is_current(call_id, CallStatus.CALLING):
            logger.info("Call %s ended while the offer was in flight", call_id)
            return
        self._spawn(
            self.backend.insert_call_log({
                "id": call_id,
                "caller_id": self.user_id,
                "recipient_id": recipient_id,
                "call_type": call_type.value,
                "status": "calling",
                "started_at": _now().isoformat(),
            }),
            "call log insert",
        )
        logger.info("Call offer %s sent to %s", call_id, recipient_id)

    async def _on_answer(self, data: dict):
        call_id = data.get("callId")
        pc = self._pc
        if not self._is_current(call_id, CallStatus.CALLING) or pc is None:
            logger.debug("Ignoring answer for %s", call_id)
            return
        try:
            await pc.setRemoteDescription(RTCSessionDescription(sdp=data.get("answer"), type="answer"))
            await self._apply_pending_candidates(pc)
        except Exception as e:
            logger.error("Could not apply answer for %s: %s", call_id, e)
            if self._state.call_id == call_id:
                await self.end_call()
            return
        if self._is_current(call_id, CallStatus.CALLING):
            self._transition(CallStatus.CONNECTED, start_time=_now())
            logger.info("Call %s connected", call_id)

    # --- incoming ---

    async def _on_offer(self, data: dict):
        call_id = data.get("callId")
        caller_id = data.get("callerId")
        offer = data.get("offer")
        if not call_id or not caller_id or not offer:
            logger.warning("Dropping malformed call offer: %s", data)
            return
        if call_id == self._state.call_id:
            return
        if not self._state.status.accepts_new_call:
            self._reject_busy(call_id, caller_id)
            return

        try:
            call_type = CallType(data.get("callType", "voice"))
        except ValueError:
            call_type = CallType.VOICE
        profile = await self.backend.fetch_profile(caller_id)

        # another call may have started during the profile lookup
        if not self._state.status.accepts_new_call:
            self._reject_busy(call_id, caller_id)
            return

        self._cancel_reset()
        self._pending_offer = offer
        self._pending_candidates = []
        self._transition(
            CallStatus.RINGING,
            call_id=call_id,
            call_type=call_type,
            is_incoming=True,
            remote_user_id=caller_id,
            remote_user_name=profile.get("full_name") or "Unknown",
            remote_user_image=profile.get("profile_image"),
            start_time=None,
            local_stream=None,
            remote_stream=None,
        )

        if self.unattended:
            logger.info("Unattended terminal: auto-answering %s in %.1fs", call_id, self.AUTO_ACCEPT_DELAY_S)
            self._auto_accept_task = self._spawn(self._auto_accept(call_id), "auto-accept")
            return
        self._start_ringer()

    def _reject_busy(self, call_id: str, caller_id: str):
        logger.info("Busy with %s, rejecting %s from %s", self._state.call_id, call_id, caller_id)
        self._spawn(self._send(caller_id, CALL_REJECT, {"callId": call_id}), "busy reject")

    async def _auto_accept(self, call_id: str):
        await asyncio.sleep(self.AUTO_ACCEPT_DELAY_S)
        if self._is_current(call_id, CallStatus.RINGING):
            await self.accept_call()

    async def accept_call(self):
        if self._state.status is not CallStatus.RINGING or not self._state.remote_user_id:
            return
        call_id = self._state.call_id
        if self._accepting == call_id:
            return
        self._accepting = call_id
        caller_id = self._state.remote_user_id
        self._stop_ringer()

        try:
            stream = await self._acquire_media(self._state.call_type, allow_audio_fallback=True)
            if not self._is_current(call_id, CallStatus.RINGING):
                stream.stop()
                return
            self._local_stream = stream
            self._update(local_stream=stream)

            pc = self._create_peer_connection()
            for track in stream.tracks:
                pc.addTrack(track)
            await pc.setRemoteDescription(RTCSessionDescription(sdp=self._pending_offer, type="offer"))
            await self._apply_pending_candidates(pc)
            answer = await pc.createAnswer()
            await pc.setLocalDescription(answer)
            if not self._is_current(call_id, CallStatus.RINGING):
                return

            await self._send(caller_id, CALL_ANSWER, {
                "callId": call_id,
                "answer": pc.localDescription.sdp,
            })
            if not self._is_current(call_id, CallStatus.RINGING):
                return
            self._pending_offer = None
            self._transition(CallStatus.CONNECTED, start_time=_now())
            logger.info("Call %s accepted and answer sent", call_id)
        except Exception as e:
            logger.error("Error accepting call %s: %s", call_id, e)
            if self._state.call_id == call_id:
                await self.end_call()
        finally:
            if self._accepting == call_id:
                self._accepting = None

    async def reject_call(self):
        if self._state.status is not CallStatus.RINGING or not self._state.remote_user_id:
            return
        call_id = self._state.call_id
        caller_id = self._state.remote_user_id

        self._cancel_auto_accept()
        self._stop_ringer()
        self._cleanup()
        self._reset_state()

        try:
            await self._send(caller_id, CALL_REJECT, {"callId": call_id})
        except Exception as e:
            logger.warning("Could not deliver reject for %s: %s", call_id, e)
        self._spawn(self.backend.update_call_log(call_id, {"status": "declined"}), "call log decline")

    # --- ICE ---

    async def _on_ice_candidate(self, data: dict):
        call_id = data.get("callId")
        candidate = data.get("candidate")
        if call_id != self._state.call_id or not self._state.status.is_active or not candidate:
            return
        pc = self._pc
        if pc is None or pc.remoteDescription is None:
            # callee has not accepted yet, or caller is still waiting for the answer
            self._pending_candidates.append(candidate)
            return
        await self._add_candidate(pc, candidate)

    async def _apply_pending_candidates(self, pc):
        pending, self._pending_candidates = self._pending_candidates, []
        for candidate in pending:
            await self._add_candidate(pc, candidate)

    async def _add_candidate(self, pc, candidate: dict):
        try:
            parsed = candidate_from_json(candidate)
            if parsed is not None:
                await pc.addIceCandidate(parsed)
        except Exception as e:
            logger.warning("Failed to add ICE candidate: %s", e)

    async def _send_candidate(self, to_user_id: str, call_id: str, candidate):
        try:
            await self._send(to_user_id, ICE_CANDIDATE, {
                "callId": call_id,
                "candidate": candidate_to_json(candidate),
            })
        except Exception as e:
            logger.warning("Failed to send ICE candidate: %s", e)

    # --- termination ---

    async def _on_remote_end(self, data: dict):
        self._handle_remote_termination(data.get("callId"), "ended")

    async def _on_remote_reject(self, data: dict):
        self._handle_remote_termination(data.get("callId"), "rejected")

    def _handle_remote_termination(self, call_id: str, reason: str):
        if call_id != self._state.call_id or not self._state.status.is_active:
            logger.debug("Ignoring remote %s for %s", reason, call_id)
            return
        logger.info("Call %s %s by remote", call_id, reason)
        self._cancel_auto_accept()
        self._stop_ringer()
        self._cleanup()
        self._transition(CallStatus.ENDED, local_stream=None, remote_stream=None)
        self._reset_task = asyncio.create_task(self._reset_after_delay(call_id))

    async def _reset_after_delay(self, call_id: str):
        await asyncio.sleep(self.ENDED_RESET_DELAY_S)
        if self._is_current(call_id, CallStatus.ENDED):
            self._reset_state()

    async def end_call(self):
        """Hang up. Local teardown happens first and unconditionally.

        Notifying the remote and writing the call log follow; failures there
        are logged only. A second call finds the session idle and does nothing
        beyond an empty cleanup.
        """
        snapshot = self._state.copy()
        self._cancel_auto_accept()
        self._stop_ringer()
        self._cleanup()
        self._reset_state()

        if not snapshot.status.is_active or not snapshot.call_id:
            return
        if snapshot.remote_user_id:
            try:
                await self._send(snapshot.remote_user_id, CALL_END, {"callId": snapshot.call_id})
            except Exception as e:
                logger.warning("Could not notify %s of hangup: %s", snapshot.remote_user_id, e)
        if snapshot.start_time:
            ended_at = _now()
            self._spawn(
                self.backend.update_call_log(snapshot.call_id, {
                    "status": "answered",
                    "ended_at": ended_at.isoformat(),
                    "duration": int((ended_at - snapshot.start_time).total_seconds()),
                }),
                "call log end",
            )
        logger.info("Call %s ended", snapshot.call_id)

    # --- media controls ---

    def toggle_mute(self) -> bool:
        return self._toggle_first(self._local_stream.audio_tracks if self._local_stream else [])

    def toggle_video(self) -> bool:
        return self._toggle_first(self._local_stream.video_tracks if self._local_stream else [])

    @staticmethod
    def _toggle_first(tracks: list) -> bool:
        """Flip the first track; returns True when it is now off."""
        if not tracks:
            return False
        track = tracks[0]
        track.enabled = not track.enabled
        return not track.enabled

    # --- internals ---

    async def _acquire_media(self, call_type: CallType, allow_audio_fallback: bool) -> MediaStream:
        if self.media is None or not self.media.supported:
            raise MediaDevicesUnsupportedError()
        want_video = call_type is CallType.VIDEO
        try:
            return await self.media.get_user_media(audio=True, video=want_video)
        except MediaDevicesUnsupportedError:
            raise
        except Exception as e:
            if not (want_video and allow_audio_fallback):
                raise
            logger.warning("Video capture failed (%s), continuing audio only", e)
            return await self.media.get_user_media(audio=True, video=False)

    def _create_peer_connection(self):
        pc = self.peer_factory()
        self._pc = pc

        @pc.on("track")
        def on_track(track):
            if self._pc is not pc:
                return
            if self._remote_stream is None:
                self._remote_stream = MediaStream()
            self._remote_stream.add_track(track)
            self._update(remote_stream=self._remote_stream)

        @pc.on("icecandidate")
        def on_ice_candidate(candidate):
            remote = self._state.remote_user_id
            if candidate is None or self._pc is not pc or not remote:
                return
            self._spawn(self._send_candidate(remote, self._state.call_id, candidate), "ice candidate")

        @pc.on("connectionstatechange")
        def on_connection_state():
            state = pc.connectionState
            logger.info("Connection state: %s", state)
            if self._pc is pc and state in FAILED_CONNECTION_STATES:
                self._spawn(self.end_call(), "connection lost")

        return pc

    def _cleanup(self):
        """Release media and the peer connection. Idempotent."""
        pc, self._pc = self._pc, None
        local, self._local_stream = self._local_stream, None
        remote, self._remote_stream = self._remote_stream, None
        self._pending_candidates = []
        if local is not None:
            local.stop()
        if remote is not None:
            remote.stop()
        if pc is not None:
            self._spawn(self._close_peer(pc), "peer close")

    @staticmethod
    async def _close_peer(pc):
        try:
            await pc.close()
        except Exception as e:
            logger.warning("Error closing peer connection: %s", e)

    async def _send(self, to_user_id: str, event: str, payload: dict):
        await send_signal(self.relay, to_user_id, event, payload, self.SIGNAL_SUBSCRIBE_TIMEOUT_S)

    def _start_ringer(self):
        try:
            self.ringer.start()
        except Exception as e:
            logger.warning("Could not play ringtone: %s", e)

    def _stop_ringer(self):
        try:
            self.ringer.stop()
        except Exception as e:
            logger.warning("Could not stop ringtone: %s", e)

    def _cancel_reset(self):
        task, self._reset_task = self._reset_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _cancel_auto_accept(self):
        task, self._auto_accept_task = self._auto_accept_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    def _spawn(self, coro, label: str) -> asyncio.Task:
        """Run a fire-and-forget side effect. Its failure is logged, never raised."""
        task = asyncio.create_task(coro)
        self._side_effects.add(task)

        def done(t: asyncio.Task):
            self._side_effects.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error("%s failed: %s", label, t.exception())

        task.add_done_callback(done)
        return task

    async def flush_side_effects(self):
        """Wait for in-flight log writes, auto-accepts and signal sends."""
        current = asyncio.current_task()
        while True:
            pending = [t for t in self._side_effects if t is not current and not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)


def _now() -> datetime:
    return datetime.now(timezone.utc)

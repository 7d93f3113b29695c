"""Control surface for a call terminal (kiosk or headless desk unit).

Binds the call manager to the terminal's user as soon as the process starts
so incoming calls are handled without any UI being open, and exposes the
manager's operations over HTTP plus a websocket feed of state changes.
"""

import asyncio
import functools
import itertools
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import PlainTextResponse
from loguru import logger as loguru_logger
from pydantic import BaseModel

from peercall.backend import SupabaseClient
from peercall.config import CallSettings, validate_config
from peercall.errors import (
    CallBusyError,
    CallError,
    CallServiceNotInitializedError,
    MediaAcquisitionError,
    MediaDevicesUnsupportedError,
    SignalingError,
)
from peercall.manager import CallManager
from peercall.media import AiortcMediaDevices
from peercall.peer import create_peer_connection
from peercall.realtime import RealtimeRelay
from peercall.states import CallType

load_dotenv()

logger = logging.getLogger(__name__)

# aioice logs every connectivity check pair at INFO; a single call produces hundreds
NOISY_LOGGER_PREFIXES = ("aioice", "aiortc.rtcicetransport")
NOISY_MARKERS = ("CandidatePair", "Check ")

INIT_RETRY_DELAYS_S = (1.0, 2.0, 5.0, 10.0, 30.0)


def _ice_noise_filter(record) -> bool:
    """Loguru filter: drop ICE connectivity-check chatter, keep everything else."""
    name = record.get("extra", {}).get("logger") or record["name"] or ""
    if name.startswith(NOISY_LOGGER_PREFIXES) and any(m in record["message"] for m in NOISY_MARKERS):
        return False
    return True


class InterceptHandler(logging.Handler):
    """Forward stdlib logging records (ours, aiortc, uvicorn) into loguru."""

    def emit(self, record: logging.LogRecord):
        try:
            level = loguru_logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        loguru_logger.bind(logger=record.name).opt(exception=record.exc_info).log(level, record.getMessage())


def configure_logging(level: str = "INFO"):
    loguru_logger.remove()
    loguru_logger.add(sys.stderr, level=level, filter=_ice_noise_filter)
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)


def build_manager(settings: CallSettings) -> CallManager:
    manager = CallManager(
        relay=RealtimeRelay.for_project(
            settings.supabase_url,
            settings.supabase_anon_key,
            access_token=settings.supabase_access_token,
        ),
        backend=SupabaseClient(
            settings.supabase_url,
            settings.supabase_anon_key,
            access_token=settings.supabase_access_token,
        ),
        media=AiortcMediaDevices(
            audio_device=settings.audio_device or None,
            audio_format=settings.audio_format or None,
            video_device=settings.video_device or None,
            video_format=settings.video_format or None,
        ),
        peer_factory=functools.partial(create_peer_connection, settings.stun_urls),
        unattended=settings.unattended,
    )
    manager.AUTO_ACCEPT_DELAY_S = settings.auto_accept_delay_s
    manager.ENDED_RESET_DELAY_S = settings.ended_reset_delay_s
    manager.SIGNAL_SUBSCRIBE_TIMEOUT_S = settings.signal_timeout_s
    return manager


async def bind_with_retry(manager: CallManager, user_id: str, delays=INIT_RETRY_DELAYS_S):
    """Initialize the listener, retrying with backoff until the channel subscribes."""
    for attempt in itertools.count():
        try:
            await manager.initialize(user_id)
            return
        except SignalingError as e:
            delay = delays[min(attempt, len(delays) - 1)]
            logger.error("Call listener init failed (attempt %d), retrying in %.1fs: %s", attempt + 1, delay, e)
            await asyncio.sleep(delay)


class SessionRequest(BaseModel):
    user_id: str


class StartCallRequest(BaseModel):
    recipient_id: str
    recipient_name: str
    recipient_image: Optional[str] = None
    call_type: CallType = CallType.VOICE


def _http_error(e: CallError) -> HTTPException:
    if isinstance(e, (CallServiceNotInitializedError, CallBusyError)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (MediaDevicesUnsupportedError, MediaAcquisitionError)):
        return HTTPException(status_code=503, detail=str(e))
    if isinstance(e, SignalingError):
        return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


def create_app(manager: CallManager | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manager is not None:
            yield
            return

        validate_config()
        settings = CallSettings.from_env()
        configure_logging(settings.log_level)
        owned = build_manager(settings)
        app.state.manager = owned
        binder = None
        if settings.user_id:
            binder = asyncio.create_task(bind_with_retry(owned, settings.user_id))
        else:
            logger.warning("CALL_USER_ID not set; waiting for POST /session")
        yield
        if binder is not None:
            binder.cancel()
        await owned.dispose()
        await owned.relay.close()
        await owned.backend.close()

    app = FastAPI(title="peercall terminal", lifespan=lifespan)
    if manager is not None:
        app.state.manager = manager

    def _manager(request: Request) -> CallManager:
        return request.app.state.manager

    @app.get("/health")
    async def health():
        return PlainTextResponse("ok")

    @app.post("/session")
    async def bind_session(body: SessionRequest, request: Request):
        try:
            await _manager(request).initialize(body.user_id)
        except CallError as e:
            raise _http_error(e)
        return {"user_id": body.user_id}

    @app.get("/call")
    async def call_state(request: Request):
        return _manager(request).get_state().to_dict()

    @app.post("/call/start")
    async def start_call(body: StartCallRequest, request: Request):
        mgr = _manager(request)
        try:
            await mgr.start_call(body.recipient_id, body.recipient_name, body.recipient_image, body.call_type)
        except CallError as e:
            raise _http_error(e)
        return mgr.get_state().to_dict()

    @app.post("/call/accept")
    async def accept_call(request: Request):
        mgr = _manager(request)
        await mgr.accept_call()
        return mgr.get_state().to_dict()

    @app.post("/call/reject")
    async def reject_call(request: Request):
        mgr = _manager(request)
        await mgr.reject_call()
        return mgr.get_state().to_dict()

    @app.post("/call/end")
    async def end_call(request: Request):
        mgr = _manager(request)
        await mgr.end_call()
        return mgr.get_state().to_dict()

    @app.post("/call/mute")
    async def toggle_mute(request: Request):
        return {"muted": _manager(request).toggle_mute()}

    @app.post("/call/video")
    async def toggle_video(request: Request):
        return {"video_off": _manager(request).toggle_video()}

    @app.websocket("/ws/call-state")
    async def call_state_feed(websocket: WebSocket):
        await websocket.accept()
        updates: asyncio.Queue = asyncio.Queue()
        unsubscribe = websocket.app.state.manager.subscribe(lambda s: updates.put_nowait(s.to_dict()))

        async def pump():
            while True:
                await websocket.send_json(await updates.get())

        sender = asyncio.create_task(pump())
        try:
            while True:
                # clients only listen; receiving is how a disconnect is noticed
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            unsubscribe()
            sender.cancel()

    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.getenv("PORT", "8765"))
    uvicorn.run("peercall.device:app", host="0.0.0.0", port=port)

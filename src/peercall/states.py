from enum import Enum

ACTIVE_STATES = {"calling", "ringing", "connected"}


class CallStatus(Enum):
    IDLE = "idle"
    CALLING = "calling"
    RINGING = "ringing"
    CONNECTED = "connected"
    ENDED = "ended"

    @property
    def is_active(self) -> bool:
        """Media and a peer connection may be held in this state."""
        return self.value in ACTIVE_STATES

    @property
    def accepts_new_call(self) -> bool:
        return self in (CallStatus.IDLE, CallStatus.ENDED)


class CallType(Enum):
    VOICE = "voice"
    VIDEO = "video"


TRANSITIONS = {
    CallStatus.IDLE: {CallStatus.CALLING, CallStatus.RINGING},
    CallStatus.CALLING: {CallStatus.CONNECTED, CallStatus.ENDED, CallStatus.IDLE},
    CallStatus.RINGING: {CallStatus.CONNECTED, CallStatus.ENDED, CallStatus.IDLE},
    CallStatus.CONNECTED: {CallStatus.ENDED, CallStatus.IDLE},
    # ended is a display state; a new call may start before the auto-reset fires
    CallStatus.ENDED: {CallStatus.IDLE, CallStatus.CALLING, CallStatus.RINGING},
}

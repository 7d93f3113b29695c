"""Exceptions raised by the call manager to its callers.

Only the call-initiating entry points raise. Negotiation failures while
accepting are turned into a normal hangup, and call-log failures are logged
and dropped, so neither has an exception type here.
"""


class CallError(Exception):
    """Base for call session failures."""


class CallServiceNotInitializedError(CallError):
    def __init__(self):
        super().__init__("Call service not initialized")


class CallBusyError(CallError):
    def __init__(self, call_id: str | None):
        self.call_id = call_id
        super().__init__(f"A call is already in progress ({call_id})")


class MediaDevicesUnsupportedError(CallError):
    def __init__(self):
        super().__init__("Media devices not supported on this device")


class MediaAcquisitionError(CallError):
    """Camera or microphone could not be opened (permission, busy, missing)."""


class SignalingError(CallError):
    """The relay channel could not be joined or the message could not be sent."""

    def __init__(self, message: str, status: str | None = None):
        self.status = status
        super().__init__(message)


class SignalingTimeoutError(SignalingError):
    def __init__(self, channel: str, timeout: float):
        self.channel = channel
        self.timeout = timeout
        super().__init__(
            f"Realtime channel {channel} subscribe timed out after {timeout:.0f}s",
            status="TIMED_OUT",
        )

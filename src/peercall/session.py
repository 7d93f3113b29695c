from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

from peercall.media import MediaStream
from peercall.states import CallStatus, CallType


@dataclass
class CallState:
    status: CallStatus = CallStatus.IDLE
    call_id: Optional[str] = None
    call_type: CallType = CallType.VOICE
    is_incoming: bool = False

    # Other party
    remote_user_id: Optional[str] = None
    remote_user_name: Optional[str] = None
    remote_user_image: Optional[str] = None

    # Set on entering connected, cleared on reset
    start_time: Optional[datetime] = None

    # Local stream is owned by the manager; remote stream belongs to the peer connection
    local_stream: Optional[MediaStream] = None
    remote_stream: Optional[MediaStream] = None

    def copy(self) -> "CallState":
        return replace(self)

    def to_dict(self) -> dict:
        """JSON-friendly view for observers outside the process. Streams become flags."""
        return {
            "status": self.status.value,
            "call_id": self.call_id,
            "call_type": self.call_type.value,
            "is_incoming": self.is_incoming,
            "remote_user_id": self.remote_user_id,
            "remote_user_name": self.remote_user_name,
            "remote_user_image": self.remote_user_image,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "has_local_stream": self.local_stream is not None,
            "has_remote_stream": self.remote_stream is not None,
        }

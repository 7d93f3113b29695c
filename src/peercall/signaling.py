"""Signal names and the relay contract used by the call manager.

Peers have no dedicated signaling server: every user listens on the relay
channel ``calls:<user id>`` and callers broadcast to the recipient's channel.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

from peercall.errors import SignalingError, SignalingTimeoutError

logger = logging.getLogger(__name__)

CALL_OFFER = "call-offer"
CALL_ANSWER = "call-answer"
ICE_CANDIDATE = "ice-candidate"
CALL_END = "call-end"
CALL_REJECT = "call-reject"

CALL_EVENTS = (CALL_OFFER, CALL_ANSWER, ICE_CANDIDATE, CALL_END, CALL_REJECT)

SignalHandler = Callable[[dict], Awaitable[None]]


class ChannelStatus(str, Enum):
    SUBSCRIBED = "SUBSCRIBED"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"
    CHANNEL_ERROR = "CHANNEL_ERROR"

    @property
    def is_failure(self) -> bool:
        return self is not ChannelStatus.SUBSCRIBED


class SignalChannel(Protocol):
    name: str

    def on(self, event: str, handler: SignalHandler) -> "SignalChannel": ...

    def subscribe(
        self, callback: Optional[Callable[[ChannelStatus], None]] = None
    ) -> "SignalChannel": ...

    async def send(self, event: str, payload: dict) -> None: ...


class SignalingRelay(Protocol):
    def channel(self, name: str) -> SignalChannel: ...

    async def remove_channel(self, channel: SignalChannel) -> None: ...


def user_channel(user_id: str) -> str:
    return f"calls:{user_id}"


async def wait_for_subscribed(channel: SignalChannel, timeout: float) -> None:
    """Subscribe and block until the relay reports the channel ready.

    The first status reported wins; anything other than SUBSCRIBED, or no
    status within ``timeout`` seconds, raises.
    """
    loop = asyncio.get_running_loop()
    ready: asyncio.Future = loop.create_future()

    def on_status(status: ChannelStatus) -> None:
        if ready.done():
            return
        if status is ChannelStatus.SUBSCRIBED:
            ready.set_result(status)
        else:
            ready.set_exception(
                SignalingError(
                    f"Realtime channel {channel.name} subscribe failed: {status.value}",
                    status=status.value,
                )
            )

    channel.subscribe(on_status)
    try:
        await asyncio.wait_for(ready, timeout)
    except asyncio.TimeoutError:
        raise SignalingTimeoutError(channel.name, timeout) from None


async def send_signal(
    relay: SignalingRelay,
    to_user_id: str,
    event: str,
    payload: dict[str, Any],
    timeout: float,
) -> None:
    """Broadcast one signal on the recipient's channel.

    The temporary channel is released whether or not the send succeeded.
    """
    channel = relay.channel(user_channel(to_user_id))
    try:
        await wait_for_subscribed(channel, timeout)
        await channel.send(event, payload)
    finally:
        try:
            await relay.remove_channel(channel)
        except Exception as e:
            logger.warning("Failed to release channel %s: %s", channel.name, e)

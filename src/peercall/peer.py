from typing import Optional

from aiortc import RTCConfiguration, RTCIceCandidate, RTCIceServer, RTCPeerConnection
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

DEFAULT_STUN_URLS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
]


def create_peer_connection(stun_urls: Optional[list[str]] = None) -> RTCPeerConnection:
    servers = [RTCIceServer(urls=url) for url in (stun_urls or DEFAULT_STUN_URLS)]
    return RTCPeerConnection(RTCConfiguration(iceServers=servers))


def candidate_from_json(data: dict) -> Optional[RTCIceCandidate]:
    """Parse a browser ``RTCIceCandidate.toJSON()`` dict.

    An empty candidate string is the end-of-candidates marker and yields None.
    """
    line = data.get("candidate") or ""
    if not line:
        return None
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    candidate = candidate_from_sdp(line)
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


def candidate_to_json(candidate: RTCIceCandidate) -> dict:
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }

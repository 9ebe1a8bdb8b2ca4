from typing import Optional

from aiortc import RTCIceCandidate
from aiortc.sdp import candidate_to_sdp

from peer_signaling.signaling.messages import IceCandidatePayload


def parse_candidate(data: IceCandidatePayload) -> Optional[RTCIceCandidate]:
    """
    Parse an ICE candidate line into an RTCIceCandidate.

    Returns None for the empty end-of-candidates marker.

    Raises:
        ValueError: If the candidate line is malformed.
    """
    parts = data.candidate.removeprefix("candidate:").split()

    if len(parts) == 0:
        return None

    if len(parts) < 8 or parts[6] != "typ":
        raise ValueError(f"Malformed ICE candidate: {data.candidate!r}")

    candidate = RTCIceCandidate(
        foundation=parts[0],
        component=int(parts[1]),
        protocol=parts[2].lower(),
        priority=int(parts[3]),
        ip=parts[4],
        port=int(parts[5]),
        type=parts[7],
        sdpMid=data.sdpMid,
        sdpMLineIndex=data.sdpMLineIndex,
    )

    # Optional trailing key/value attributes
    extras = parts[8:]
    for key, value in zip(extras[::2], extras[1::2]):
        if key == "raddr":
            candidate.relatedAddress = value
        elif key == "rport":
            candidate.relatedPort = int(value)
        elif key == "tcptype":
            candidate.tcpType = value

    return candidate


def candidate_payload(candidate: RTCIceCandidate) -> IceCandidatePayload:
    return IceCandidatePayload(
        candidate="candidate:" + candidate_to_sdp(candidate),
        sdpMid=candidate.sdpMid,
        sdpMLineIndex=candidate.sdpMLineIndex,
    )

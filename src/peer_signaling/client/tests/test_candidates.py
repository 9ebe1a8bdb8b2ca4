import pytest
from aiortc import RTCIceCandidate

from peer_signaling.client.candidates import candidate_payload, parse_candidate
from peer_signaling.signaling.messages import IceCandidatePayload
from peer_signaling.tests.shared import HOST_CANDIDATE, SRFLX_CANDIDATE


def test_parse_host_candidate():
    candidate = parse_candidate(
        IceCandidatePayload(candidate=HOST_CANDIDATE, sdpMid="0", sdpMLineIndex=0)
    )

    assert candidate == RTCIceCandidate(
        foundation="842163049",
        component=1,
        protocol="udp",
        priority=1677729535,
        ip="192.0.2.10",
        port=54400,
        type="host",
        sdpMid="0",
        sdpMLineIndex=0,
    )


def test_parse_related_address():
    candidate = parse_candidate(IceCandidatePayload(candidate=SRFLX_CANDIDATE))

    assert candidate is not None
    assert candidate.type == "srflx"
    assert candidate.relatedAddress == "192.0.2.10"
    assert candidate.relatedPort == 61665


def test_parse_without_prefix():
    candidate = parse_candidate(
        IceCandidatePayload(candidate=HOST_CANDIDATE.removeprefix("candidate:"))
    )

    assert candidate is not None
    assert candidate.foundation == "842163049"


def test_empty_candidate_means_end_of_candidates():
    assert parse_candidate(IceCandidatePayload(candidate="")) is None


@pytest.mark.parametrize(
    "line",
    [
        "candidate:garbage",
        "candidate:1 1 udp notanumber 192.0.2.10 54400 typ host",
        "candidate:1 1 udp 1 192.0.2.10 54400 kind host",
    ],
)
def test_malformed_candidate_raises_value_error(line: str):
    with pytest.raises(ValueError):
        parse_candidate(IceCandidatePayload(candidate=line))


def test_payload_uses_browser_format():
    candidate = parse_candidate(
        IceCandidatePayload(candidate=SRFLX_CANDIDATE, sdpMid="0", sdpMLineIndex=0)
    )
    assert candidate is not None

    payload = candidate_payload(candidate)

    assert payload.candidate.startswith("candidate:1467250027 1 udp")
    assert "raddr 192.0.2.10 rport 61665" in payload.candidate
    assert payload.sdpMid == "0"
    assert payload.sdpMLineIndex == 0

from collections import deque
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from aiortc import RTCIceCandidate, RTCSessionDescription
from aiortc.mediastreams import MediaStreamTrack


class NegotiationState(StrEnum):
    IDLE = "idle"
    OFFERING = "offering"
    ANSWERING = "answering"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


@runtime_checkable
class PeerConnectionProtocol(Protocol):
    """The subset of aiortc's RTCPeerConnection the negotiator relies on."""

    @property
    def connectionState(self) -> str: ...
    @property
    def localDescription(self) -> Optional[RTCSessionDescription]: ...
    @property
    def remoteDescription(self) -> Optional[RTCSessionDescription]: ...

    def addTrack(self, track: MediaStreamTrack) -> Any: ...
    async def createOffer(self) -> RTCSessionDescription: ...
    async def createAnswer(self) -> RTCSessionDescription: ...
    async def setLocalDescription(self, sessionDescription: RTCSessionDescription) -> None: ...
    async def setRemoteDescription(self, sessionDescription: RTCSessionDescription) -> None: ...
    async def addIceCandidate(self, candidate: RTCIceCandidate) -> None: ...
    def on(self, event: str, f: Optional[Callable] = None) -> Any: ...
    async def close(self) -> None: ...


PeerConnectionFactory = Callable[[], PeerConnectionProtocol]


@dataclass
class PeerSession:
    """Negotiation state for one remote party."""

    peer_connection: PeerConnectionProtocol
    remote_conn_id: Optional[str] = None
    state: NegotiationState = NegotiationState.IDLE
    local_tracks_attached: bool = False
    remote_description_set: bool = False

    # Candidates that arrived before the remote description.
    pending_ice: deque[RTCIceCandidate] = field(default_factory=deque)

    @property
    def is_closed(self) -> bool:
        return self.state == NegotiationState.CLOSED


@dataclass
class CallControls:
    """Enablement of the operator's call / hang up actions."""

    call_enabled: bool = True
    hangup_enabled: bool = False

    def in_call(self) -> None:
        self.call_enabled = False
        self.hangup_enabled = True

    def reset(self) -> None:
        self.call_enabled = True
        self.hangup_enabled = False

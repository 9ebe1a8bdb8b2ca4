from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# WARNING: When adding new message types, be sure that type is unique
# within its direction. Inbound and outbound share event names
# (e.g. "chat-message") so each direction has its own envelope.


class SessionDescription(BaseModel):
    """SDP (Session Description Protocol) data"""

    sdp: str
    type: Literal["offer", "answer"]


class IceCandidatePayload(BaseModel):
    """ICE candidate data, as produced by RTCIceCandidate.toJSON()"""

    candidate: str
    sdpMid: Optional[str] = None
    sdpMLineIndex: Optional[int] = None


#
# Client -> Server
#
class JoinRoomMessage(BaseModel):
    type: Literal["join-room"] = "join-room"
    room: str = Field(min_length=1)


class ChatMessage(BaseModel):
    type: Literal["chat-message"] = "chat-message"
    room: str = Field(min_length=1)
    name: str = "Anon"
    message: str


class OfferMessage(BaseModel):
    """
    Offer for the peer named by `to`, or for every other member of the
    sender's room when `to` is absent. `room` is accepted but the router
    always uses the room the sender most recently joined.
    """

    type: Literal["webrtc-offer"] = "webrtc-offer"
    room: Optional[str] = None
    offer: SessionDescription
    to: Optional[str] = None


class AnswerMessage(BaseModel):
    type: Literal["webrtc-answer"] = "webrtc-answer"
    # Required by the protocol; the router drops answers without it.
    to: Optional[str] = None
    answer: SessionDescription


class IceCandidateMessage(BaseModel):
    type: Literal["webrtc-ice-candidate"] = "webrtc-ice-candidate"
    to: Optional[str] = None
    candidate: IceCandidatePayload
    room: Optional[str] = None


class PingMessage(BaseModel):
    type: Literal["ping"] = "ping"


ClientMessage = Union[
    JoinRoomMessage,
    ChatMessage,
    OfferMessage,
    AnswerMessage,
    IceCandidateMessage,
    PingMessage,
]


class ClientEnvelope(BaseModel):
    message: Annotated[ClientMessage, Field(discriminator="type")]


#
# Server -> Client
#
class ConnectedMessage(BaseModel):
    type: Literal["connected"] = "connected"
    id: str


class UserJoinedMessage(BaseModel):
    type: Literal["user-joined"] = "user-joined"
    id: str


class UserDisconnectedMessage(BaseModel):
    type: Literal["user-disconnected"] = "user-disconnected"
    id: str


class ChatBroadcastMessage(BaseModel):
    type: Literal["chat-message"] = "chat-message"
    senderId: str
    name: str
    message: str
    # Milliseconds since the epoch, assigned by the server on receipt.
    time: int


class RelayedOfferMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["webrtc-offer"] = "webrtc-offer"
    from_: str = Field(alias="from")
    offer: SessionDescription


class RelayedAnswerMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["webrtc-answer"] = "webrtc-answer"
    from_: str = Field(alias="from")
    answer: SessionDescription


class RelayedIceCandidateMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["webrtc-ice-candidate"] = "webrtc-ice-candidate"
    from_: str = Field(alias="from")
    candidate: IceCandidatePayload


class ErrorMessage(BaseModel):
    type: Literal["error"] = "error"
    timestamp: datetime = Field(default_factory=datetime.now)
    error_code: str
    message: str


class PongMessage(BaseModel):
    type: Literal["pong"] = "pong"
    timestamp: datetime = Field(default_factory=datetime.now)


ServerMessage = Union[
    ConnectedMessage,
    UserJoinedMessage,
    UserDisconnectedMessage,
    ChatBroadcastMessage,
    RelayedOfferMessage,
    RelayedAnswerMessage,
    RelayedIceCandidateMessage,
    ErrorMessage,
    PongMessage,
]


class ServerEnvelope(BaseModel):
    message: Annotated[ServerMessage, Field(discriminator="type")]


def dump_envelope(envelope: ClientEnvelope | ServerEnvelope) -> str:
    """Serialize an envelope for the wire, always using field aliases."""
    return envelope.model_dump_json(by_alias=True)

import logging
from typing import AsyncIterable, Optional, Protocol

import anyio
import websockets
from pydantic import ValidationError

from peer_signaling.client.negotiator import PeerNegotiator
from peer_signaling.signaling.messages import (
    ChatBroadcastMessage,
    ChatMessage,
    ClientEnvelope,
    ClientMessage,
    ConnectedMessage,
    ErrorMessage,
    JoinRoomMessage,
    PongMessage,
    RelayedAnswerMessage,
    RelayedIceCandidateMessage,
    RelayedOfferMessage,
    ServerEnvelope,
    ServerMessage,
    UserDisconnectedMessage,
    UserJoinedMessage,
    dump_envelope,
)

logger = logging.getLogger(__name__)


class ClientSocket(Protocol):
    """The part of a `websockets` client connection we use."""

    async def send(self, message: str) -> None: ...
    def __aiter__(self) -> AsyncIterable[str]: ...


class SignalingClient:
    """
    Endpoint side of the signaling protocol.

    Joins a room, keeps track of the other peers and the chat log, and
    hands negotiation messages to a `PeerNegotiator`.
    """

    def __init__(self, url: str, room: str, name: str = "Anon"):
        self.url = url
        self.room = room
        self.name = name

        self.conn_id: Optional[str] = None
        self.peers: set[str] = set()
        self.chat_log: list[str] = []
        self.negotiator: Optional[PeerNegotiator] = None

        self.peer_known = anyio.Event()
        self._ws: Optional[ClientSocket] = None
        self._send_lock = anyio.Lock()

    def attach_negotiator(self, negotiator: PeerNegotiator) -> None:
        self.negotiator = negotiator

    async def send_message(self, message: ClientMessage) -> None:
        if self._ws is None:
            logger.warning(f"Not connected, dropping {message.type}")
            return

        async with self._send_lock:
            await self._ws.send(dump_envelope(ClientEnvelope(message=message)))

    async def send_chat(self, text: str) -> None:
        text = text.strip()
        if not text:
            return

        await self.send_message(ChatMessage(room=self.room, name=self.name, message=text))
        self.chat_log.append(f"Me: {text}")

    async def run(self) -> None:
        """Connects and processes messages until the server hangs up."""
        logger.info(f"Connecting to {self.url}, room '{self.room}'")
        async with websockets.connect(self.url) as ws:
            await self.serve(ws)
        logger.info("Signaling connection closed")

    async def serve(self, ws: ClientSocket) -> None:
        self._ws = ws
        try:
            await self.send_message(JoinRoomMessage(room=self.room))

            async for raw in ws:
                try:
                    message = ServerEnvelope.model_validate_json(raw).message
                except ValidationError as e:
                    logger.warning(f"Ignoring invalid message from server: {e}")
                    continue

                await self.dispatch(message)
        finally:
            self._ws = None
            if self.negotiator is not None:
                await self.negotiator.hangup()

    async def dispatch(self, message: ServerMessage) -> None:
        logger.debug(f"Received {message.type}")

        if isinstance(message, ConnectedMessage):
            self.conn_id = message.id
            logger.info(f"Connected as {message.id}")
        elif isinstance(message, UserJoinedMessage):
            self._peer_seen(message.id)
            logger.info(f"Peer {message.id} joined")
        elif isinstance(message, UserDisconnectedMessage):
            self.peers.discard(message.id)
            if self.negotiator is not None:
                await self.negotiator.handle_peer_left(message.id)
        elif isinstance(message, ChatBroadcastMessage):
            self._peer_seen(message.senderId)
            line = f"{message.name or message.senderId}: {message.message}"
            self.chat_log.append(line)
            logger.info(line)
        elif isinstance(
            message,
            (RelayedOfferMessage, RelayedAnswerMessage, RelayedIceCandidateMessage),
        ):
            await self._negotiate(message)
        elif isinstance(message, ErrorMessage):
            logger.warning(f"Server error {message.error_code}: {message.message}")
        elif isinstance(message, PongMessage):
            pass
        else:
            logger.warning(f"Unhandled message type: {message.type}")

    def _peer_seen(self, conn_id: str) -> None:
        self.peers.add(conn_id)
        self.peer_known.set()

    async def _negotiate(
        self,
        message: RelayedOfferMessage | RelayedAnswerMessage | RelayedIceCandidateMessage,
    ) -> None:
        if self.negotiator is None:
            logger.warning(f"No negotiator, ignoring {message.type}")
            return

        # The sender is evidently present even if we missed its join.
        self._peer_seen(message.from_)

        if isinstance(message, RelayedOfferMessage):
            await self.negotiator.handle_offer(message)
        elif isinstance(message, RelayedAnswerMessage):
            await self.negotiator.handle_answer(message)
        else:
            await self.negotiator.handle_ice_candidate(message)

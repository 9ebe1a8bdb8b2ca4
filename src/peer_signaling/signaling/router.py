import logging
import time

from peer_signaling.signaling.broadcaster import RoomBroadcaster
from peer_signaling.signaling.channel import MessageSink
from peer_signaling.signaling.messages import (
    AnswerMessage,
    ChatBroadcastMessage,
    ChatMessage,
    ClientMessage,
    ConnectedMessage,
    IceCandidateMessage,
    JoinRoomMessage,
    OfferMessage,
    PingMessage,
    PongMessage,
    RelayedAnswerMessage,
    RelayedIceCandidateMessage,
    RelayedOfferMessage,
    ServerMessage,
    UserDisconnectedMessage,
    UserJoinedMessage,
)
from peer_signaling.signaling.registry import SessionRegistry
from peer_signaling.signaling.types import ConnId

logger = logging.getLogger(__name__)


def now_millis() -> int:
    return time.time_ns() // 1_000_000


class SignalingRouter:
    """
    Routes inbound signaling messages to their recipients.

    The sender of every message is the connection it arrived on; nothing
    in the payload can claim a different identity. SDP and candidate
    contents are passed through untouched.
    """

    def __init__(
        self,
        broadcaster: RoomBroadcaster,
        *,
        scope_disconnect_to_room: bool = False,
    ):
        self.broadcaster = broadcaster
        self.registry: SessionRegistry = broadcaster.registry
        self.scope_disconnect_to_room = scope_disconnect_to_room

    async def connect(self, conn_id: ConnId, sink: MessageSink) -> None:
        await self.broadcaster.attach(conn_id, sink)
        await self.broadcaster.send_direct(conn_id, ConnectedMessage(id=conn_id))
        logger.info(f"Connection {conn_id} opened")

    async def disconnect(self, conn_id: ConnId) -> None:
        await self.broadcaster.detach(conn_id)

        async with self.registry.lock:
            rooms = self.registry.leave(conn_id)

        notice = UserDisconnectedMessage(id=conn_id)
        if self.scope_disconnect_to_room:
            for room in rooms:
                await self.broadcaster.broadcast(room, conn_id, notice)
        else:
            await self.broadcaster.send_all(notice, exclude=conn_id)

        logger.info(f"Connection {conn_id} closed (rooms: {rooms})")

    async def handle(self, sender: ConnId, message: ClientMessage) -> None:
        logger.debug(f"Routing {message.type} from {sender}")

        if isinstance(message, JoinRoomMessage):
            await self._join(sender, message)
        elif isinstance(message, ChatMessage):
            await self.broadcaster.broadcast(
                message.room,
                sender,
                ChatBroadcastMessage(
                    senderId=sender,
                    name=message.name,
                    message=message.message,
                    time=now_millis(),
                ),
            )
        elif isinstance(message, OfferMessage):
            await self._direct_or_broadcast(
                sender,
                message.to,
                RelayedOfferMessage(from_=sender, offer=message.offer),
            )
        elif isinstance(message, AnswerMessage):
            if not message.to:
                logger.warning(f"Dropping answer without target from {sender}")
                return
            await self.broadcaster.send_direct(
                ConnId(message.to),
                RelayedAnswerMessage(from_=sender, answer=message.answer),
            )
        elif isinstance(message, IceCandidateMessage):
            await self._direct_or_broadcast(
                sender,
                message.to,
                RelayedIceCandidateMessage(from_=sender, candidate=message.candidate),
            )
        elif isinstance(message, PingMessage):
            await self.broadcaster.send_direct(sender, PongMessage())
        else:
            logger.warning(f"Unknown message type from {sender}: {message!r}")

    async def _join(self, sender: ConnId, message: JoinRoomMessage) -> None:
        async with self.registry.lock:
            added = self.registry.join(sender, message.room)

        if added:
            logger.info(f"Connection {sender} joined room '{message.room}'")

        await self.broadcaster.broadcast(
            message.room, sender, UserJoinedMessage(id=sender)
        )

    async def _direct_or_broadcast(
        self, sender: ConnId, target: str | None, message: ServerMessage
    ) -> None:
        if target:
            await self.broadcaster.send_direct(ConnId(target), message)
            return

        room = self.registry.current_room(sender)
        if room is None:
            logger.debug(f"Dropping {message.type} from {sender}: no room joined")
            return

        await self.broadcaster.broadcast(room, sender, message)

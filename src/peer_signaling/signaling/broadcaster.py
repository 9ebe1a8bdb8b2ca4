import logging
from typing import Optional

from peer_signaling.signaling.channel import MessageSink
from peer_signaling.signaling.messages import ServerMessage
from peer_signaling.signaling.registry import SessionRegistry
from peer_signaling.signaling.types import ConnId

logger = logging.getLogger(__name__)


class RoomBroadcaster:
    """
    Delivers outbound messages to connected clients.

    Fan-out takes the registry lock, so the member set it delivers to is
    the one in effect at that instant. Delivery itself only queues onto
    each connection's sink and never waits on the network.
    """

    def __init__(self, registry: SessionRegistry):
        self.registry = registry
        self._sinks: dict[ConnId, MessageSink] = {}

    async def attach(self, conn_id: ConnId, sink: MessageSink) -> None:
        async with self.registry.lock:
            assert conn_id not in self._sinks, f"{conn_id} is already attached"
            self._sinks[conn_id] = sink

    async def detach(self, conn_id: ConnId) -> None:
        async with self.registry.lock:
            self._sinks.pop(conn_id, None)

    def is_connected(self, conn_id: ConnId) -> bool:
        return conn_id in self._sinks

    def connection_count(self) -> int:
        return len(self._sinks)

    async def broadcast(
        self, room: str, sender: ConnId, message: ServerMessage
    ) -> int:
        """
        Delivers `message` to every member of `room` except `sender`.

        Returns the number of members it was queued for.
        """
        async with self.registry.lock:
            targets = [
                (conn_id, self._sinks.get(conn_id))
                for conn_id in self.registry.members_of(room)
                if conn_id != sender
            ]
            delivered = sum(1 for _, sink in targets if sink and sink.post(message))

        logger.debug(
            f"Broadcast {message.type} from {sender} to room '{room}': "
            f"{delivered}/{len(targets)} delivered"
        )
        return delivered

    async def send_direct(self, target: ConnId, message: ServerMessage) -> bool:
        """
        Delivers `message` to `target` only.

        A target that is not connected is not an error: the message is
        dropped and False returned.
        """
        async with self.registry.lock:
            sink = self._sinks.get(target)
            if sink is None:
                logger.debug(f"Dropping {message.type} for departed peer {target}")
                return False
            return sink.post(message)

    async def send_all(
        self, message: ServerMessage, exclude: Optional[ConnId] = None
    ) -> int:
        """Delivers `message` to every connected client."""
        async with self.registry.lock:
            return sum(
                1
                for conn_id, sink in self._sinks.items()
                if conn_id != exclude and sink.post(message)
            )

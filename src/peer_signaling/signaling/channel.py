import logging
from typing import Optional, Protocol

import anyio
import anyio.abc
from anyio import create_memory_object_stream
from anyio.streams.memory import MemoryObjectReceiveStream
from starlette.websockets import WebSocketDisconnect

from peer_signaling.signaling.messages import (
    ClientEnvelope,
    ClientMessage,
    ServerEnvelope,
    ServerMessage,
    dump_envelope,
)
from peer_signaling.signaling.types import WebSocketProtocol

logger = logging.getLogger(__name__)


class MessageSink(Protocol):
    """Anything the broadcaster can hand an outbound message to."""

    def post(self, message: ServerMessage) -> bool: ...


class SignalChannel:
    """
    Concurrency-safe websocket sender for AnyIO.

    - Any task can post messages; posting never blocks.
    - Exactly one background task touches ws.send_*, so a connection
      receives messages in the order they were posted.
    - Bounded buffer; a full or closed buffer drops the message.
    - Clean shutdown (flushes channel, exits writer).

    Usage:
        channel = SignalChannel(ws)
        async with channel:
            channel.post(model)
            await channel.receive_message()
    """

    def __init__(
        self,
        already_accepted_ws: WebSocketProtocol,
        *,
        message_buffer_size: int = 256,
    ):
        self._ws = already_accepted_ws
        self._send_to_client, self._recv_to_client = create_memory_object_stream[
            ServerMessage
        ](message_buffer_size)
        self._task_group: Optional[anyio.abc.TaskGroup] = None
        self._started = False
        self._closed = False

    # ---------- lifecycle ----------
    async def start(self) -> "SignalChannel":
        if self._started:
            return self

        # We want to keep this open.
        self._task_group = await anyio.create_task_group().__aenter__()

        self._task_group.start_soon(self._writer, self._recv_to_client, self._ws)
        self._started = True
        return self

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Close the producer side so writer drains & exits
        await self._send_to_client.aclose()

        if self._task_group is not None:
            await self._task_group.__aexit__(None, None, None)
            self._task_group = None

    async def __aenter__(self) -> "SignalChannel":
        return await self.start()

    async def __aexit__(self, et, ev, tb) -> None:
        await self.aclose()

    async def _writer(
        self,
        receive_stream_to_client: MemoryObjectReceiveStream[ServerMessage],
        websocket: WebSocketProtocol,
    ) -> None:
        async with receive_stream_to_client:
            try:
                async for msg in receive_stream_to_client:
                    await websocket.send_text(dump_envelope(ServerEnvelope(message=msg)))
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                # Peer went away; the receive loop handles the disconnect.
                logger.debug(f"Writer stopped: {e!r}")
                return

        try:
            await websocket.close()
        except (WebSocketDisconnect, RuntimeError, OSError):
            pass  # Already closed by the peer

    # ---------- messaging ----------
    def post(self, message: ServerMessage) -> bool:
        """Queue `message` for delivery. Returns False if it was dropped."""
        try:
            self._send_to_client.send_nowait(message)
        except anyio.WouldBlock:
            logger.warning(f"Outbound buffer full, dropping {message.type} message")
            return False
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            logger.debug(f"Channel closed, dropping {message.type} message")
            return False
        return True

    async def receive_message(self) -> ClientMessage:
        """
        Raises:
            pydantic.ValidationError: If the frame is not a valid envelope.
            WebSocketDisconnect: When the client goes away.
        """
        msg = await self._ws.receive_text()
        recv_msg = ClientEnvelope.model_validate_json(msg)
        return recv_msg.message

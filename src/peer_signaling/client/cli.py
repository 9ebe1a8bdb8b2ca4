import argparse
import functools
import logging
import sys
from typing import Optional

import anyio
import anyio.to_thread
from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection

from peer_signaling.client.media import (
    LocalMediaUnavailable,
    RemoteMediaSink,
    capture_local_media,
)
from peer_signaling.client.negotiator import PeerNegotiator
from peer_signaling.client.session import PeerConnectionFactory
from peer_signaling.client.signaling_client import SignalingClient
from peer_signaling.config import ClientSettings

logger = logging.getLogger(__name__)


def peer_connection_factory(ice_servers: list[str]) -> PeerConnectionFactory:
    config = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])
    return lambda: RTCPeerConnection(config)


async def read_chat_lines(client: SignalingClient) -> None:
    """Sends every line typed on stdin as a chat message."""
    while True:
        line = await anyio.to_thread.run_sync(sys.stdin.readline, abandon_on_cancel=True)
        if not line:
            return  # EOF
        await client.send_chat(line)


async def run_client(
    settings: ClientSettings,
    *,
    place_call: bool = False,
    media: Optional[str] = None,
    media_format: Optional[str] = None,
    record_to: Optional[str] = None,
) -> None:
    client = SignalingClient(settings.signaling_url, settings.room, settings.display_name)
    sink = RemoteMediaSink(record_to)

    negotiator = PeerNegotiator(
        client,
        peer_connection_factory(settings.ice_servers),
        on_remote_track=sink.add_track,
        on_session_closed=sink.stop,
    )
    client.attach_negotiator(negotiator)

    if media:
        try:
            negotiator.set_local_tracks(capture_local_media(media, media_format))
        except LocalMediaUnavailable as e:
            # Carry on receive-only.
            print(f"Camera/mic not available: {e}", file=sys.stderr)

    async def call_when_peer_known() -> None:
        await client.peer_known.wait()
        await negotiator.call()

    try:
        async with anyio.create_task_group() as tg:
            if place_call:
                tg.start_soon(call_when_peer_known)
            tg.start_soon(read_chat_lines, client)

            await client.run()
            tg.cancel_scope.cancel()
    finally:
        await sink.stop()


def main() -> None:
    parser = argparse.ArgumentParser(description="Command line WebRTC peer")
    parser.add_argument("--url", help="Signaling server websocket URL")
    parser.add_argument("--room", help="Room to join")
    parser.add_argument("--name", help="Display name for chat")
    parser.add_argument(
        "--call",
        action="store_true",
        help="Call the room once another peer joins or sends us anything",
    )
    parser.add_argument("--media", help="Capture device or media file to send")
    parser.add_argument("--media-format", help="Input format, e.g. v4l2 or avfoundation")
    parser.add_argument("--record", help="Write received media to this file")
    args = parser.parse_args()

    overrides = {
        key: value
        for key, value in (
            ("SIGNALING_URL", args.url),
            ("ROOM", args.room),
            ("DISPLAY_NAME", args.name),
        )
        if value is not None
    }
    settings = ClientSettings(**overrides)

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        anyio.run(
            functools.partial(
                run_client,
                settings,
                place_call=args.call,
                media=args.media,
                media_format=args.media_format,
                record_to=args.record,
            )
        )
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.error(f"Client error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

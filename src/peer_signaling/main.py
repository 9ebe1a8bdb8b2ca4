#!/usr/bin/env python3
import logging
import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError
from starlette.websockets import WebSocketDisconnect

from peer_signaling.config import Settings
from peer_signaling.signaling.broadcaster import RoomBroadcaster
from peer_signaling.signaling.channel import SignalChannel
from peer_signaling.signaling.messages import ErrorMessage
from peer_signaling.signaling.registry import SessionRegistry
from peer_signaling.signaling.router import SignalingRouter
from peer_signaling.signaling.types import new_conn_id

logger = logging.getLogger(__name__)

SERVICE_NAME = "Peer Signaling Server"


def configure_logging(settings: Settings) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.log_file is not None:
        handlers.append(logging.FileHandler(settings.log_file))

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )


def create_app(settings: Settings) -> FastAPI:
    registry = SessionRegistry()
    router = SignalingRouter(
        RoomBroadcaster(registry),
        scope_disconnect_to_room=settings.scope_disconnect_to_room,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            f"Signaling on ws://{settings.server_host}:{settings.server_port}/ws"
        )
        yield
        logger.info(
            f"Shutting down with {router.broadcaster.connection_count()} open connections"
        )

    app = FastAPI(
        title=SERVICE_NAME,
        description="Relays WebRTC offers, answers and ICE candidates between room members",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.router = router

    app.add_middleware(
        # pyrefly: ignore[bad-argument-type]
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "connections": router.broadcaster.connection_count(),
            "rooms": registry.room_count(),
        }

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """
        One signaling connection per client. Frames are JSON envelopes,
        see `peer_signaling.signaling.messages`.
        """
        await websocket.accept()
        conn_id = new_conn_id()

        channel = SignalChannel(
            already_accepted_ws=websocket,
            message_buffer_size=settings.message_buffer_size,
        )

        async with channel:
            await router.connect(conn_id, channel)
            try:
                while True:
                    try:
                        message = await channel.receive_message()
                    except ValidationError as e:
                        logger.warning(f"Invalid message from {conn_id}: {e}")
                        channel.post(
                            ErrorMessage(error_code="invalid_message", message=str(e))
                        )
                        continue

                    await router.handle(conn_id, message)
            except WebSocketDisconnect:
                pass
            finally:
                await router.disconnect(conn_id)

    if settings.static_dir.is_dir():
        # Mounted last so it doesn't shadow the routes above.
        app.mount(
            "/", StaticFiles(directory=settings.static_dir, html=True), name="static"
        )
    else:
        logger.warning(f"Static directory {settings.static_dir} not found")

        @app.get("/")
        async def root():
            return SERVICE_NAME

    return app


def main() -> None:
    # Settings gets initialized from environment variables.
    settings = Settings()
    configure_logging(settings)

    try:
        uvicorn.run(
            create_app(settings),
            host=settings.server_host,
            port=settings.server_port,
            log_level=settings.log_level.lower(),
        )
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception as e:
        logger.error(f"Server error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

import logging
from typing import Awaitable, Callable, Iterable, Optional, Protocol

import anyio
from aiortc import RTCIceCandidate, RTCSessionDescription
from aiortc.mediastreams import MediaStreamTrack

from peer_signaling.client.candidates import candidate_payload, parse_candidate
from peer_signaling.client.session import (
    CallControls,
    NegotiationState,
    PeerConnectionFactory,
    PeerSession,
)
from peer_signaling.signaling.messages import (
    AnswerMessage,
    ClientMessage,
    IceCandidateMessage,
    OfferMessage,
    RelayedAnswerMessage,
    RelayedIceCandidateMessage,
    RelayedOfferMessage,
    SessionDescription,
)

logger = logging.getLogger(__name__)

OnRemoteTrack = Callable[[MediaStreamTrack], Awaitable[None]]
OnSessionClosed = Callable[[], Awaitable[None]]

TERMINAL_CONNECTION_STATES = ("disconnected", "failed", "closed")


class SignalSender(Protocol):
    async def send_message(self, message: ClientMessage) -> None: ...


def _description(desc: RTCSessionDescription) -> SessionDescription:
    return SessionDescription(sdp=desc.sdp, type=desc.type)


class PeerNegotiator:
    """
    Drives the offer/answer exchange with a single remote party.

    idle -> offering -> connecting -> connected -> closed, or
    idle -> answering -> connecting -> connected -> closed. Any failure
    closes the session; a later call starts a fresh one.

    Signaling messages, operator actions and peer connection callbacks
    are all serialized on one lock. Callbacks belonging to a session that
    has since been closed do nothing.
    """

    def __init__(
        self,
        signal: SignalSender,
        peer_connection_factory: PeerConnectionFactory,
        *,
        on_remote_track: Optional[OnRemoteTrack] = None,
        on_session_closed: Optional[OnSessionClosed] = None,
    ):
        self.signal = signal
        self.peer_connection_factory = peer_connection_factory
        self.on_remote_track = on_remote_track
        self.on_session_closed = on_session_closed

        self.lock = anyio.Lock()
        self.controls = CallControls()
        self.local_tracks: list[MediaStreamTrack] = []
        # Remote media currently displayed / consumed.
        self.remote_tracks: list[MediaStreamTrack] = []

        self._session: Optional[PeerSession] = None

    @property
    def session(self) -> Optional[PeerSession]:
        return self._session

    @property
    def state(self) -> NegotiationState:
        if self._session is None:
            return NegotiationState.IDLE
        return self._session.state

    @property
    def remote_conn_id(self) -> Optional[str]:
        return self._session.remote_conn_id if self._session else None

    def set_local_tracks(self, tracks: Iterable[MediaStreamTrack]) -> None:
        """Tracks attached to every session created from now on."""
        self.local_tracks = list(tracks)

    # ---------- operator actions ----------
    async def call(self, target: Optional[str] = None) -> None:
        """Offer a session to `target`, or to the whole room if None."""
        async with self.lock:
            if self._session is not None:
                logger.warning(f"Already {self._session.state}, ignoring call")
                return

            session = self._new_session(remote_conn_id=target)
            session.state = NegotiationState.OFFERING
            self.controls.in_call()

            try:
                pc = session.peer_connection
                await pc.setLocalDescription(await pc.createOffer())
                assert pc.localDescription is not None

                await self.signal.send_message(
                    OfferMessage(offer=_description(pc.localDescription), to=target)
                )
            except Exception:
                logger.exception("Failed to create offer")
                await self._close_session(session)
                return

            logger.info(f"Offer sent to {target or 'room'}")

    async def hangup(self) -> None:
        """Ends the current session. Does nothing when there is none."""
        async with self.lock:
            if self._session is None:
                return
            await self._close_session(self._session)

    # ---------- inbound signaling ----------
    async def handle_offer(self, message: RelayedOfferMessage) -> None:
        async with self.lock:
            if self._session is not None:
                logger.warning(
                    f"Ignoring offer from {message.from_} while {self._session.state}"
                )
                return

            session = self._new_session(remote_conn_id=message.from_)
            session.state = NegotiationState.ANSWERING
            self.controls.in_call()

            try:
                pc = session.peer_connection
                await self._set_remote_description(session, message.offer)
                await pc.setLocalDescription(await pc.createAnswer())
                assert pc.localDescription is not None

                session.state = NegotiationState.CONNECTING
                await self.signal.send_message(
                    AnswerMessage(
                        to=message.from_, answer=_description(pc.localDescription)
                    )
                )
            except Exception:
                logger.exception(f"Failed to answer offer from {message.from_}")
                await self._close_session(session)
                return

            logger.info(f"Answer sent to {message.from_}")

    async def handle_answer(self, message: RelayedAnswerMessage) -> None:
        async with self.lock:
            session = self._session
            if session is None or session.state != NegotiationState.OFFERING:
                logger.warning(
                    f"Ignoring answer from {message.from_} in state {self.state}"
                )
                return

            if session.remote_conn_id not in (None, message.from_):
                logger.warning(
                    f"Ignoring answer from {message.from_}, "
                    f"negotiating with {session.remote_conn_id}"
                )
                return

            # A room-wide offer is settled by whoever answers first.
            session.remote_conn_id = message.from_

            try:
                await self._set_remote_description(session, message.answer)
            except Exception:
                logger.exception(f"Failed to apply answer from {message.from_}")
                await self._close_session(session)
                return

            session.state = NegotiationState.CONNECTING

    async def handle_ice_candidate(self, message: RelayedIceCandidateMessage) -> None:
        async with self.lock:
            session = self._session
            if session is None:
                logger.debug(f"Dropping ICE candidate from {message.from_}: no session")
                return

            if session.remote_conn_id not in (None, message.from_):
                logger.debug(f"Dropping ICE candidate from unrelated {message.from_}")
                return

            try:
                candidate = parse_candidate(message.candidate)
            except ValueError as e:
                logger.warning(f"Dropping ICE candidate from {message.from_}: {e}")
                return

            if candidate is None:
                logger.debug(f"End of candidates from {message.from_}")
                return

            if not session.remote_description_set:
                session.pending_ice.append(candidate)
                return

            await self._apply_candidate(session, candidate)

    async def handle_peer_left(self, conn_id: str) -> None:
        async with self.lock:
            session = self._session
            if session is not None and session.remote_conn_id == conn_id:
                logger.info(f"Remote party {conn_id} left")
                await self._close_session(session)

    # ---------- peer connection callbacks ----------
    async def _on_local_candidate(
        self, session: PeerSession, candidate: Optional[RTCIceCandidate]
    ) -> None:
        if candidate is None:
            return  # Gathering complete

        async with self.lock:
            if session is not self._session:
                return

            await self.signal.send_message(
                IceCandidateMessage(
                    to=session.remote_conn_id, candidate=candidate_payload(candidate)
                )
            )

    async def _on_connection_state_change(self, session: PeerSession) -> None:
        async with self.lock:
            if session is not self._session:
                return

            connection_state = session.peer_connection.connectionState
            logger.info(f"Connection state: {connection_state}")

            if connection_state == "connected":
                session.state = NegotiationState.CONNECTED
            elif connection_state in TERMINAL_CONNECTION_STATES:
                await self._close_session(session)

    async def _on_track(self, session: PeerSession, track: MediaStreamTrack) -> None:
        async with self.lock:
            if session is not self._session:
                return

            logger.info(f"Received remote {track.kind} track")
            self.remote_tracks.append(track)

            if self.on_remote_track is not None:
                await self.on_remote_track(track)

    # ---------- internals ----------
    def _new_session(self, remote_conn_id: Optional[str]) -> PeerSession:
        pc = self.peer_connection_factory()
        session = PeerSession(peer_connection=pc, remote_conn_id=remote_conn_id)

        @pc.on("icecandidate")
        async def on_icecandidate(candidate: Optional[RTCIceCandidate]):
            await self._on_local_candidate(session, candidate)

        @pc.on("connectionstatechange")
        async def on_connectionstatechange():
            await self._on_connection_state_change(session)

        @pc.on("track")
        async def on_track(track: MediaStreamTrack):
            await self._on_track(session, track)

        for track in self.local_tracks:
            pc.addTrack(track)
        session.local_tracks_attached = bool(self.local_tracks)

        self._session = session
        return session

    async def _set_remote_description(
        self, session: PeerSession, description: SessionDescription
    ) -> None:
        await session.peer_connection.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )
        session.remote_description_set = True

        while session.pending_ice:
            await self._apply_candidate(session, session.pending_ice.popleft())

    async def _apply_candidate(
        self, session: PeerSession, candidate: RTCIceCandidate
    ) -> None:
        try:
            await session.peer_connection.addIceCandidate(candidate)
        except Exception as e:
            logger.warning(f"Could not apply ICE candidate: {e!r}")

    async def _close_session(self, session: PeerSession) -> None:
        """Caller holds the lock."""
        if session.is_closed:
            return

        session.state = NegotiationState.CLOSED
        session.pending_ice.clear()
        if session is self._session:
            self._session = None

        try:
            await session.peer_connection.close()
        except Exception:
            logger.exception("Error closing peer connection")

        self.remote_tracks.clear()
        self.controls.reset()

        if self.on_session_closed is not None:
            try:
                await self.on_session_closed()
            except Exception:
                logger.exception("Error releasing remote media")

        logger.info(f"Session with {session.remote_conn_id or 'room'} closed")

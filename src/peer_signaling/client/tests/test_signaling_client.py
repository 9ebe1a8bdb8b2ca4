import anyio
import pytest
from anyio import wait_all_tasks_blocked

from peer_signaling.client.candidates import parse_candidate
from peer_signaling.client.negotiator import PeerNegotiator
from peer_signaling.client.session import NegotiationState
from peer_signaling.client.signaling_client import SignalingClient
from peer_signaling.signaling.broadcaster import RoomBroadcaster
from peer_signaling.signaling.messages import (
    ChatBroadcastMessage,
    ChatMessage,
    ClientEnvelope,
    ErrorMessage,
    IceCandidatePayload,
    RelayedIceCandidateMessage,
    UserDisconnectedMessage,
    UserJoinedMessage,
)
from peer_signaling.signaling.registry import SessionRegistry
from peer_signaling.signaling.router import SignalingRouter
from peer_signaling.signaling.types import ConnId
from peer_signaling.tests.shared import (
    HOST_CANDIDATE,
    SRFLX_CANDIDATE,
    FakePeerConnectionFactory,
    FakeTrack,
    LoopbackSocket,
    RecordingSender,
)

pytestmark = pytest.mark.anyio

A = ConnId("alice-conn")
B = ConnId("bob-conn")


def make_router() -> SignalingRouter:
    return SignalingRouter(RoomBroadcaster(SessionRegistry()))


async def test_dispatch_tracks_peers():
    client = SignalingClient("ws://unused", "main")

    await client.dispatch(UserJoinedMessage(id="p1"))
    await client.dispatch(UserJoinedMessage(id="p2"))
    await client.dispatch(UserDisconnectedMessage(id="p1"))

    assert client.peers == {"p2"}
    assert client.peer_known.is_set()


async def test_dispatch_records_chat():
    client = SignalingClient("ws://unused", "main")

    await client.dispatch(
        ChatBroadcastMessage(senderId="p1", name="bob", message="hi", time=0)
    )
    await client.dispatch(
        ChatBroadcastMessage(senderId="p2", name="", message="yo", time=0)
    )

    assert client.chat_log == ["bob: hi", "p2: yo"]


async def test_dispatch_error_is_not_fatal():
    client = SignalingClient("ws://unused", "main")

    await client.dispatch(ErrorMessage(error_code="invalid_message", message="nope"))


async def test_negotiation_messages_reach_negotiator():
    client = SignalingClient("ws://unused", "main")
    negotiator = PeerNegotiator(RecordingSender(), FakePeerConnectionFactory())
    client.attach_negotiator(negotiator)

    # No session yet, candidate is dropped without error
    await client.dispatch(
        RelayedIceCandidateMessage(
            from_="p1", candidate=IceCandidatePayload(candidate=HOST_CANDIDATE)
        )
    )

    assert negotiator.state == NegotiationState.IDLE
    assert "p1" in client.peers


async def test_send_without_connection_is_dropped():
    client = SignalingClient("ws://unused", "main")

    # Must not raise
    await client.send_chat("hello")


async def test_serve_joins_room_and_skips_invalid_frames():
    router = make_router()
    socket = LoopbackSocket(router, A)
    await router.connect(A, socket)
    client = SignalingClient("ws://unused", "main", "alice")

    async with anyio.create_task_group() as tg:
        tg.start_soon(client.serve, socket)
        await wait_all_tasks_blocked()

        await socket.push_raw("this is not json")
        await socket.push_raw('{"message": {"type": "unheard-of"}}')
        await wait_all_tasks_blocked()

        await socket.hang_up()

    [join] = socket.sent
    assert ClientEnvelope.model_validate_json(join).message.type == "join-room"
    assert client.conn_id == A
    assert router.registry.members_of("main") == {A}


async def test_chat_between_clients():
    router = make_router()
    alice_socket, bob_socket = LoopbackSocket(router, A), LoopbackSocket(router, B)
    await router.connect(A, alice_socket)
    await router.connect(B, bob_socket)
    alice = SignalingClient("ws://unused", "main", "alice")
    bob = SignalingClient("ws://unused", "main", "bob")

    async with anyio.create_task_group() as tg:
        tg.start_soon(alice.serve, alice_socket)
        tg.start_soon(bob.serve, bob_socket)
        await wait_all_tasks_blocked()

        await alice.send_chat("  hello  ")
        await alice.send_chat("   ")
        await wait_all_tasks_blocked()

        await alice_socket.hang_up()
        await bob_socket.hang_up()

    assert alice.chat_log == ["Me: hello"]
    assert bob.chat_log == ["alice: hello"]
    sent = [ClientEnvelope.model_validate_json(m).message for m in alice_socket.sent]
    assert [m for m in sent if isinstance(m, ChatMessage)] == [
        ChatMessage(room="main", name="alice", message="hello")
    ]


async def test_full_call_between_two_clients():
    router = make_router()
    alice_socket, bob_socket = LoopbackSocket(router, A), LoopbackSocket(router, B)
    await router.connect(A, alice_socket)
    await router.connect(B, bob_socket)

    alice = SignalingClient("ws://unused", "main", "alice")
    bob = SignalingClient("ws://unused", "main", "bob")
    alice_pcs, bob_pcs = FakePeerConnectionFactory("a"), FakePeerConnectionFactory("b")
    alice_neg = PeerNegotiator(alice, alice_pcs)
    bob_neg = PeerNegotiator(bob, bob_pcs)
    alice.attach_negotiator(alice_neg)
    bob.attach_negotiator(bob_neg)

    async with anyio.create_task_group() as tg:
        tg.start_soon(alice.serve, alice_socket)
        await wait_all_tasks_blocked()
        tg.start_soon(bob.serve, bob_socket)
        await wait_all_tasks_blocked()

        # Alice was in the room first, so she hears about Bob
        assert alice.peers == {B}
        assert alice.peer_known.is_set()

        await alice_neg.call()
        await wait_all_tasks_blocked()

        # Bob got exactly one offer, from Alice, and answered it
        assert len(bob_pcs.created) == 1
        assert bob_neg.remote_conn_id == A
        assert bob_pcs.last.remoteDescription == alice_pcs.last.localDescription
        # Alice applied exactly that answer
        assert alice_pcs.last.remoteDescription == bob_pcs.last.localDescription
        assert alice_neg.remote_conn_id == B
        assert alice_neg.state == NegotiationState.CONNECTING
        assert bob_neg.state == NegotiationState.CONNECTING

        # Trickle ICE both ways
        await bob_pcs.last.fire(
            "icecandidate",
            parse_candidate(
                IceCandidatePayload(candidate=SRFLX_CANDIDATE, sdpMid="0", sdpMLineIndex=0)
            ),
        )
        await alice_pcs.last.fire(
            "icecandidate",
            parse_candidate(
                IceCandidatePayload(candidate=HOST_CANDIDATE, sdpMid="0", sdpMLineIndex=0)
            ),
        )
        await wait_all_tasks_blocked()

        assert [c.type for c in alice_pcs.last.candidates] == ["srflx"]
        assert [c.type for c in bob_pcs.last.candidates] == ["host"]

        remote_video = FakeTrack("video")
        await alice_pcs.last.fire("track", remote_video)
        await alice_pcs.last.set_connection_state("connected")
        await bob_pcs.last.set_connection_state("connected")
        assert alice_neg.state == NegotiationState.CONNECTED
        assert bob_neg.state == NegotiationState.CONNECTED
        assert alice_neg.remote_tracks == [remote_video]
        alice_session = alice_neg.session

        # Bob goes away
        await router.disconnect(B)
        await bob_socket.hang_up()
        await wait_all_tasks_blocked()

        assert alice_session is not None
        assert alice_session.state == NegotiationState.CLOSED
        assert alice_neg.state == NegotiationState.IDLE
        assert alice_neg.remote_tracks == []
        assert alice_neg.remote_conn_id is None
        assert alice_pcs.last.closed
        assert alice.peers == set()
        # Bob's side closed when its signaling connection ended
        assert bob_neg.state == NegotiationState.IDLE

        await alice_socket.hang_up()


async def test_late_joiner_learns_peer_from_chat():
    router = make_router()
    alice_socket, bob_socket = LoopbackSocket(router, A), LoopbackSocket(router, B)
    await router.connect(A, alice_socket)
    await router.connect(B, bob_socket)
    alice = SignalingClient("ws://unused", "main", "alice")
    bob = SignalingClient("ws://unused", "main", "bob")

    async with anyio.create_task_group() as tg:
        tg.start_soon(alice.serve, alice_socket)
        await wait_all_tasks_blocked()
        tg.start_soon(bob.serve, bob_socket)
        await wait_all_tasks_blocked()

        # Bob joined second, nobody announced Alice to him
        assert not bob.peer_known.is_set()

        await alice.send_chat("anyone there?")
        await wait_all_tasks_blocked()

        assert bob.peers == {A}
        assert bob.peer_known.is_set()

        await alice_socket.hang_up()
        await bob_socket.hang_up()

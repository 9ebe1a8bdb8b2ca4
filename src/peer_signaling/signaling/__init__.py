from peer_signaling.signaling.broadcaster import RoomBroadcaster
from peer_signaling.signaling.channel import SignalChannel
from peer_signaling.signaling.registry import SessionRegistry
from peer_signaling.signaling.router import SignalingRouter

__all__ = ["RoomBroadcaster", "SessionRegistry", "SignalChannel", "SignalingRouter"]

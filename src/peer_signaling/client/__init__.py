from peer_signaling.client.negotiator import PeerNegotiator
from peer_signaling.client.session import NegotiationState, PeerSession
from peer_signaling.client.signaling_client import SignalingClient

__all__ = ["NegotiationState", "PeerNegotiator", "PeerSession", "SignalingClient"]

"""Room-based WebRTC signaling server and peer negotiation client."""

__version__ = "1.0.0"

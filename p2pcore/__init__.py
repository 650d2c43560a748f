"""Peer-to-peer networking building blocks: multiaddrs, connection gating, identify messages and service, observed addresses and ping."""

__version__ = "0.1.0"
__all__ = [
    "conngater",
    "identify",
    "messages",
    "multiaddr",
    "network",
    "obsaddr",
    "peer_loop",
    "ping",
]
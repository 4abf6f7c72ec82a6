"""
UDP Rendezvous - NAT hole-punching rendezvous server and client.

This package provides:
- A dual-socket handshake that opens NAT bindings toward a rendezvous server
- A server leasing one port per session and sweeping dead sessions
- Ping/Pong liveness probing with a dead-connection watchdog
- A versioned msgpack packet codec
"""

__version__ = "0.1.0"

from udp_rendezvous.client import RendezvousClient
from udp_rendezvous.config import ClientConfig, ServerConfig
from udp_rendezvous.server import RendezvousServer

__all__ = ["RendezvousClient", "RendezvousServer", "ClientConfig", "ServerConfig"]

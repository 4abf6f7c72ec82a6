"""Datagram transport package."""
from udp_rendezvous.transport.udp_transport import (
    Address,
    DatagramEndpoint,
    DatagramProtocol,
    receive_loop,
)

__all__ = [
    'Address',
    'DatagramEndpoint',
    'DatagramProtocol',
    'receive_loop',
]

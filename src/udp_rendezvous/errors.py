"""
Exception types raised by the rendezvous protocol engine.
"""


class RendezvousError(Exception):
    """Base class for all rendezvous errors."""


class ConfigError(RendezvousError, ValueError):
    """Invalid configuration value."""


class PacketTooLarge(RendezvousError, ValueError):
    """Encoded packet does not fit in a single datagram buffer."""

    def __init__(self, size: int, limit: int):
        super().__init__(f"Encoded packet is {size} bytes, limit is {limit}")
        self.size = size
        self.limit = limit


class EndpointClosed(RendezvousError):
    """Raised by receive() and send() once a datagram endpoint is closed."""


class PoolExhausted(RendezvousError):
    """No free port is left in the ephemeral port pool."""

    def __init__(self, base: int, port_range: int):
        super().__init__(
            f"There are no more available ports in this port range "
            f"{base + 1}-{base + port_range} ({port_range})"
        )
        self.base = base
        self.port_range = port_range


class HandshakeError(RendezvousError):
    """The hole-punching handshake could not be completed."""


class HandshakeTimeout(HandshakeError):
    """The server never answered a Login within the retry budget."""

    def __init__(self, attempts: int, server_addr):
        super().__init__(
            f"No NewID received from {server_addr[0]}:{server_addr[1]} "
            f"after {attempts} Login attempts"
        )
        self.attempts = attempts
        self.server_addr = server_addr

"""
Ephemeral port pool leased to sessions.
"""
import threading
from typing import List, Set

from udp_rendezvous.errors import PoolExhausted


DEFAULT_PORT_RANGE = 50


class PortPool:
    """
    Bounded pool of ports in [base + 1, base + port_range].

    Owned by a server instance; safe to use from several threads.
    """

    def __init__(self, base: int, port_range: int = DEFAULT_PORT_RANGE):
        """
        Args:
            base: Port the range starts after (usually the well-known port)
            port_range: Number of ports in the pool
        """
        if port_range < 1:
            raise ValueError(f"port_range must be at least 1, got {port_range}")
        if base < 0 or base + port_range > 65535:
            raise ValueError(f"Port range {base + 1}-{base + port_range} is out of bounds")

        self.base = base
        self.port_range = port_range
        self._leased: Set[int] = set()
        self._lock = threading.Lock()

    def lease(self) -> int:
        """
        Lease the lowest free port.

        Raises:
            PoolExhausted: Every port in the range is leased
        """
        with self._lock:
            for port in range(self.base + 1, self.base + self.port_range + 1):
                if port not in self._leased:
                    self._leased.add(port)
                    return port
        raise PoolExhausted(self.base, self.port_range)

    def release(self, port: int):
        """Return a port to the pool. Releasing a free port is a no-op."""
        with self._lock:
            self._leased.discard(port)

    @property
    def leased(self) -> List[int]:
        with self._lock:
            return sorted(self._leased)

    @property
    def available(self) -> int:
        with self._lock:
            return self.port_range - len(self._leased)

    def __contains__(self, port: int) -> bool:
        with self._lock:
            return port in self._leased

    def __len__(self) -> int:
        with self._lock:
            return len(self._leased)

    def __repr__(self) -> str:
        return (f"PortPool({self.base + 1}-{self.base + self.port_range}, "
                f"leased={len(self)})")

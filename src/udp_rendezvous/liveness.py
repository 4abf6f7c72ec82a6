"""
Ping/Pong liveness probing over a datagram endpoint.
"""
import asyncio
import time
from typing import Optional

import structlog

from udp_rendezvous.protocol import Ping, Pong
from udp_rendezvous.transport import Address, DatagramEndpoint


# Seconds without a sign of life before a peer is considered dead
DEAD_CONNECTION_TIMEOUT = 10.0

# Minimum spacing between stay-alive probes
MIN_PROBE_INTERVAL = 0.1


class LivenessChannel:
    """
    Round-trip probing of one remote address.

    At most one Ping is outstanding at a time. While it is unanswered,
    send_ping() resends it unchanged; once its Pong arrives the next call
    mints a fresh Ping. Only the Pong answering the outstanding Ping counts
    as a sign of life.
    """

    def __init__(
        self,
        endpoint: DatagramEndpoint,
        remote_addr: Address,
        min_probe_interval: float = MIN_PROBE_INTERVAL
    ):
        """
        Args:
            endpoint: Endpoint Pings and Pongs are sent through
            remote_addr: Address probed by send_ping()
            min_probe_interval: Spam guard for stay_alive(), in seconds
        """
        self.endpoint = endpoint
        self.remote_addr = remote_addr
        self.min_probe_interval = min_probe_interval

        self.last_ping: Optional[Ping] = None
        self.last_pong: Optional[Pong] = None
        self.rtt: Optional[float] = None

        self._alive_at = time.monotonic()
        self._last_probe_at: Optional[float] = None

        self.logger = structlog.get_logger().bind(remote=f"{remote_addr[0]}:{remote_addr[1]}")

    @property
    def answered(self) -> bool:
        """Whether the most recent Ping has been answered."""
        return (
            self.last_ping is not None
            and self.last_pong is not None
            and self.last_pong.id == self.last_ping.id
        )

    @property
    def outstanding(self) -> bool:
        return self.last_ping is not None and not self.answered

    @property
    def seconds_since_alive(self) -> float:
        """Seconds since the last accepted Pong (or since the channel was armed)."""
        return time.monotonic() - self._alive_at

    def is_dead(self, timeout: float = DEAD_CONNECTION_TIMEOUT) -> bool:
        return self.seconds_since_alive > timeout

    def next_ping(self) -> Ping:
        """Return the Ping to send: the outstanding one, or a new one."""
        if self.last_ping is None or self.answered:
            self.last_ping = Ping()
        return self.last_ping

    def send_ping(self) -> Ping:
        ping = self.next_ping()
        self.endpoint.send(ping, self.remote_addr)
        return ping

    def answer(self, ping: Ping, addr: Optional[Address] = None) -> Pong:
        """Reply to a received Ping with a Pong of the same id."""
        pong = ping.to_pong()
        self.endpoint.send(pong, addr or self.remote_addr)
        return pong

    def accept_pong(self, pong: Pong) -> bool:
        """
        Register a received Pong.

        Returns:
            True if it answered the outstanding Ping; stale and duplicate
            Pongs return False and leave the channel untouched
        """
        if not self.outstanding or pong.id != self.last_ping.id:
            self.logger.debug("stale_pong_ignored", pong_id=pong.id)
            return False

        self.last_pong = pong
        self.rtt = max(0.0, time.time() - self.last_ping.sent_at)
        self._alive_at = time.monotonic()
        return True

    async def stay_alive(
        self,
        tries: int = 10,
        delay: float = 0.1,
        block_spam: bool = True
    ) -> bool:
        """
        Ping until answered.

        Args:
            tries: Maximum number of Pings to send
            delay: Seconds to wait for the Pong after each Ping
            block_spam: Refuse to probe within min_probe_interval of the last probe

        Returns:
            Whether a matching Pong arrived
        """
        now = time.monotonic()
        if (
            block_spam
            and self._last_probe_at is not None
            and now - self._last_probe_at < self.min_probe_interval
        ):
            return False

        for _ in range(tries):
            self._last_probe_at = time.monotonic()
            self.send_ping()

            await asyncio.sleep(delay)

            if self.answered:
                return True

        return False

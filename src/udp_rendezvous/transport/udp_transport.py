"""
Asyncio datagram endpoints carrying one protocol message per datagram.
"""
import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Tuple

import structlog

from udp_rendezvous.errors import EndpointClosed
from udp_rendezvous.events import Event
from udp_rendezvous.protocol import DEFAULT_BUFFER_SIZE, Malformed, Packet, encode


Address = Tuple[str, int]

_CLOSED = object()


class DatagramEndpoint:
    """
    A bound UDP socket with an awaitable receive().

    Datagrams are queued by the protocol handler as they arrive and decoded
    when received. Closing the endpoint wakes every pending receive() with
    EndpointClosed, which receive loops treat as their stop signal.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 0,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        name: str = "endpoint"
    ):
        """
        Initialize a datagram endpoint.

        Args:
            host: Host to bind to
            port: Port to bind to (0 for random)
            buffer_size: Largest datagram accepted or sent, in bytes
            name: Label used in log records
        """
        self.host = host
        self.port = port
        self.buffer_size = buffer_size
        self.name = name

        self.transport: Optional[asyncio.DatagramTransport] = None
        self.protocol: Optional["DatagramProtocol"] = None
        self._queue: Optional[asyncio.Queue] = None
        self._closed = False

        # Fires with (endpoint, exception) on socket-level failures
        self.on_error = Event(f"{name}.error")

        self.logger = structlog.get_logger().bind(endpoint=name)

        self.stats = {
            'packets_sent': 0,
            'packets_received': 0,
            'bytes_sent': 0,
            'bytes_received': 0,
            'malformed': 0,
            'errors': 0,
        }

    @property
    def local_address(self) -> Address:
        return (self.host, self.port)

    @property
    def is_open(self) -> bool:
        return (
            self.transport is not None
            and not self._closed
            and not self.transport.is_closing()
        )

    async def open(self):
        """Bind the socket. A closed or lost endpoint can be opened again."""
        loop = asyncio.get_running_loop()

        self._queue = asyncio.Queue()
        self._closed = False
        self.protocol = DatagramProtocol(self)

        self.transport, _ = await loop.create_datagram_endpoint(
            lambda: self.protocol,
            local_addr=(self.host, self.port)
        )

        # Get actual bound port
        sock = self.transport.get_extra_info('socket')
        if sock:
            self.port = sock.getsockname()[1]

        self.logger.debug("endpoint_opened", host=self.host, port=self.port)

    def close(self):
        """Close the socket. Pending and future receives raise EndpointClosed."""
        if self._closed:
            return
        self._closed = True

        if self.transport:
            self.transport.close()

        if self._queue is not None:
            self._queue.put_nowait(_CLOSED)

        self.logger.debug("endpoint_closed", port=self.port)

    def send(self, message: Any, addr: Address) -> int:
        """
        Send one message as one datagram.

        Args:
            message: Protocol message to send
            addr: Destination (host, port) tuple

        Returns:
            Number of bytes handed to the socket, 0 if the send failed
        """
        if not self.is_open:
            raise EndpointClosed(f"{self.name} is not open")

        data = encode(message, limit=self.buffer_size)

        try:
            self.transport.sendto(data, addr)
        except OSError as e:
            self._report_error(e)
            return 0

        self.stats['packets_sent'] += 1
        self.stats['bytes_sent'] += len(data)
        return len(data)

    async def receive(self, timeout: Optional[float] = None) -> Tuple[Packet, Address]:
        """
        Wait for the next datagram.

        Args:
            timeout: Seconds to wait (None waits until a datagram or close)

        Returns:
            (packet, source address); malformed datagrams have packet.ok False

        Raises:
            EndpointClosed: The endpoint was closed
            asyncio.TimeoutError: No datagram arrived within timeout
        """
        if self._closed or self._queue is None:
            raise EndpointClosed(f"{self.name} is not open")

        item = await asyncio.wait_for(self._queue.get(), timeout=timeout)

        if item is _CLOSED:
            # Wake the next waiter as well
            self._queue.put_nowait(_CLOSED)
            raise EndpointClosed(f"{self.name} was closed")

        data, addr = item
        self.stats['packets_received'] += 1
        self.stats['bytes_received'] += len(data)

        if len(data) > self.buffer_size:
            packet = Packet(
                message=Malformed(data, f"datagram exceeds {self.buffer_size} bytes"),
                raw=data,
                ok=False
            )
        else:
            packet = Packet.from_bytes(data)

        if not packet.ok:
            self.stats['malformed'] += 1

        return packet, addr

    def _connection_lost(self, exc: Optional[Exception]):
        # The transport is gone without close(), e.g. after a fatal send error
        if self._closed:
            return
        if exc is not None:
            self._report_error(exc)
        self.logger.warning("endpoint_lost", port=self.port)
        self.close()

    def _datagram_received(self, data: bytes, addr: Address):
        if not self._closed and self._queue is not None:
            self._queue.put_nowait((data, addr))

    def _report_error(self, exc: Exception):
        self.stats['errors'] += 1
        self.logger.warning("socket_error", port=self.port, error=str(exc))
        self.on_error.emit(self, exc)

    def get_stats(self) -> dict:
        return {**self.stats, 'port': self.port, 'open': self.is_open}

    def __repr__(self) -> str:
        return f"DatagramEndpoint({self.name}, {self.host}:{self.port})"


class DatagramProtocol(asyncio.DatagramProtocol):
    """Asyncio UDP protocol handler feeding a DatagramEndpoint."""

    def __init__(self, endpoint: DatagramEndpoint):
        self.endpoint = endpoint
        super().__init__()

    @property
    def current(self) -> bool:
        # False once the endpoint has been reopened on a new transport
        return self.endpoint.protocol is self

    def datagram_received(self, data: bytes, addr: Address):
        """Handle received datagram."""
        if self.current:
            self.endpoint._datagram_received(data, addr)

    def error_received(self, exc: Exception):
        """Handle error."""
        if self.current:
            self.endpoint._report_error(exc)

    def connection_lost(self, exc: Optional[Exception]):
        if self.current:
            self.endpoint._connection_lost(exc)


async def receive_loop(
    endpoint: DatagramEndpoint,
    handler: Callable[[Any, Address], Optional[Awaitable]],
    logger=None
):
    """
    Receive and dispatch datagrams until the endpoint is closed.

    Malformed datagrams are logged and dropped. Handler errors are logged and
    never stop the loop.

    Args:
        endpoint: Endpoint to receive on
        handler: Called with (message, addr) for each well-formed datagram
        logger: Logger to report through (defaults to the endpoint's)
    """
    logger = logger or endpoint.logger

    while True:
        try:
            packet, addr = await endpoint.receive()
        except EndpointClosed:
            logger.debug("receive_loop_stopped", port=endpoint.port)
            break

        if not packet.ok:
            logger.warning(
                "malformed_datagram_dropped",
                source=f"{addr[0]}:{addr[1]}",
                reason=packet.message.reason,
                size=len(packet.raw)
            )
            continue

        try:
            result = handler(packet.message, addr)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                "datagram_handler_error",
                source=f"{addr[0]}:{addr[1]}",
                message_type=packet.type.name,
                error=str(e)
            )

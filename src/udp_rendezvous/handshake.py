"""
Dual-socket UDP hole-punching handshake.

Client side::

    receiver --Login-------------------> server:well-known
    receiver <--NewID(id, leased)------- server:well-known
    sender   --NewID(id, leased)-------> server:leased

The echoed NewID arrives at the server from the client's NAT-mapped outbound
port. After it, the server can reach the client on both of its sockets:
receiver <-> well-known port and sender <-> leased port.
"""
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

import structlog

from udp_rendezvous.errors import EndpointClosed, HandshakeTimeout
from udp_rendezvous.events import Event
from udp_rendezvous.ports import PortPool
from udp_rendezvous.protocol import (
    DEFAULT_BUFFER_SIZE,
    UNKNOWN_NAME,
    Disconnect,
    Login,
    NewID,
    new_token,
)
from udp_rendezvous.sessions import Session, SessionDirectory
from udp_rendezvous.transport import Address, DatagramEndpoint


class HandshakeState(Enum):
    """Client handshake states."""
    INIT = "init"
    AWAITING_ID = "awaiting_id"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ClientHandshake:
    """
    Client side of the handshake.

    Sends Login from the receiver socket until a NewID arrives, then echoes the
    NewID from the sender socket to the announced server port.
    """

    def __init__(
        self,
        receiver: DatagramEndpoint,
        sender: DatagramEndpoint,
        server_addr: Address,
        display_name: str = UNKNOWN_NAME,
        retry_interval: float = 1.0,
        max_attempts: int = 10,
        echo_count: int = 3
    ):
        """
        Args:
            receiver: Socket that keeps the binding toward the well-known port
            sender: Socket used for steady-state traffic
            server_addr: Server's well-known (host, port)
            display_name: Name sent in Login
            retry_interval: Seconds to wait for NewID before resending Login
            max_attempts: Login attempts before giving up
            echo_count: Copies of the NewID echo to send
        """
        self.receiver = receiver
        self.sender = sender
        self.server_addr = server_addr
        self.display_name = display_name
        self.retry_interval = retry_interval
        self.max_attempts = max_attempts
        self.echo_count = echo_count

        self.state = HandshakeState.INIT
        self.attempts = 0
        self.new_id: Optional[NewID] = None

        self.logger = structlog.get_logger().bind(
            component="client_handshake",
            server=f"{server_addr[0]}:{server_addr[1]}"
        )

    @property
    def server_session_addr(self) -> Optional[Address]:
        """Server's per-session (host, leased port), once known."""
        if self.new_id is None:
            return None
        return (self.server_addr[0], self.new_id.server_port)

    async def run(self) -> NewID:
        """
        Perform the handshake.

        Returns:
            The NewID assigned by the server

        Raises:
            HandshakeTimeout: No NewID arrived after max_attempts Logins
        """
        loop = asyncio.get_running_loop()
        self.state = HandshakeState.INIT
        self.new_id = None

        for attempt in range(1, self.max_attempts + 1):
            self.attempts = attempt
            self.receiver.send(Login(self.display_name), self.server_addr)
            self.state = HandshakeState.AWAITING_ID

            new_id = await self._await_new_id(loop.time() + self.retry_interval)
            if new_id is not None:
                self._confirm(new_id)
                return new_id

            self.logger.debug("login_retry", attempt=attempt)

        self.state = HandshakeState.FAILED
        self.logger.warning("handshake_failed", attempts=self.attempts)
        raise HandshakeTimeout(self.attempts, self.server_addr)

    async def _await_new_id(self, deadline: float) -> Optional[NewID]:
        loop = asyncio.get_running_loop()

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None

            try:
                packet, addr = await self.receiver.receive(timeout=remaining)
            except asyncio.TimeoutError:
                return None

            if not packet.ok:
                self.logger.warning(
                    "malformed_datagram_dropped",
                    source=f"{addr[0]}:{addr[1]}",
                    reason=packet.message.reason
                )
                continue

            if (addr[0], addr[1]) != tuple(self.server_addr):
                self.logger.warning(
                    "foreign_datagram_dropped",
                    source=f"{addr[0]}:{addr[1]}",
                    message_type=packet.type.name
                )
                continue

            if isinstance(packet.message, NewID):
                return packet.message

            self.logger.debug(
                "unexpected_packet_during_handshake",
                message_type=packet.type.name,
                source=f"{addr[0]}:{addr[1]}"
            )

    def _confirm(self, new_id: NewID):
        self.new_id = new_id
        target = self.server_session_addr

        for _ in range(self.echo_count):
            self.sender.send(new_id, target)

        self.state = HandshakeState.CONFIRMED
        self.logger.info(
            "handshake_confirmed",
            session_id=new_id.session_id,
            server_port=new_id.server_port,
            attempts=self.attempts
        )


@dataclass
class PendingHandshake:
    """A session waiting for its NewID echo."""
    session: Session
    new_id: NewID
    task: Optional[asyncio.Task] = None


class ServerHandshake:
    """
    Server side of the handshake.

    Each accepted Login leases a port, binds a socket on it and waits there
    for the client's echoed NewID. Confirmed sessions are inserted into the
    directory and announced through on_confirmed.
    """

    def __init__(
        self,
        listener: DatagramEndpoint,
        port_pool: PortPool,
        directory: SessionDirectory,
        host: str = "0.0.0.0",
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        confirmation_timeout: float = 10.0
    ):
        """
        Args:
            listener: The well-known socket
            port_pool: Pool ports are leased from
            directory: Directory confirmed sessions are added to
            host: Host leased sockets are bound to
            buffer_size: Datagram buffer size for leased sockets
            confirmation_timeout: Seconds to wait for the echo before
                discarding the half-open session
        """
        self.listener = listener
        self.port_pool = port_pool
        self.directory = directory
        self.host = host
        self.buffer_size = buffer_size
        self.confirmation_timeout = confirmation_timeout

        self.pending: Dict[Address, PendingHandshake] = {}
        self._opening: Set[Address] = set()

        # Fires with the session once it is in the directory
        self.on_confirmed = Event("session_confirmed")

        self.logger = structlog.get_logger().bind(component="server_handshake")

    def is_pending(self, addr: Address) -> bool:
        addr = (addr[0], addr[1])
        return addr in self.pending or addr in self._opening

    async def handle_login(self, login: Login, addr: Address) -> Optional[Session]:
        """
        Process a Login received on the well-known socket.

        Returns:
            The registered or pending session for addr (None if a socket for
            it is still being opened)

        Raises:
            PoolExhausted: A new session was needed and no port is free
        """
        addr = (addr[0], addr[1])

        session = self.directory.get_by_endpoint(addr)
        if session is not None:
            # The client lost track of its session; hand it the same one back
            session.display_name = login.display_name
            session.touch()
            self.listener.send(NewID(session.session_id, session.server_port), addr)
            return session

        pending = self.pending.get(addr)
        if pending is not None:
            # Our NewID was probably lost; answer the retransmitted Login again
            pending.session.display_name = login.display_name
            self.listener.send(pending.new_id, addr)
            return pending.session

        if addr in self._opening:
            return None

        return await self.begin(login, addr)

    async def begin(self, login: Login, addr: Address) -> Session:
        """Start a handshake for a new client."""
        self._opening.add(addr)
        try:
            endpoint, port = await self._open_leased_endpoint()
        finally:
            self._opening.discard(addr)

        session = Session(
            session_id=new_token(),
            receiver_endpoint=addr,
            server_port=port,
            endpoint=endpoint,
            display_name=login.display_name
        )
        pending = PendingHandshake(session, NewID(session.session_id, port))
        self.pending[addr] = pending
        pending.task = asyncio.create_task(self._await_confirmation(pending))

        self.listener.send(pending.new_id, addr)

        self.logger.info(
            "handshake_started",
            client=f"{addr[0]}:{addr[1]}",
            session_id=session.session_id,
            server_port=port,
            display_name=session.display_name
        )
        return session

    async def _open_leased_endpoint(self) -> Tuple[DatagramEndpoint, int]:
        unavailable: List[int] = []
        try:
            while True:
                port = self.port_pool.lease()
                endpoint = DatagramEndpoint(
                    self.host, port, self.buffer_size, name=f"session:{port}"
                )
                try:
                    await endpoint.open()
                    return endpoint, port
                except OSError as e:
                    # Held until the loop ends so it is not leased again
                    unavailable.append(port)
                    self.logger.warning("leased_port_unavailable", port=port, error=str(e))
        finally:
            for port in unavailable:
                self.port_pool.release(port)

    async def _await_confirmation(self, pending: PendingHandshake):
        session = pending.session
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.confirmation_timeout

        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError()

                packet, addr = await session.endpoint.receive(timeout=remaining)

                if not packet.ok:
                    self.logger.warning(
                        "malformed_datagram_dropped",
                        source=f"{addr[0]}:{addr[1]}",
                        reason=packet.message.reason
                    )
                    continue

                message = packet.message
                if isinstance(message, NewID) and message.session_id == session.session_id:
                    self._confirm(pending, addr)
                    return

                self.logger.debug(
                    "unexpected_packet_before_confirmation",
                    session_id=session.session_id,
                    message_type=packet.type.name
                )

        except asyncio.TimeoutError:
            self.logger.warning(
                "handshake_confirmation_timeout",
                session_id=session.session_id,
                client=f"{session.receiver_endpoint[0]}:{session.receiver_endpoint[1]}",
                timeout=self.confirmation_timeout
            )
            self._discard(session)
        except EndpointClosed:
            self._discard(session)
        finally:
            if self.pending.get(session.receiver_endpoint) is pending:
                del self.pending[session.receiver_endpoint]

    def _confirm(self, pending: PendingHandshake, addr: Address):
        session = pending.session
        session.confirm(addr[1])

        if not self.directory.add(session):
            self.logger.warning(
                "session_rejected",
                session_id=session.session_id,
                display_name=session.display_name,
                reason="duplicate"
            )
            self.listener.send(
                Disconnect(reason="duplicate session"),
                session.receiver_endpoint
            )
            self._discard(session)
            return

        self.logger.info(
            "session_confirmed",
            session_id=session.session_id,
            sender_port=session.sender_port,
            server_port=session.server_port
        )
        self.on_confirmed.emit(session)

    def _discard(self, session: Session):
        session.close()
        self.port_pool.release(session.server_port)

    async def cancel_all(self):
        """Abort every pending handshake, releasing its lease."""
        tasks = [p.task for p in self.pending.values() if p.task]
        for pending in list(self.pending.values()):
            self._discard(pending.session)
        for task in tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.pending.clear()

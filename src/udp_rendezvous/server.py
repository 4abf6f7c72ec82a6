"""
Rendezvous server: well-known socket, per-session leased sockets and the
session sweep.
"""
import asyncio
import time
from typing import Any, Dict, Optional

import structlog

from udp_rendezvous.config import ServerConfig
from udp_rendezvous.errors import EndpointClosed, PoolExhausted
from udp_rendezvous.events import Event
from udp_rendezvous.handshake import ServerHandshake
from udp_rendezvous.ports import PortPool
from udp_rendezvous.protocol import (
    Data,
    Disconnect,
    LoginRequest,
    MessageType,
    split_user_list,
)
from udp_rendezvous.sessions import Session, SessionDirectory
from udp_rendezvous.transport import Address, DatagramEndpoint, receive_loop


class RendezvousServer:
    """
    Accepts client handshakes and keeps the directory of live sessions.

    Every confirmed session owns a socket on a leased port; the client's
    sender socket talks to it while its receiver socket keeps talking to the
    well-known port.
    """

    def __init__(self, config: Optional[ServerConfig] = None):
        """
        Initialize the server.

        Args:
            config: Server configuration (uses defaults if not provided)
        """
        self.config = config or ServerConfig()
        self.config.validate()

        self.logger = structlog.get_logger().bind(component="rendezvous_server")

        # Initialized in start()
        self.listener: Optional[DatagramEndpoint] = None
        self.port_pool: Optional[PortPool] = None
        self.directory: Optional[SessionDirectory] = None
        self.handshake: Optional[ServerHandshake] = None

        # Fires with the session once its handshake completes
        self.on_new_client = Event("new_client")
        # Fires with (session, payload) for every Data packet
        self.on_data = Event("data")

        self._dispatch_task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._session_tasks: Dict[str, asyncio.Task] = {}
        self._running = False
        self._started_at: Optional[float] = None

        self.stats = {
            'logins': 0,
            'sessions_confirmed': 0,
            'sessions_expired': 0,
            'sessions_rejected_full': 0,
            'data_received': 0,
            'login_requests_sent': 0,
        }

    @property
    def address(self) -> Address:
        return self.listener.local_address if self.listener else (self.config.host, self.config.port)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def sessions(self):
        return list(self.directory) if self.directory else []

    async def start(self):
        """Bind the well-known socket and start the dispatch and sweep loops."""
        if self._running:
            return

        self.listener = DatagramEndpoint(
            self.config.host,
            self.config.port,
            self.config.buffer_size,
            name="listener"
        )
        await self.listener.open()
        self.listener.on_error.subscribe(self._on_socket_error)

        base = self.config.port_base
        if base is None:
            base = self.listener.port
        self.port_pool = PortPool(base, self.config.port_range)

        self.directory = SessionDirectory(self.port_pool)
        self.directory.on_removed.subscribe(self._on_session_removed)

        self.handshake = ServerHandshake(
            listener=self.listener,
            port_pool=self.port_pool,
            directory=self.directory,
            host=self.config.host,
            buffer_size=self.config.buffer_size,
            confirmation_timeout=self.config.confirmation_timeout
        )
        self.handshake.on_confirmed.subscribe(self._on_session_confirmed)

        self._running = True
        self._started_at = time.time()

        self._dispatch_task = asyncio.create_task(
            receive_loop(self.listener, self._handle_listener_message, self.logger)
        )
        self._sweep_task = asyncio.create_task(self._sweep_loop())

        self.logger.info(
            "server_started",
            host=self.listener.host,
            port=self.listener.port,
            port_pool=repr(self.port_pool)
        )

    async def stop(self):
        """Disconnect every client and close all sockets."""
        if not self._running:
            return
        self._running = False
        self.logger.info("server_stopping", sessions=len(self.directory))

        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass

        await self.handshake.cancel_all()

        for session in self.directory:
            self._send_quietly(session, Disconnect(reason="server stopping"))
        self.directory.clear()

        self.listener.close()

        tasks = list(self._session_tasks.values())
        if self._dispatch_task:
            tasks.append(self._dispatch_task)
        for task in tasks:
            try:
                await asyncio.wait_for(task, timeout=1.0)
            except asyncio.TimeoutError:
                task.cancel()
            except asyncio.CancelledError:
                pass
        self._session_tasks.clear()

        self.logger.info("server_stopped")

    def _on_socket_error(self, endpoint: DatagramEndpoint, exc: Exception):
        self.logger.warning("listener_socket_error", error=str(exc))

    def _on_session_confirmed(self, session: Session):
        self.stats['sessions_confirmed'] += 1
        self._session_tasks[session.session_id] = asyncio.create_task(
            receive_loop(
                session.endpoint,
                lambda message, addr: self._handle_session_message(session, message, addr),
                self.logger.bind(session_id=session.session_id)
            )
        )
        self.on_new_client.emit(session)

    def _on_session_removed(self, session: Session):
        # Closing the socket ends the session's receive loop by itself
        self._session_tasks.pop(session.session_id, None)

    async def _handle_listener_message(self, message: Any, addr: Address):
        if message.TYPE == MessageType.LOGIN:
            self.stats['logins'] += 1
            try:
                await self.handshake.handle_login(message, addr)
            except PoolExhausted as e:
                self.stats['sessions_rejected_full'] += 1
                self.logger.warning(
                    "login_rejected",
                    client=f"{addr[0]}:{addr[1]}",
                    error=str(e)
                )
                self.listener.send(Disconnect(reason="server full"), addr)
            return

        session = self.directory.get_by_endpoint(addr)
        self._dispatch(session, message, addr, self.listener)

    def _handle_session_message(self, session: Session, message: Any, addr: Address):
        if message.TYPE == MessageType.LOGIN:
            # Logins belong on the well-known port
            self.logger.debug("login_on_session_port", session_id=session.session_id)
            return
        self._dispatch(session, message, addr, session.endpoint)

    def _dispatch(
        self,
        session: Optional[Session],
        message: Any,
        addr: Address,
        endpoint: DatagramEndpoint
    ):
        """Handle a non-Login message received on endpoint from addr."""
        message_type = message.TYPE

        if message_type == MessageType.PING:
            if session is not None and session.liveness and endpoint is session.endpoint:
                session.liveness.answer(message, addr)
            else:
                endpoint.send(message.to_pong(), addr)
            if session is not None:
                session.touch()
            else:
                self._request_login(addr)

        elif message_type == MessageType.PONG:
            # Only the Pong answering our outstanding Ping is a sign of life
            if session is not None and session.liveness and session.liveness.accept_pong(message):
                session.touch()

        elif message_type == MessageType.DATA:
            if session is None:
                self._request_login(addr)
                return
            session.touch()
            self.stats['data_received'] += 1
            self.on_data.emit(session, message.payload)

        elif message_type == MessageType.DISCONNECT:
            if session is not None:
                self.logger.info(
                    "client_disconnected",
                    session=repr(session),
                    reason=message.reason
                )
                self.directory.remove(session)

        elif message_type == MessageType.USER_LIST_REQUEST:
            if session is None:
                self._request_login(addr)
                return
            session.touch()
            for reply in split_user_list(self.directory.to_user_list(), endpoint.buffer_size):
                endpoint.send(reply, addr)

        elif message_type == MessageType.NEW_ID:
            # Extra echo copies, or a re-handshake of a registered session
            if session is None or message.session_id != session.session_id:
                return
            session.touch()
            if endpoint is session.endpoint and addr != session.sender_endpoint:
                self.logger.info(
                    "sender_port_changed",
                    session_id=session.session_id,
                    old=session.sender_port,
                    new=addr[1]
                )
                session.confirm(addr[1])

        else:
            self.logger.debug(
                "unexpected_message",
                message_type=message_type.name,
                source=f"{addr[0]}:{addr[1]}"
            )

    def _request_login(self, addr: Address):
        if self.handshake.is_pending(addr):
            return
        self.stats['login_requests_sent'] += 1
        self.listener.send(LoginRequest(), addr)

    async def _sweep_loop(self):
        """Remove dead sessions periodically."""
        while self._running:
            try:
                await asyncio.sleep(self.config.sweep_interval)
                expired = self.directory.sweep(self.config.session_timeout)
                self.stats['sessions_expired'] += len(expired)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.logger.error("sweep_failed", error=str(e))

    def _send_quietly(self, session: Session, message: Any) -> bool:
        try:
            session.send(message)
            return True
        except (EndpointClosed, RuntimeError) as e:
            self.logger.debug("session_send_skipped", session_id=session.session_id, error=str(e))
            return False

    def send_to(self, session: Session, payload: Any) -> bool:
        """
        Send a payload to one session through its leased socket.

        Returns:
            False if the session's socket is gone or unconfirmed
        """
        return self._send_quietly(session, Data(payload=payload))

    def broadcast(self, payload: Any, exclude: Optional[Session] = None) -> int:
        """
        Send a payload to every confirmed session.

        Returns:
            Number of sessions the payload was sent to
        """
        sent = 0
        for session in self.directory:
            if session is exclude:
                continue
            if self.send_to(session, payload):
                sent += 1
        return sent

    async def probe(self, session: Session, tries: int = 10, delay: float = 0.1) -> bool:
        """
        Ping a session until it answers.

        Returns:
            Whether the client answered
        """
        if session.liveness is None or not session.connected:
            return False
        return await session.liveness.stay_alive(tries, delay)

    def get_stats(self) -> dict:
        """Get server statistics."""
        stats = {
            **self.stats,
            'address': f"{self.address[0]}:{self.address[1]}",
            'running': self._running,
            'uptime': time.time() - self._started_at if self._started_at else 0.0,
            'sessions': len(self.directory) if self.directory else 0,
            'pending_handshakes': len(self.handshake.pending) if self.handshake else 0,
            'leased_ports': len(self.port_pool) if self.port_pool else 0,
        }
        if self.listener:
            stats['listener'] = self.listener.get_stats()
        return stats

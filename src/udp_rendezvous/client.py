"""
Rendezvous client: two local sockets, the handshake, and the stay-alive
watchdog.
"""
import asyncio
import socket
import time
from typing import Any, Dict, List, Optional

import structlog

from udp_rendezvous.config import ClientConfig
from udp_rendezvous.errors import EndpointClosed, HandshakeError, RendezvousError
from udp_rendezvous.events import Event
from udp_rendezvous.handshake import ClientHandshake, HandshakeState
from udp_rendezvous.liveness import LivenessChannel
from udp_rendezvous.protocol import Data, Disconnect, MessageType, UserList, UserListRequest
from udp_rendezvous.transport import Address, DatagramEndpoint, receive_loop


class RendezvousClient:
    """
    Client of a rendezvous server.

    The receiver socket logs in and keeps the NAT binding toward the server's
    well-known port; the sender socket carries traffic to the port leased for
    this session. Both stay open for the life of the client.
    """

    def __init__(self, config: Optional[ClientConfig] = None):
        """
        Initialize the client.

        Args:
            config: Client configuration (uses defaults if not provided)
        """
        self.config = config or ClientConfig()
        self.config.validate()

        self.logger = structlog.get_logger().bind(component="rendezvous_client")

        self.receiver = DatagramEndpoint(
            self.config.bind_host,
            self.config.receiver_port,
            self.config.buffer_size,
            name="receiver"
        )
        self.sender = DatagramEndpoint(
            self.config.bind_host,
            self.config.sender_port,
            self.config.buffer_size,
            name="sender"
        )
        self.receiver.on_error.subscribe(self._on_socket_error)
        self.sender.on_error.subscribe(self._on_socket_error)

        self.handshake: Optional[ClientHandshake] = None
        self.liveness: Optional[LivenessChannel] = None
        self.receiver_liveness: Optional[LivenessChannel] = None
        self.session_id: Optional[str] = None
        self.server_session_addr: Optional[Address] = None
        self._server_ip: Optional[str] = None
        self._user_list_parts: Dict[int, List[dict]] = {}

        # Fires with the client after every successful handshake
        self.on_connected = Event("connected")
        # Fires with the payload of every Data packet
        self.on_data = Event("data")
        # Fires with a reason string when an established connection ends
        self.on_connection_lost = Event("connection_lost")
        # Fires with the exception when a handshake gives up
        self.on_connection_failed = Event("connection_failed")
        # Fires with the list of {session_id, display_name} dicts
        self.on_user_list = Event("user_list")

        self._connected = False
        self._closed = False
        self._auto_reconnect = False
        self._receive_tasks = []
        self._keepalive_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._handshake_lock: Optional[asyncio.Lock] = None

        self.stats = {
            'handshakes': 0,
            'reconnects': 0,
            'data_sent': 0,
            'data_received': 0,
            'foreign_dropped': 0,
        }

    @property
    def server_addr(self) -> Address:
        """Server's well-known endpoint, resolved to an IP once connecting."""
        return (self._server_ip or self.config.server_host, self.config.server_port)

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def display_name(self) -> str:
        return self.config.display_name

    async def connect(self) -> str:
        """
        Open both sockets and log in.

        Returns:
            The session id assigned by the server

        Raises:
            HandshakeTimeout: The server never answered
        """
        if self._closed:
            raise RendezvousError("Client is closed")
        if self._connected:
            return self.session_id

        if self._server_ip is None:
            self._server_ip = await self._resolve_server()

        await self._run_handshake()

        self._auto_reconnect = True
        if self._keepalive_task is None:
            self._keepalive_task = asyncio.create_task(self._keepalive_loop())

        return self.session_id

    async def _resolve_server(self) -> str:
        # Datagram sources are compared against the server's IP, not its name
        loop = asyncio.get_running_loop()
        infos = await loop.getaddrinfo(
            self.config.server_host,
            self.config.server_port,
            family=socket.AF_INET,
            type=socket.SOCK_DGRAM
        )
        return infos[0][4][0]

    async def _open_sockets(self):
        # Also reopens a socket whose transport was lost
        for endpoint in (self.receiver, self.sender):
            if not endpoint.is_open:
                await endpoint.open()

    async def _run_handshake(self):
        if self._handshake_lock is None:
            self._handshake_lock = asyncio.Lock()

        async with self._handshake_lock:
            # The handshake reads the receiver socket itself
            await self._stop_receive_loops()
            self._connected = False
            await self._open_sockets()

            self.handshake = ClientHandshake(
                receiver=self.receiver,
                sender=self.sender,
                server_addr=self.server_addr,
                display_name=self.config.display_name,
                retry_interval=self.config.login_retry_interval,
                max_attempts=self.config.max_login_attempts,
                echo_count=self.config.echo_count
            )
            self.stats['handshakes'] += 1

            try:
                new_id = await self.handshake.run()
            except HandshakeError as e:
                self.logger.warning("connection_failed", error=str(e))
                self.on_connection_failed.emit(e)
                raise

            self.session_id = new_id.session_id
            self.server_session_addr = self.handshake.server_session_addr
            self.liveness = LivenessChannel(self.sender, self.server_session_addr)
            self.receiver_liveness = LivenessChannel(self.receiver, self.server_addr)
            self._connected = True

            self._start_receive_loops()

        self.logger.info(
            "connected",
            session_id=self.session_id,
            server_port=self.server_session_addr[1],
            receiver_port=self.receiver.port,
            sender_port=self.sender.port
        )
        self.on_connected.emit(self)

    def _start_receive_loops(self):
        self._receive_tasks = [
            asyncio.create_task(receive_loop(
                self.receiver,
                lambda message, addr: self._handle_message(self.receiver, message, addr),
                self.logger
            )),
            asyncio.create_task(receive_loop(
                self.sender,
                lambda message, addr: self._handle_message(self.sender, message, addr),
                self.logger
            )),
        ]

    async def _stop_receive_loops(self):
        for task in self._receive_tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._receive_tasks = []

    def _handle_message(self, endpoint: DatagramEndpoint, message: Any, addr: Address):
        message_type = message.TYPE

        # The receiver only hears from the well-known port, the sender only
        # from the session's port
        channel = self.liveness if endpoint is self.sender else self.receiver_liveness
        if channel is None or (addr[0], addr[1]) != channel.remote_addr:
            self.stats['foreign_dropped'] += 1
            self.logger.warning(
                "foreign_datagram_dropped",
                socket=endpoint.name,
                source=f"{addr[0]}:{addr[1]}",
                message_type=message_type.name
            )
            return

        if message_type == MessageType.PING:
            channel.answer(message)

        elif message_type == MessageType.PONG:
            channel.accept_pong(message)

        elif message_type == MessageType.DATA:
            self.stats['data_received'] += 1
            self.on_data.emit(message.payload)

        elif message_type == MessageType.USER_LIST:
            self._collect_user_list(message)

        elif message_type == MessageType.LOGIN_REQUEST:
            self.logger.info("login_requested_by_server")
            self._lose_connection("login requested")
            self._schedule_reconnect()

        elif message_type == MessageType.DISCONNECT:
            self.logger.info("disconnected_by_server", reason=message.reason)
            self._auto_reconnect = False
            self._lose_connection(message.reason or "disconnected by server")

        elif message_type == MessageType.NEW_ID:
            # Resent NewID for a handshake that already completed
            pass

        else:
            self.logger.debug("unexpected_message", message_type=message_type.name)

    def _collect_user_list(self, message: UserList):
        """Reassemble a listing split over several UserList datagrams."""
        if message.part == 1 or any(
            n > message.parts for n in self._user_list_parts
        ):
            self._user_list_parts = {}
        self._user_list_parts[message.part] = message.users

        if len(self._user_list_parts) < message.parts:
            return

        users = [
            user
            for n in sorted(self._user_list_parts)
            for user in self._user_list_parts[n]
        ]
        self._user_list_parts = {}
        self.on_user_list.emit(users)

    def _on_socket_error(self, endpoint: DatagramEndpoint, exc: Exception):
        self._lose_connection(f"{endpoint.name} socket error: {exc}")

    def _lose_connection(self, reason: str):
        if not self._connected:
            return
        self._connected = False
        self.logger.warning("connection_lost", reason=reason, session_id=self.session_id)
        self.on_connection_lost.emit(reason)

    def _schedule_reconnect(self):
        if self._closed or (self._reconnect_task and not self._reconnect_task.done()):
            return
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self):
        self.stats['reconnects'] += 1
        try:
            await self._run_handshake()
        except (HandshakeError, EndpointClosed) as e:
            self.logger.debug("reconnect_failed", error=str(e))

    async def _keepalive_loop(self):
        """Probe the server and re-run the handshake when it goes silent."""
        while not self._closed:
            try:
                await asyncio.sleep(self.config.keepalive_interval)

                if self._reconnect_task and not self._reconnect_task.done():
                    continue

                if not self._connected:
                    if self._auto_reconnect:
                        self._schedule_reconnect()
                    continue

                if self.liveness.is_dead(self.config.dead_connection_timeout):
                    self._lose_connection("timeout")
                    self._schedule_reconnect()
                    continue

                # Keep the receiver's NAT binding open as well
                self.receiver_liveness.send_ping()

                await self.liveness.stay_alive(
                    tries=self.config.stay_alive_tries,
                    delay=self.config.stay_alive_delay
                )
            except asyncio.CancelledError:
                break
            except EndpointClosed as e:
                # A socket was lost; the next tick re-runs the handshake
                self._lose_connection(str(e))
            except Exception as e:
                self.logger.error("keepalive_failed", error=str(e))

    def _require_connection(self):
        if not self._connected:
            raise RendezvousError("Client is not connected")

    def send(self, payload: Any) -> int:
        """
        Send a payload to the server through the sender socket.

        Returns:
            Number of bytes sent
        """
        self._require_connection()
        sent = self.sender.send(Data(payload=payload), self.server_session_addr)
        if sent:
            self.stats['data_sent'] += 1
        return sent

    def request_user_list(self) -> int:
        """Ask the server for its session list. The reply fires on_user_list."""
        self._require_connection()
        return self.sender.send(UserListRequest(), self.server_session_addr)

    async def ping(self) -> Optional[float]:
        """
        Probe the server once.

        Returns:
            Round-trip time in seconds, None if unanswered
        """
        self._require_connection()
        if await self.liveness.stay_alive(
            tries=self.config.stay_alive_tries,
            delay=self.config.stay_alive_delay,
            block_spam=False
        ):
            return self.liveness.rtt
        return None

    async def close(self):
        """Tell the server goodbye and close both sockets."""
        if self._closed:
            return
        self._closed = True
        self._auto_reconnect = False

        if self._connected and self.sender.is_open:
            self.sender.send(Disconnect(reason="client closed"), self.server_session_addr)
        self._connected = False

        for task in (self._keepalive_task, self._reconnect_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        await self._stop_receive_loops()
        self.receiver.close()
        self.sender.close()

        self.logger.info("client_closed", session_id=self.session_id)

    def get_stats(self) -> dict:
        """Get client statistics."""
        return {
            **self.stats,
            'connected': self._connected,
            'session_id': self.session_id,
            'server': f"{self.server_addr[0]}:{self.server_addr[1]}",
            'server_session_port': self.server_session_addr[1] if self.server_session_addr else None,
            'handshake_state': self.handshake.state.value if self.handshake else HandshakeState.INIT.value,
            'rtt': self.liveness.rtt if self.liveness else None,
            'receiver': self.receiver.get_stats(),
            'sender': self.sender.get_stats(),
            'timestamp': time.time(),
        }

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

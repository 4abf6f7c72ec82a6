"""
Sessions and the server-side session directory.
"""
import threading
import time
from typing import Any, Dict, Iterator, List, Optional, Union

import structlog

from udp_rendezvous.events import Event
from udp_rendezvous.liveness import DEAD_CONNECTION_TIMEOUT, LivenessChannel
from udp_rendezvous.ports import PortPool
from udp_rendezvous.protocol import UNKNOWN_NAME
from udp_rendezvous.transport import Address, DatagramEndpoint


class Session:
    """
    A registered client as seen by the server.

    The client is reachable two ways: its receiver endpoint (which opened a
    NAT binding toward the well-known port) and its sender endpoint (which
    opened a binding toward this session's leased port). The sender port is
    only known once the client has echoed its NewID.
    """

    def __init__(
        self,
        session_id: str,
        receiver_endpoint: Address,
        server_port: int,
        endpoint: Optional[DatagramEndpoint] = None,
        display_name: str = UNKNOWN_NAME
    ):
        """
        Args:
            session_id: Unique session identifier
            receiver_endpoint: Source address of the client's Login
            server_port: Port leased to this session
            endpoint: Socket bound on the leased port
            display_name: Initial display name
        """
        self.session_id = session_id
        self.receiver_endpoint: Address = (receiver_endpoint[0], receiver_endpoint[1])
        self.server_port = server_port
        self.endpoint = endpoint
        self.sender_port: Optional[int] = None
        self.liveness: Optional[LivenessChannel] = None

        self.on_display_name_changed = Event("display_name_changed")

        self._display_name = UNKNOWN_NAME
        self.display_name = display_name

        self.created_at = time.time()
        self.last_packet_at = time.monotonic()
        self._closed = False

    @property
    def display_name(self) -> str:
        return self._display_name

    @display_name.setter
    def display_name(self, value: str):
        if not value or not value.strip() or value == self._display_name:
            return
        self._display_name = value
        self.on_display_name_changed.emit(self)

    @property
    def sender_endpoint(self) -> Optional[Address]:
        if self.sender_port is None:
            return None
        return (self.receiver_endpoint[0], self.sender_port)

    @property
    def confirmed(self) -> bool:
        return self.sender_port is not None

    @property
    def connected(self) -> bool:
        return not self._closed and (self.endpoint is None or self.endpoint.is_open)

    def confirm(self, sender_port: int):
        """Record the client's NAT-mapped outbound port."""
        self.sender_port = sender_port
        if self.endpoint is not None:
            self.liveness = LivenessChannel(self.endpoint, self.sender_endpoint)
        self.touch()

    def touch(self):
        """Restart the idle timer."""
        self.last_packet_at = time.monotonic()

    def idle_seconds(self) -> float:
        return time.monotonic() - self.last_packet_at

    def is_idle(self, timeout: float = DEAD_CONNECTION_TIMEOUT) -> bool:
        return self.idle_seconds() > timeout

    def matches_endpoint(self, addr: Address) -> bool:
        addr = (addr[0], addr[1])
        return addr == self.receiver_endpoint or addr == self.sender_endpoint

    def send(self, message: Any) -> int:
        """Send through the leased socket to the client's sender endpoint."""
        if self.endpoint is None or self.sender_endpoint is None:
            raise RuntimeError(f"Session {self.session_id} is not confirmed")
        return self.endpoint.send(message, self.sender_endpoint)

    def close(self):
        self._closed = True
        if self.endpoint is not None:
            self.endpoint.close()

    def to_dict(self) -> Dict[str, str]:
        return {"session_id": self.session_id, "display_name": self.display_name}

    def __repr__(self) -> str:
        receiver = f"{self.receiver_endpoint[0]}:{self.receiver_endpoint[1]}"
        return f"{self.display_name}#{self.session_id} ({receiver} & {self.sender_port})"


SessionTarget = Union[Session, str, tuple, int]


class SessionDirectory:
    """
    Ordered registry of confirmed sessions.

    Sessions are unique per session id, per receiver endpoint and per display
    name (the placeholder name excepted). Removing a session releases its
    leased port and closes its socket. Display-name subscribers registered on
    the directory are attached to every current and future member.
    """

    def __init__(self, port_pool: Optional[PortPool] = None):
        """
        Args:
            port_pool: Pool that leased ports are returned to on removal
        """
        self.port_pool = port_pool
        self._sessions: List[Session] = []
        self._lock = threading.RLock()

        self.on_added = Event("session_added")
        self.on_removed = Event("session_removed")
        self.on_list_changed = Event("session_list_changed")
        self.on_display_name_changed = Event(
            "display_name_changed",
            on_subscribe=self._attach_name_listener,
            on_unsubscribe=self._detach_name_listener
        )

        self.logger = structlog.get_logger().bind(component="session_directory")

    def _attach_name_listener(self, callback):
        for session in self:
            session.on_display_name_changed.subscribe(callback)

    def _detach_name_listener(self, callback):
        for session in self:
            session.on_display_name_changed.unsubscribe(callback)

    def add(self, session: Session) -> bool:
        """
        Insert a session.

        Returns:
            False (and does nothing) if a member already has the same session
            id, receiver endpoint, or non-placeholder display name
        """
        with self._lock:
            if self.get(session.session_id) is not None:
                return False
            if self._find(lambda s: s.receiver_endpoint == session.receiver_endpoint):
                return False
            if session.display_name != UNKNOWN_NAME and self.get_by_name(session.display_name):
                return False

            self._sessions.append(session)
            for callback in self.on_display_name_changed.subscribers:
                session.on_display_name_changed.subscribe(callback)

            self.on_added.emit(session)
            self.on_list_changed.emit(session)

        self.logger.info("session_added", session=repr(session), sessions=len(self))
        return True

    def remove(self, target: SessionTarget) -> bool:
        """
        Remove a session given the session itself, its id, one of its
        endpoints, or its index.

        Returns:
            False if no such session exists
        """
        with self._lock:
            session = self._resolve(target)
            if session is None:
                return False

            if self.port_pool is not None:
                self.port_pool.release(session.server_port)
            session.close()

            self.on_removed.emit(session)
            self.on_list_changed.emit(session)

            self._sessions.remove(session)
            for callback in self.on_display_name_changed.subscribers:
                session.on_display_name_changed.unsubscribe(callback)

        self.logger.info("session_removed", session=repr(session), sessions=len(self))
        return True

    def sweep(self, timeout: float = DEAD_CONNECTION_TIMEOUT) -> List[Session]:
        """
        Remove disconnected sessions and sessions idle longer than timeout.

        Returns:
            The removed sessions
        """
        with self._lock:
            expired = [
                s for s in self._sessions
                if not s.connected or s.is_idle(timeout)
            ]

        for session in expired:
            self.logger.info(
                "session_timed_out",
                session=repr(session),
                idle=round(session.idle_seconds(), 3),
                connected=session.connected
            )
            self.remove(session)

        return expired

    def clear(self):
        """Remove every session."""
        for session in list(self):
            self.remove(session)

    def _resolve(self, target: SessionTarget) -> Optional[Session]:
        if isinstance(target, Session):
            return target if target in self._sessions else None
        if isinstance(target, bool):
            return None
        if isinstance(target, int):
            if 0 <= target < len(self._sessions):
                return self._sessions[target]
            return None
        if isinstance(target, str):
            return self.get(target)
        if isinstance(target, tuple):
            return self.get_by_endpoint(target)
        return None

    def _find(self, predicate) -> Optional[Session]:
        with self._lock:
            for session in self._sessions:
                if predicate(session):
                    return session
        return None

    def get(self, session_id: str) -> Optional[Session]:
        return self._find(lambda s: s.session_id == session_id)

    def get_by_endpoint(self, addr: Address) -> Optional[Session]:
        """Find the session whose receiver or sender endpoint is addr."""
        return self._find(lambda s: s.matches_endpoint(addr))

    def get_by_name(self, display_name: str) -> Optional[Session]:
        name = display_name.lower()
        return self._find(lambda s: s.display_name.lower() == name)

    def get_by_socket(self, endpoint: DatagramEndpoint) -> Optional[Session]:
        return self._find(lambda s: s.endpoint is endpoint)

    def to_user_list(self) -> List[Dict[str, str]]:
        return [s.to_dict() for s in self]

    def __getitem__(self, index: int) -> Session:
        with self._lock:
            return self._sessions[index]

    def __iter__(self) -> Iterator[Session]:
        with self._lock:
            return iter(list(self._sessions))

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, target: SessionTarget) -> bool:
        with self._lock:
            return self._resolve(target) is not None

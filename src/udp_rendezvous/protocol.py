"""
Rendezvous protocol message types and datagram serialization.

Every datagram carries exactly one message, encoded as a msgpack map::

    {"v": PROTOCOL_VERSION, "t": <MessageType>, "f": {<fields>}}

The type tag lets a receiver dispatch without prior negotiation. Decoding never
raises: a datagram that cannot be understood decodes to a ``Malformed`` marker.
"""
from enum import IntEnum
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Tuple
import time
import uuid

import msgpack

from udp_rendezvous.errors import PacketTooLarge


PROTOCOL_VERSION = 1
DEFAULT_BUFFER_SIZE = 4096
UNKNOWN_NAME = "UNKNOWN"
MAX_DISPLAY_NAME = 64


class MessageType(IntEnum):
    """Types of messages in the rendezvous protocol."""
    LOGIN = 1
    NEW_ID = 2
    PING = 3
    PONG = 4
    DISCONNECT = 5
    DATA = 6
    LOGIN_REQUEST = 7
    USER_LIST_REQUEST = 8
    USER_LIST = 9


def new_token() -> str:
    """Generate an opaque unique identifier (session ids, ping ids)."""
    return uuid.uuid4().hex


def _field(data: Dict[str, Any], name: str, types, default=Ellipsis):
    """Fetch a field from a decoded map, checking its type."""
    if name not in data:
        if default is Ellipsis:
            raise KeyError(f"missing field '{name}'")
        return default
    value = data[name]
    # bool is an int subclass; no protocol field is boolean
    if isinstance(value, bool) or not isinstance(value, types):
        raise TypeError(f"field '{name}' has unexpected type {type(value).__name__}")
    return value


@dataclass
class Login:
    """Sent by a client's receiver socket to the server's well-known port."""
    display_name: str = UNKNOWN_NAME

    TYPE: ClassVar[MessageType] = MessageType.LOGIN

    def to_dict(self) -> Dict[str, Any]:
        return {"display_name": self.display_name}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Login":
        display_name = _field(data, "display_name", str)
        if len(display_name) > MAX_DISPLAY_NAME:
            raise ValueError(f"display_name longer than {MAX_DISPLAY_NAME} characters")
        return cls(display_name=display_name)


@dataclass
class NewID:
    """
    Session assignment sent by the server, echoed back by the client.

    The client echoes it from its sender socket to ``server_port`` so that the
    server can learn the client's NAT-mapped outbound port.
    """
    session_id: str
    server_port: int

    TYPE: ClassVar[MessageType] = MessageType.NEW_ID

    def to_dict(self) -> Dict[str, Any]:
        return {"session_id": self.session_id, "server_port": self.server_port}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NewID":
        server_port = _field(data, "server_port", int)
        if not 0 < server_port <= 65535:
            raise ValueError(f"server_port {server_port} out of range")
        return cls(session_id=_field(data, "session_id", str), server_port=server_port)


@dataclass
class Ping:
    """Liveness probe. Answered with a Pong carrying the same id."""
    id: str = field(default_factory=new_token)
    sent_at: float = field(default_factory=time.time)

    TYPE: ClassVar[MessageType] = MessageType.PING

    def to_pong(self) -> "Pong":
        """Create the Pong that answers this Ping."""
        return Pong(id=self.id)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "sent_at": self.sent_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Ping":
        return cls(
            id=_field(data, "id", str),
            sent_at=float(_field(data, "sent_at", (int, float))),
        )


@dataclass
class Pong:
    """Answer to a Ping."""
    id: str
    created_at: float = field(default_factory=time.time)

    TYPE: ClassVar[MessageType] = MessageType.PONG

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "created_at": self.created_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pong":
        return cls(
            id=_field(data, "id", str),
            created_at=float(_field(data, "created_at", (int, float))),
        )


@dataclass
class Disconnect:
    """Announces that the sender is tearing the session down."""
    reason: str = ""

    TYPE: ClassVar[MessageType] = MessageType.DISCONNECT

    def to_dict(self) -> Dict[str, Any]:
        return {"reason": self.reason}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Disconnect":
        return cls(reason=_field(data, "reason", str, default=""))


@dataclass
class Data:
    """Application-defined payload. Must be msgpack-representable."""
    payload: Any = None

    TYPE: ClassVar[MessageType] = MessageType.DATA

    def to_dict(self) -> Dict[str, Any]:
        return {"payload": self.payload}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Data":
        if "payload" not in data:
            raise KeyError("missing field 'payload'")
        return cls(payload=data["payload"])


@dataclass
class LoginRequest:
    """Sent by the server to an unknown sender of non-Login traffic."""

    TYPE: ClassVar[MessageType] = MessageType.LOGIN_REQUEST

    def to_dict(self) -> Dict[str, Any]:
        return {}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoginRequest":
        return cls()


@dataclass
class UserListRequest:
    """Asks the server for its directory listing."""

    TYPE: ClassVar[MessageType] = MessageType.USER_LIST_REQUEST

    def to_dict(self) -> Dict[str, Any]:
        return {}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserListRequest":
        return cls()


@dataclass
class UserList:
    """
    Directory listing: one {"session_id", "display_name"} map per session.

    A listing too large for one datagram is split into ``parts`` messages
    numbered from 1 (see split_user_list).
    """
    users: List[Dict[str, str]] = field(default_factory=list)
    part: int = 1
    parts: int = 1

    TYPE: ClassVar[MessageType] = MessageType.USER_LIST

    def to_dict(self) -> Dict[str, Any]:
        return {
            "users": [dict(u) for u in self.users],
            "part": self.part,
            "parts": self.parts,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserList":
        users = _field(data, "users", list)
        for user in users:
            if not isinstance(user, dict):
                raise TypeError("user entries must be maps")
            _field(user, "session_id", str)
            _field(user, "display_name", str)
        part = _field(data, "part", int, 1)
        parts = _field(data, "parts", int, 1)
        if not 1 <= part <= parts:
            raise ValueError(f"part {part} of {parts} out of range")
        return cls(users=users, part=part, parts=parts)


MESSAGE_CLASSES = {
    cls.TYPE: cls
    for cls in (
        Login, NewID, Ping, Pong, Disconnect, Data,
        LoginRequest, UserListRequest, UserList,
    )
}


@dataclass
class Malformed:
    """Marker produced when a datagram cannot be decoded."""
    raw: bytes
    reason: str


def encode(value: Any, limit: Optional[int] = DEFAULT_BUFFER_SIZE) -> bytes:
    """
    Serialize a message to a single datagram.

    Args:
        value: A message instance (or a Packet wrapping one)
        limit: Maximum datagram size in bytes (None disables the check)

    Returns:
        Encoded datagram
    """
    if isinstance(value, Packet):
        value = value.message

    message_type = getattr(type(value), "TYPE", None)
    if message_type not in MESSAGE_CLASSES:
        raise TypeError(f"Cannot encode {type(value).__name__}: not a protocol message")

    data = msgpack.packb(
        {"v": PROTOCOL_VERSION, "t": int(message_type), "f": value.to_dict()},
        use_bin_type=True,
    )
    if limit is not None and len(data) > limit:
        raise PacketTooLarge(len(data), limit)
    return data


def split_user_list(
    users: List[Dict[str, str]],
    limit: int = DEFAULT_BUFFER_SIZE
) -> List[UserList]:
    """
    Pack a directory listing into UserList messages that each encode within
    limit bytes. An empty listing still yields one message.

    Raises:
        PacketTooLarge: A single entry does not fit on its own
    """
    def size(entries):
        # Widest part numbers, so numbering the chunks never grows them
        return len(encode(UserList(entries, 0xFFFF, 0xFFFF), limit=None))

    chunks: List[List[Dict[str, str]]] = [[]]
    for user in users:
        if size(chunks[-1] + [user]) <= limit:
            chunks[-1].append(user)
            continue
        alone = size([user])
        if alone > limit:
            raise PacketTooLarge(alone, limit)
        chunks.append([user])

    return [
        UserList(users=chunk, part=n, parts=len(chunks))
        for n, chunk in enumerate(chunks, start=1)
    ]


def decode(data: bytes) -> Tuple[Any, bool]:
    """
    Deserialize a datagram.

    Returns:
        (message, True) on success, (Malformed, False) otherwise
    """
    raw = bytes(data)
    if not raw:
        return Malformed(raw, "empty datagram"), False

    try:
        envelope = msgpack.unpackb(raw, raw=False)
    except Exception as e:
        return Malformed(raw, f"undecodable: {e}"), False

    if not isinstance(envelope, dict):
        return Malformed(raw, "envelope is not a map"), False

    version = envelope.get("v")
    if version != PROTOCOL_VERSION:
        return Malformed(raw, f"unsupported protocol version {version!r}"), False

    tag = envelope.get("t")
    try:
        message_cls = MESSAGE_CLASSES[MessageType(tag)]
    except (ValueError, TypeError):
        return Malformed(raw, f"unknown message type {tag!r}"), False

    fields = envelope.get("f", {})
    if not isinstance(fields, dict):
        return Malformed(raw, "fields are not a map"), False

    try:
        return message_cls.from_dict(fields), True
    except (KeyError, TypeError, ValueError) as e:
        return Malformed(raw, f"invalid {message_cls.__name__}: {e}"), False


@dataclass
class Packet:
    """A decoded datagram together with its raw bytes."""
    message: Any
    raw: bytes = b""
    ok: bool = True

    @property
    def type(self) -> Optional[MessageType]:
        """Message type tag, None for malformed packets."""
        if not self.ok:
            return None
        return getattr(type(self.message), "TYPE", None)

    @classmethod
    def from_bytes(cls, data: bytes) -> "Packet":
        """Decode a datagram. Never raises."""
        message, ok = decode(data)
        return cls(message=message, raw=bytes(data), ok=ok)

    @classmethod
    def from_message(cls, message: Any) -> "Packet":
        """Wrap a message, encoding it to fill ``raw``."""
        return cls(message=message, raw=encode(message, limit=None))

    def to_bytes(self) -> bytes:
        return encode(self.message)

    def __repr__(self) -> str:
        kind = self.type.name if self.type is not None else "MALFORMED"
        return f"Packet(type={kind}, len={len(self.raw)})"

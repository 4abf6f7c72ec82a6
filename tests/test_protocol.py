"""
Unit tests for the protocol module.
"""
import pytest
import msgpack

from udp_rendezvous.errors import PacketTooLarge
from udp_rendezvous.protocol import (
    MAX_DISPLAY_NAME,
    PROTOCOL_VERSION,
    UNKNOWN_NAME,
    Data,
    Disconnect,
    Login,
    LoginRequest,
    Malformed,
    MessageType,
    NewID,
    Packet,
    Ping,
    Pong,
    UserList,
    UserListRequest,
    decode,
    encode,
    new_token,
    split_user_list,
)


def _raw(envelope):
    return msgpack.packb(envelope, use_bin_type=True)


class TestMessages:
    """Test message construction and helpers."""

    def test_login_defaults_to_placeholder_name(self):
        """Test Login without a name uses the placeholder."""
        assert Login().display_name == UNKNOWN_NAME

    def test_ping_ids_are_unique(self):
        """Test every new Ping gets a fresh id."""
        assert Ping().id != Ping().id

    def test_to_pong_copies_id(self):
        """Test a Ping's Pong carries the same id."""
        ping = Ping()
        pong = ping.to_pong()

        assert isinstance(pong, Pong)
        assert pong.id == ping.id

    def test_new_token_is_hex(self):
        """Test tokens are 32 hex characters."""
        token = new_token()
        assert len(token) == 32
        int(token, 16)


class TestCodec:
    """Test encode/decode."""

    @pytest.mark.parametrize("message", [
        Login("alice"),
        NewID("abc123", 9001),
        Ping(),
        Disconnect("bye"),
        Data({"text": "hello", "n": [1, 2, 3]}),
        LoginRequest(),
        UserListRequest(),
        UserList([{"session_id": "s1", "display_name": "alice"}]),
        UserList([{"session_id": "s2", "display_name": "bob"}], part=2, parts=3),
    ])
    def test_round_trip(self, message):
        """Test decode(encode(m)) == m for every message kind."""
        decoded, ok = decode(encode(message))

        assert ok is True
        assert decoded == message

    def test_binary_payload_survives(self):
        """Test bytes payloads come back as bytes."""
        decoded, ok = decode(encode(Data(b"\x00\x01\xff")))

        assert ok
        assert decoded.payload == b"\x00\x01\xff"

    def test_envelope_layout(self):
        """Test the envelope carries version, tag and fields."""
        envelope = msgpack.unpackb(encode(NewID("s", 5)), raw=False)

        assert envelope == {
            "v": PROTOCOL_VERSION,
            "t": int(MessageType.NEW_ID),
            "f": {"session_id": "s", "server_port": 5},
        }

    def test_encode_rejects_non_messages(self):
        """Test encoding arbitrary objects raises TypeError."""
        with pytest.raises(TypeError):
            encode({"not": "a message"})

    def test_encode_enforces_limit(self):
        """Test oversized packets raise PacketTooLarge."""
        with pytest.raises(PacketTooLarge) as info:
            encode(Data("x" * 5000), limit=4096)

        assert info.value.limit == 4096
        assert info.value.size > 4096

    def test_encode_without_limit(self):
        """Test the limit can be disabled."""
        assert len(encode(Data("x" * 5000), limit=None)) > 5000

    @pytest.mark.parametrize("data", [
        b"",
        b"\xc1",
        b"not msgpack at all \xff\xfe",
        _raw([1, 2, 3]),
        _raw({"v": 99, "t": 1, "f": {"display_name": "a"}}),
        _raw({"v": PROTOCOL_VERSION, "t": 200, "f": {}}),
        _raw({"v": PROTOCOL_VERSION, "t": "LOGIN", "f": {}}),
        _raw({"v": PROTOCOL_VERSION, "t": 1, "f": "fields"}),
        _raw({"v": PROTOCOL_VERSION, "t": 2, "f": {"session_id": "s"}}),
        _raw({"v": PROTOCOL_VERSION, "t": 2, "f": {"session_id": "s", "server_port": "80"}}),
        _raw({"v": PROTOCOL_VERSION, "t": 2, "f": {"session_id": "s", "server_port": True}}),
        _raw({"v": PROTOCOL_VERSION, "t": 2, "f": {"session_id": "s", "server_port": 70000}}),
        _raw({"v": PROTOCOL_VERSION, "t": 2, "f": {"session_id": "s", "server_port": 0}}),
        _raw({"v": PROTOCOL_VERSION, "t": 2, "f": {"session_id": "s", "server_port": -1}}),
        _raw({"v": PROTOCOL_VERSION, "t": 1, "f": {"display_name": "x" * (MAX_DISPLAY_NAME + 1)}}),
        _raw({"v": PROTOCOL_VERSION, "t": 9, "f": {"users": [], "part": 3, "parts": 2}}),
        _raw({"v": PROTOCOL_VERSION, "t": 9, "f": {"users": [], "part": 0, "parts": 1}}),
        _raw({"v": PROTOCOL_VERSION, "t": 9, "f": {"users": [{"session_id": 1}]}}),
        _raw({"v": PROTOCOL_VERSION, "t": 6, "f": {}}),
    ])
    def test_malformed_never_raises(self, data):
        """Test undecodable datagrams yield a Malformed marker."""
        message, ok = decode(data)

        assert ok is False
        assert isinstance(message, Malformed)
        assert message.raw == data
        assert message.reason

    def test_missing_optional_field_uses_default(self):
        """Test Disconnect without a reason decodes."""
        message, ok = decode(_raw({"v": PROTOCOL_VERSION, "t": 5, "f": {}}))

        assert ok
        assert message == Disconnect("")


class TestUserListSplit:
    """Test packing a directory listing into datagrams."""

    @staticmethod
    def _users(count):
        return [
            {"session_id": new_token(), "display_name": f"user-with-longer-nm-{n:02d}"}
            for n in range(count)
        ]

    def test_empty_listing_is_one_message(self):
        """Test an empty directory still gets a reply."""
        assert split_user_list([]) == [UserList([], part=1, parts=1)]

    def test_small_listing_is_one_message(self):
        """Test a listing that fits stays in one datagram."""
        users = self._users(3)

        assert split_user_list(users) == [UserList(users, part=1, parts=1)]

    @pytest.mark.parametrize("limit", [512, 4096])
    def test_full_pool_fits_in_parts(self, limit):
        """Test fifty long names are split into datagrams within the limit."""
        users = self._users(50)

        parts = split_user_list(users, limit)

        assert len(parts) > 1
        assert [p.part for p in parts] == list(range(1, len(parts) + 1))
        assert all(p.parts == len(parts) for p in parts)
        assert all(len(encode(p, limit=None)) <= limit for p in parts)
        assert [u for p in parts for u in p.users] == users

    def test_oversized_entry_raises(self):
        """Test an entry that cannot fit on its own is refused."""
        users = [{"session_id": "s", "display_name": "x" * 1000}]

        with pytest.raises(PacketTooLarge):
            split_user_list(users, limit=512)


class TestPacket:
    """Test the Packet wrapper."""

    def test_from_bytes(self):
        """Test wrapping a decoded datagram."""
        data = encode(Login("bob"))
        packet = Packet.from_bytes(data)

        assert packet.ok
        assert packet.type == MessageType.LOGIN
        assert packet.raw == data
        assert packet.message.display_name == "bob"

    def test_malformed_packet_has_no_type(self):
        """Test malformed packets report no type."""
        packet = Packet.from_bytes(b"garbage")

        assert not packet.ok
        assert packet.type is None
        assert "MALFORMED" in repr(packet)

    def test_from_message(self):
        """Test wrapping an outgoing message."""
        packet = Packet.from_message(Ping())

        assert packet.type == MessageType.PING
        assert packet.to_bytes() == packet.raw
        assert encode(packet) == packet.raw

"""
End-to-end tests of the client against a live server on loopback.
"""
import asyncio

import pytest
import pytest_asyncio

from udp_rendezvous.client import RendezvousClient
from udp_rendezvous.config import ClientConfig, ServerConfig
from udp_rendezvous.errors import HandshakeTimeout, RendezvousError
from udp_rendezvous.handshake import HandshakeState
from udp_rendezvous.protocol import Disconnect, LoginRequest, new_token
from udp_rendezvous.server import RendezvousServer
from udp_rendezvous.sessions import Session
from udp_rendezvous.transport import DatagramEndpoint


def client_config(server: RendezvousServer, **overrides) -> ClientConfig:
    settings = dict(
        server_host="127.0.0.1",
        server_port=server.address[1],
        bind_host="127.0.0.1",
        login_retry_interval=0.2,
        max_login_attempts=5,
        keepalive_interval=0.1,
        stay_alive_tries=3,
        stay_alive_delay=0.05,
    )
    settings.update(overrides)
    return ClientConfig(**settings)


async def wait_for(predicate, timeout: float = 3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


@pytest_asyncio.fixture
async def server():
    """A running server on an ephemeral loopback port."""
    srv = RendezvousServer(ServerConfig(host="127.0.0.1", port=0, sweep_interval=0.1))
    await srv.start()
    yield srv
    await srv.stop()


@pytest_asyncio.fixture
async def client(server):
    """A client connected to the server fixture."""
    c = RendezvousClient(client_config(server, display_name="alice"))
    await c.connect()
    yield c
    await c.close()


class TestConnect:
    """Test establishing a session."""

    @pytest.mark.asyncio
    async def test_end_to_end_handshake(self, server, client):
        """Test Login, NewID and echo leave one session with the sender's port."""
        await wait_for(lambda: len(server.directory) == 1)
        session = server.directory[0]

        assert client.connected
        assert client.handshake.state == HandshakeState.CONFIRMED
        assert client.session_id == session.session_id
        assert session.display_name == "alice"
        assert session.sender_port == client.sender.port
        assert session.receiver_endpoint == client.receiver.local_address
        assert client.server_session_addr == ("127.0.0.1", session.server_port)

    @pytest.mark.asyncio
    async def test_ping_round_trip(self, client):
        """Test the client's Ping is answered through the leased port."""
        rtt = await client.ping()

        assert rtt is not None
        assert rtt >= 0

    @pytest.mark.asyncio
    async def test_connected_event(self, server):
        """Test on_connected fires with the client."""
        c = RendezvousClient(client_config(server))
        events = []
        c.on_connected.subscribe(events.append)

        await c.connect()
        await c.close()

        assert events == [c]

    @pytest.mark.asyncio
    async def test_no_server(self):
        """Test a missing server ends in HandshakeTimeout and on_connection_failed."""
        config = ClientConfig(
            server_host="127.0.0.1",
            server_port=9,
            bind_host="127.0.0.1",
            login_retry_interval=0.05,
            max_login_attempts=2
        )
        c = RendezvousClient(config)
        failures = []
        c.on_connection_failed.subscribe(failures.append)

        with pytest.raises(HandshakeTimeout):
            await c.connect()
        await c.close()

        assert len(failures) == 1
        assert not c.connected

    @pytest.mark.asyncio
    async def test_send_requires_connection(self, server):
        """Test sending before connect is refused."""
        c = RendezvousClient(client_config(server))

        with pytest.raises(RendezvousError):
            c.send("early")


class TestTraffic:
    """Test payload exchange."""

    @pytest.mark.asyncio
    async def test_client_to_server(self, server, client):
        """Test a payload sent by the client reaches on_data."""
        received = []
        server.on_data.subscribe(lambda session, payload: received.append(payload))

        client.send({"text": "hello"})
        await wait_for(lambda: received)

        assert received == [{"text": "hello"}]

    @pytest.mark.asyncio
    async def test_server_to_client(self, server, client):
        """Test broadcast payloads reach the client's on_data."""
        received = []
        client.on_data.subscribe(received.append)
        await wait_for(lambda: len(server.directory) == 1)

        server.broadcast("hi all")
        await wait_for(lambda: received)

        assert received == ["hi all"]

    @pytest.mark.asyncio
    async def test_user_list(self, server, client):
        """Test request_user_list fires on_user_list."""
        lists = []
        client.on_user_list.subscribe(lists.append)

        client.request_user_list()
        await wait_for(lambda: lists)

        assert lists[0] == [{"session_id": client.session_id, "display_name": "alice"}]

    @pytest.mark.asyncio
    async def test_two_clients_see_each_other(self, server, client):
        """Test the user list contains every connected client."""
        other = RendezvousClient(client_config(server, display_name="bob"))
        await other.connect()
        lists = []
        other.on_user_list.subscribe(lists.append)

        other.request_user_list()
        await wait_for(lambda: lists)

        names = sorted(user["display_name"] for user in lists[0])
        assert names == ["alice", "bob"]
        await other.close()

    @pytest.mark.asyncio
    async def test_full_directory_user_list(self, server, client):
        """Test a listing too big for one datagram arrives whole."""
        await wait_for(lambda: len(server.directory) == 1)
        for n in range(49):
            session = Session(
                new_token(),
                ("10.0.0.1", 40000 + n),
                server_port=0,
                display_name=f"user-with-longer-nm-{n:02d}"
            )
            session.confirm(50000 + n)
            assert server.directory.add(session)
        lists = []
        client.on_user_list.subscribe(lists.append)

        client.request_user_list()
        await wait_for(lambda: lists)
        await asyncio.sleep(0.1)

        assert len(lists) == 1
        assert len(lists[0]) == 50
        assert [u["session_id"] for u in lists[0]] == [s.session_id for s in server.directory]


class TestConnectionLoss:
    """Test disconnects and recovery."""

    @pytest.mark.asyncio
    async def test_close_removes_session(self, server):
        """Test closing the client removes its session on the server."""
        c = RendezvousClient(client_config(server))
        await c.connect()
        await wait_for(lambda: len(server.directory) == 1)

        await c.close()
        await wait_for(lambda: len(server.directory) == 0)

        assert len(server.port_pool) == 0

    @pytest.mark.asyncio
    async def test_server_stop_is_reported(self, client, server):
        """Test a server Disconnect fires on_connection_lost."""
        reasons = []
        client.on_connection_lost.subscribe(reasons.append)

        await server.stop()
        await wait_for(lambda: reasons)

        assert reasons == ["server stopping"]
        assert not client.connected

    @pytest.mark.asyncio
    async def test_login_request_triggers_rehandshake(self, server, client):
        """Test a LoginRequest makes the client log in again."""
        connections = []
        client.on_connected.subscribe(connections.append)
        old_id = client.session_id

        await wait_for(lambda: len(server.directory) == 1)
        server.directory.remove(server.directory[0])
        server.listener.send(LoginRequest(), client.receiver.local_address)

        await wait_for(lambda: connections and client.connected)

        assert client.session_id != old_id
        await wait_for(lambda: server.directory.get(client.session_id) is not None)

    @pytest.mark.asyncio
    async def test_watchdog_recovers_lost_session(self, server):
        """Test the client re-handshakes after the server forgets it."""
        c = RendezvousClient(client_config(server, dead_connection_timeout=0.3))
        await c.connect()
        old_id = c.session_id
        await wait_for(lambda: len(server.directory) == 1)

        server.directory.remove(old_id)

        await wait_for(lambda: c.connected and c.session_id != old_id, timeout=5.0)
        await wait_for(lambda: server.directory.get(c.session_id) is not None)
        assert c.stats['reconnects'] >= 1

        await c.close()

    @pytest.mark.asyncio
    async def test_foreign_disconnect_ignored(self, client):
        """Test a Disconnect from a host other than the server is dropped."""
        intruder = DatagramEndpoint("127.0.0.1", 0, name="intruder")
        await intruder.open()
        reasons = []
        client.on_connection_lost.subscribe(reasons.append)

        intruder.send(Disconnect("spoofed"), client.receiver.local_address)
        intruder.send(Disconnect("spoofed"), client.sender.local_address)
        intruder.send(LoginRequest(), client.receiver.local_address)
        await wait_for(lambda: client.stats['foreign_dropped'] == 3)

        assert client.connected
        assert reasons == []
        assert await client.ping() is not None
        intruder.close()

    @pytest.mark.asyncio
    async def test_recovers_from_lost_sender_socket(self, server, client):
        """Test a sender socket killed by a fatal write is reopened and the session kept."""
        reasons = []
        client.on_connection_lost.subscribe(reasons.append)
        old_id = client.session_id
        await wait_for(lambda: len(server.directory) == 1)

        client.sender.transport.sendto(b"x", ("127.0.0.1", 70000))

        await wait_for(lambda: reasons)
        await wait_for(lambda: client.connected and client.sender.is_open)

        assert client.session_id == old_id
        assert len(server.directory) == 1
        assert server.directory[0].sender_port == client.sender.port
        assert await client.ping() is not None

    @pytest.mark.asyncio
    async def test_get_stats(self, client):
        """Test client statistics."""
        client.send("x")
        stats = client.get_stats()

        assert stats['connected'] is True
        assert stats['session_id'] == client.session_id
        assert stats['data_sent'] == 1
        assert stats['handshake_state'] == "confirmed"
        assert stats['sender']['packets_sent'] >= 4

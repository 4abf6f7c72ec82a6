#!/usr/bin/env python3
"""
Quick start script for trying UDP Rendezvous locally.
"""
import asyncio
import sys
from pathlib import Path

# Add src to path for development
sys.path.insert(0, str(Path(__file__).parent / "src"))

from udp_rendezvous import ClientConfig, RendezvousClient, RendezvousServer, ServerConfig
from udp_rendezvous.logs import configure_logging


async def run_demo():
    """Run a server and two clients on loopback."""

    print("=" * 60)
    print("UDP Rendezvous - Quick Start Demo")
    print("=" * 60)

    configure_logging("WARNING")

    server = RendezvousServer(ServerConfig(host="127.0.0.1", port=9000))
    clients = []

    @server.on_data.subscribe
    def relay(session, payload):
        print(f"  server <- {session.display_name}: {payload!r}")
        server.broadcast({"from": session.display_name, "text": payload}, exclude=session)

    try:
        print("\n[1/3] Starting server on 127.0.0.1:9000...")
        await server.start()
        print(f"✓ Server started, leasing ports {server.port_pool.base + 1}-"
              f"{server.port_pool.base + server.port_pool.port_range}")

        print("\n[2/3] Connecting alice and bob...")
        for name in ("alice", "bob"):
            client = RendezvousClient(ClientConfig(
                server_host="127.0.0.1",
                server_port=9000,
                bind_host="127.0.0.1",
                display_name=name
            ))
            client.on_data.subscribe(
                lambda payload, name=name: print(f"  {name} <- {payload!r}")
            )
            await client.connect()
            clients.append(client)
            print(f"✓ {name} connected (session {client.session_id[:8]}, "
                  f"server port {client.server_session_addr[1]})")

        await asyncio.sleep(0.5)

        print("\n[3/3] Exchanging messages through the server...")
        clients[0].send("hello from alice")
        clients[1].send("hi alice, bob here")
        await asyncio.sleep(0.5)

        rtt = await clients[0].ping()
        print(f"\nalice round trip: {rtt * 1000:.2f} ms" if rtt is not None else "\nalice ping lost")

        print("\nSessions:")
        for session in server.sessions:
            print(f"  {session!r}")

    finally:
        print("\nShutting down...")
        for client in clients:
            await client.close()
        await server.stop()
        print("✓ Done")


if __name__ == "__main__":
    try:
        asyncio.run(run_demo())
    except KeyboardInterrupt:
        print("\nInterrupted")

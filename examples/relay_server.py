"""
Example: Rendezvous server that relays every payload to the other clients.
"""
import asyncio

from udp_rendezvous import RendezvousServer, ServerConfig
from udp_rendezvous.logs import configure_logging


async def main():
    """Run a relaying rendezvous server."""
    config = ServerConfig(
        host="0.0.0.0",
        port=9000,
        port_range=50,
        log_level="INFO"
    )
    configure_logging(config.log_level)

    server = RendezvousServer(config)

    @server.on_new_client.subscribe
    def welcome(session):
        print(f"\n+ {session!r}")
        server.send_to(session, {"from": "server", "text": f"welcome {session.display_name}"})

    @server.on_data.subscribe
    def relay(session, payload):
        sent = server.broadcast({"from": session.display_name, "text": payload}, exclude=session)
        print(f"[{session.display_name}] {payload!r} -> {sent} client(s)")

    await server.start()
    server.directory.on_removed.subscribe(lambda session: print(f"\n- {session!r}"))

    print(f"\nRelay listening on {server.address[0]}:{server.address[1]}")
    print("Press Ctrl+C to stop")

    try:
        while True:
            await asyncio.sleep(10)
            stats = server.get_stats()
            print(f"sessions={stats['sessions']} pending={stats['pending_handshakes']} "
                  f"leased={stats['leased_ports']}")
    finally:
        await server.stop()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nStopped")

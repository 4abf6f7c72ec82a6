"""
Example: Chat client for the relay server example.
"""
import asyncio
import sys

from udp_rendezvous import ClientConfig, RendezvousClient
from udp_rendezvous.errors import HandshakeTimeout
from udp_rendezvous.logs import configure_logging


async def main(name: str, host: str = "127.0.0.1", port: int = 9000):
    """Log in and chat through the relay."""
    configure_logging("WARNING")

    client = RendezvousClient(ClientConfig(
        server_host=host,
        server_port=port,
        display_name=name
    ))

    client.on_data.subscribe(
        lambda payload: print(f"\n[{payload.get('from')}]: {payload.get('text')}")
        if isinstance(payload, dict) else print(f"\n{payload!r}")
    )
    client.on_user_list.subscribe(
        lambda users: print("\nOnline: " + ", ".join(u["display_name"] for u in users))
    )
    client.on_connection_lost.subscribe(lambda reason: print(f"\n! connection lost: {reason}"))
    client.on_connected.subscribe(lambda c: print(f"\n* connected as {c.display_name}"))

    try:
        await client.connect()
    except HandshakeTimeout as e:
        print(f"Could not reach {host}:{port}: {e}")
        await client.close()
        return

    print("Type messages ('/users' lists clients, '/quit' exits):")

    loop = asyncio.get_running_loop()
    try:
        while True:
            line = (await loop.run_in_executor(None, sys.stdin.readline)).strip()
            if line == "/quit":
                break
            if not line or not client.connected:
                continue
            if line == "/users":
                client.request_user_list()
            else:
                client.send(line)
    finally:
        await client.close()


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else "guest"))

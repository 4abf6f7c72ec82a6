"""
Command-line interface for the UDP rendezvous server and client.
"""
import asyncio
import click
import sys
from pathlib import Path
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from udp_rendezvous.client import RendezvousClient
from udp_rendezvous.config import ClientConfig, ServerConfig
from udp_rendezvous.errors import ConfigError, HandshakeError
from udp_rendezvous.logs import configure_logging
from udp_rendezvous.server import RendezvousServer


console = Console()


def _parse_address(value: str, default_port: int):
    host, _, port = value.rpartition(":")
    if not host:
        return value, default_port
    try:
        return host, int(port)
    except ValueError:
        raise click.BadParameter(f"Invalid address: {value}")


@click.group()
def main():
    """UDP Rendezvous - NAT hole-punching rendezvous server and client."""
    pass


@main.command()
@click.option("--config", "-c", type=click.Path(), help="Path to configuration file")
@click.option("--host", "-h", default=None, help="Host to bind to")
@click.option("--port", "-p", type=int, default=None, help="Well-known port")
@click.option("--port-range", "-r", type=int, default=None, help="Number of ports leased to sessions")
@click.option("--relay", is_flag=True, help="Forward every received payload to the other sessions")
@click.option("--status-interval", type=float, default=5.0, help="Seconds between session tables")
@click.option("--log-level", "-l", default=None, help="Log level")
@click.option("--log-file", default=None, help="Write logs to this file")
def serve(config, host, port, port_range, relay, status_interval, log_level, log_file):
    """Run a rendezvous server."""

    if config and Path(config).exists():
        server_config = ServerConfig.from_file(config)
        console.print(f"[green]Loaded configuration from {config}[/green]")
    else:
        server_config = ServerConfig()

    # Override with CLI arguments if provided
    if host is not None:
        server_config.host = host
    if port is not None:
        server_config.port = port
    if port_range is not None:
        server_config.port_range = port_range
    if log_level is not None:
        server_config.log_level = log_level
    if log_file is not None:
        server_config.log_file = log_file

    try:
        server_config.validate()
    except ConfigError as e:
        raise click.ClickException(str(e))

    configure_logging(server_config.log_level, server_config.log_file)

    console.print(Panel.fit(
        f"[bold cyan]Starting Rendezvous Server[/bold cyan]\n"
        f"Host: {server_config.host}\n"
        f"Port: {server_config.port}\n"
        f"Port Range: {server_config.port_range}\n"
        f"Relay: {'on' if relay else 'off'}",
        border_style="cyan"
    ))

    try:
        asyncio.run(_run_server(RendezvousServer(server_config), relay, status_interval))
    except KeyboardInterrupt:
        console.print("[yellow]Server stopped[/yellow]")


def _session_table(server: RendezvousServer) -> Table:
    table = Table(title="Sessions")
    table.add_column("Name", style="cyan")
    table.add_column("Session", style="dim")
    table.add_column("Receiver", style="blue")
    table.add_column("Sender Port", style="blue")
    table.add_column("Server Port", style="green")
    table.add_column("Idle", style="yellow")

    for session in server.sessions:
        table.add_row(
            session.display_name,
            session.session_id[:8],
            f"{session.receiver_endpoint[0]}:{session.receiver_endpoint[1]}",
            str(session.sender_port),
            str(session.server_port),
            f"{session.idle_seconds():.1f}s"
        )
    return table


async def _run_server(server: RendezvousServer, relay: bool, status_interval: float):
    """Run the server with a periodic session table."""
    await server.start()

    @server.on_new_client.subscribe
    def _announce(session):
        console.print(f"[green]New client:[/green] {session!r}")

    @server.on_data.subscribe
    def _print_data(session, payload):
        console.print(f"[cyan]{session.display_name}[/cyan]: {payload!r}")
        if relay:
            server.broadcast({"from": session.display_name, "payload": payload}, exclude=session)

    try:
        while True:
            await asyncio.sleep(status_interval)
            stats = server.get_stats()
            console.print(_session_table(server))
            console.print(f"[dim]Sessions: {stats['sessions']} | "
                          f"Pending: {stats['pending_handshakes']} | "
                          f"Leased Ports: {stats['leased_ports']}[/dim]")
    finally:
        await server.stop()


@main.command()
@click.argument("server")
@click.option("--config", "-c", type=click.Path(), help="Path to configuration file")
@click.option("--name", "-n", default=None, help="Display name")
@click.option("--log-level", "-l", default=None, help="Log level")
@click.option("--log-file", default=None, help="Write logs to this file")
def connect(server, config, name, log_level, log_file):
    """Connect to a rendezvous SERVER (host:port) and exchange payloads.

    Lines typed on stdin are sent to the server. "/users" requests the
    session list and "/quit" disconnects.
    """

    if config and Path(config).exists():
        client_config = ClientConfig.from_file(config)
    else:
        client_config = ClientConfig()

    client_config.server_host, client_config.server_port = _parse_address(
        server, client_config.server_port
    )
    if name is not None:
        client_config.display_name = name
    if log_level is not None:
        client_config.log_level = log_level
    if log_file is not None:
        client_config.log_file = log_file

    try:
        client_config.validate()
    except ConfigError as e:
        raise click.ClickException(str(e))

    configure_logging(client_config.log_level, client_config.log_file)

    try:
        asyncio.run(_run_client(RendezvousClient(client_config)))
    except KeyboardInterrupt:
        console.print("[yellow]Disconnected[/yellow]")


async def _run_client(client: RendezvousClient):
    """Log in, print what arrives and send what is typed."""

    @client.on_data.subscribe
    def _print_data(payload):
        console.print(f"[cyan]<[/cyan] {payload!r}")

    @client.on_user_list.subscribe
    def _print_users(users):
        table = Table(title="Users")
        table.add_column("Name", style="cyan")
        table.add_column("Session", style="dim")
        for user in users:
            table.add_row(user["display_name"], user["session_id"])
        console.print(table)

    @client.on_connection_lost.subscribe
    def _lost(reason):
        console.print(f"[red]Connection lost:[/red] {reason}")

    @client.on_connected.subscribe
    def _connected(c):
        console.print(f"[green]Connected[/green] as {c.display_name} (session {c.session_id})")

    try:
        await client.connect()
    except HandshakeError as e:
        console.print(f"[red]Could not connect: {e}[/red]")
        await client.close()
        return

    loop = asyncio.get_running_loop()
    try:
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            if line == "/quit":
                break
            if not client.connected:
                console.print("[yellow]Not connected, message dropped[/yellow]")
                continue
            if line == "/users":
                client.request_user_list()
            else:
                client.send(line)
    finally:
        await client.close()


@main.command("init-config")
@click.argument("output", type=click.Path())
@click.option("--client", is_flag=True, help="Write a client configuration instead of a server one")
@click.option("--port", "-p", type=int, default=9000, help="Well-known server port")
def init_config(output, client, port):
    """Generate a configuration file."""

    if client:
        config = ClientConfig(server_port=port)
    else:
        config = ServerConfig(port=port)

    config.to_file(output)
    kind = "Client" if client else "Server"
    console.print(f"[green]{kind} configuration saved to {output}[/green]")


@main.command()
def version():
    """Display version information."""
    from . import __version__
    console.print(f"[cyan]UDP Rendezvous v{__version__}[/cyan]")


if __name__ == "__main__":
    main()

"""
Configuration for rendezvous servers and clients.
"""
from dataclasses import asdict, dataclass
from typing import Optional
import json

from udp_rendezvous.errors import ConfigError
from udp_rendezvous.protocol import MAX_DISPLAY_NAME, UNKNOWN_NAME


def _check_port(name: str, value: int, allow_zero: bool = False):
    low = 0 if allow_zero else 1
    if not isinstance(value, int) or value < low or value > 65535:
        raise ConfigError(f"Invalid {name}: {value}")


def _check_positive(name: str, value: float):
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")


class _FileMixin:
    """JSON load/save shared by the config dataclasses."""

    @classmethod
    def from_file(cls, path: str):
        """Load configuration from a JSON file."""
        with open(path, "r") as f:
            data = json.load(f)
        try:
            return cls(**data)
        except TypeError as e:
            raise ConfigError(f"Invalid configuration in {path}: {e}") from e

    def to_file(self, path: str):
        """Save configuration to a JSON file."""
        with open(path, "w") as f:
            json.dump(asdict(self), f, indent=2)


@dataclass
class ServerConfig(_FileMixin):
    """Configuration for a rendezvous server."""

    # Well-known socket
    host: str = "0.0.0.0"
    port: int = 9000

    # Leased ports are port_base + 1 .. port_base + port_range.
    # None means the bound well-known port.
    port_base: Optional[int] = None
    port_range: int = 50

    # Session lifetime
    sweep_interval: float = 0.5  # Seconds between directory sweeps
    session_timeout: float = 10.0  # Seconds of silence before removal
    confirmation_timeout: float = 10.0  # Seconds to wait for the NewID echo

    buffer_size: int = 4096

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def validate(self) -> bool:
        """Validate configuration parameters."""
        _check_port("port", self.port, allow_zero=True)

        if self.port_range < 1:
            raise ConfigError(f"port_range must be at least 1, got {self.port_range}")

        if self.port_base is not None:
            _check_port("port_base", self.port_base, allow_zero=True)
            if self.port_base + self.port_range > 65535:
                raise ConfigError(
                    f"Port range {self.port_base + 1}-{self.port_base + self.port_range} "
                    f"is out of bounds"
                )
        elif self.port + self.port_range > 65535:
            raise ConfigError(f"port_range {self.port_range} overflows from port {self.port}")

        if not (0.1 <= self.sweep_interval <= 1.0):
            raise ConfigError("sweep_interval must be between 0.1 and 1.0 seconds")

        _check_positive("session_timeout", self.session_timeout)
        _check_positive("confirmation_timeout", self.confirmation_timeout)

        if self.buffer_size < 512:
            raise ConfigError(f"buffer_size must be at least 512, got {self.buffer_size}")

        return True


@dataclass
class ClientConfig(_FileMixin):
    """Configuration for a rendezvous client."""

    server_host: str = "127.0.0.1"
    server_port: int = 9000
    display_name: str = UNKNOWN_NAME

    # Local sockets, 0 picks an ephemeral port
    bind_host: str = "0.0.0.0"
    receiver_port: int = 0
    sender_port: int = 0

    # Handshake
    login_retry_interval: float = 1.0
    max_login_attempts: int = 10
    echo_count: int = 3

    # Liveness
    keepalive_interval: float = 1.0
    stay_alive_tries: int = 10
    stay_alive_delay: float = 0.1
    dead_connection_timeout: float = 10.0

    buffer_size: int = 4096

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def validate(self) -> bool:
        """Validate configuration parameters."""
        _check_port("server_port", self.server_port)
        _check_port("receiver_port", self.receiver_port, allow_zero=True)
        _check_port("sender_port", self.sender_port, allow_zero=True)

        if self.receiver_port and self.receiver_port == self.sender_port:
            raise ConfigError("receiver_port and sender_port must differ")

        if not self.server_host:
            raise ConfigError("server_host is required")

        if len(self.display_name) > MAX_DISPLAY_NAME:
            raise ConfigError(f"display_name must be at most {MAX_DISPLAY_NAME} characters")

        _check_positive("login_retry_interval", self.login_retry_interval)
        _check_positive("keepalive_interval", self.keepalive_interval)
        _check_positive("stay_alive_delay", self.stay_alive_delay)
        _check_positive("dead_connection_timeout", self.dead_connection_timeout)

        if self.max_login_attempts < 1:
            raise ConfigError("max_login_attempts must be at least 1")
        if self.stay_alive_tries < 1:
            raise ConfigError("stay_alive_tries must be at least 1")
        if self.echo_count < 1:
            raise ConfigError("echo_count must be at least 1")

        if self.buffer_size < 512:
            raise ConfigError(f"buffer_size must be at least 512, got {self.buffer_size}")

        return True

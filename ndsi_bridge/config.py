"""Bridge configuration, with overrides from NDSI_* environment variables."""

import os
import socket
import logging
from dataclasses import dataclass, field, asdict
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class BridgeConfig:
    """Runtime settings for the manager, sensors and service."""

    # Externally reachable IPv4 address; None means detect it
    listen_address: Optional[str] = None
    host_name: str = field(default_factory=socket.gethostname)

    # Capture pipeline
    queue_capacity: int = 5
    publish_timeout: float = 0.2     # seconds to wait for a queued capture
    exposure_debounce: float = 0.2   # seconds before applying an exposure write
    compression_level: int = 1       # zstd, speed over ratio

    # Service loop
    bind_timeout: float = 5.0        # seconds to wait for the loop to bind
    idle_wait: float = 0.05          # seconds to sleep when no sensor has data
    address_poll_interval: float = 2.0

    # Optional PUB endpoint for attach/detach announcements
    announce_endpoint: Optional[str] = None

    mock: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_env(cls, **overrides) -> "BridgeConfig":
        """Build a config from NDSI_* variables; keyword overrides win."""
        env = os.environ
        config = cls()

        if env.get("NDSI_LISTEN_ADDRESS"):
            config.listen_address = env["NDSI_LISTEN_ADDRESS"]
        if env.get("NDSI_HOST_NAME"):
            config.host_name = env["NDSI_HOST_NAME"]
        if env.get("NDSI_ANNOUNCE_ENDPOINT"):
            config.announce_endpoint = env["NDSI_ANNOUNCE_ENDPOINT"]
        config.mock = env.get("NDSI_MOCK", "0") == "1"

        for name, cast in [
            ("queue_capacity", int),
            ("publish_timeout", float),
            ("exposure_debounce", float),
            ("compression_level", int),
            ("bind_timeout", float),
            ("idle_wait", float),
            ("address_poll_interval", float),
        ]:
            raw = env.get(f"NDSI_{name.upper()}")
            if raw is None:
                continue
            try:
                setattr(config, name, cast(raw))
            except ValueError:
                logger.warning(f"Ignoring invalid NDSI_{name.upper()}={raw!r}")

        for key, value in overrides.items():
            if value is not None and hasattr(config, key):
                setattr(config, key, value)

        return config


def detect_listen_address(fallback: str = "127.0.0.1") -> str:
    """
    Best guess at this host's externally reachable IPv4 address.

    Connecting a UDP socket sends nothing; it only asks the kernel which
    interface would route to the target.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(("10.255.255.255", 1))
        return sock.getsockname()[0]
    except OSError:
        return fallback
    finally:
        sock.close()

import logging
import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

import paramiko

from key_fetcher import DEFAULT_FETCH_TIMEOUT, DEFAULT_KEYS_URL
from key_store import KeySet

LOGGER = logging.getLogger(__name__)

DEFAULT_BIND = ":2222"
DEFAULT_CHANNEL_TIMEOUT = 20.0
HOST_KEY_BITS = 2048


@dataclass(frozen=True)
class ServerConfig:
    """Everything the gateway needs, resolved once before it starts."""

    bind: str
    command: str
    args: Tuple[str, ...] = ()
    authorized_keys: KeySet = field(default_factory=KeySet)
    github_auth: bool = False
    keys_url: str = DEFAULT_KEYS_URL
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    host_key_path: Optional[str] = None
    channel_timeout: float = DEFAULT_CHANNEL_TIMEOUT

    @property
    def address(self) -> Tuple[str, int]:
        return parse_bind(self.bind)


def parse_bind(bind: str) -> Tuple[str, int]:
    """Split ``host:port`` into a socket address.

    An empty host (``:2222``) binds every interface; IPv6 hosts are written
    in brackets (``[::1]:2222``).
    """
    host, sep, port = bind.rpartition(":")
    if not sep:
        raise ValueError(f"bind address {bind!r} has no port")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port_num = int(port)
    except ValueError:
        raise ValueError(f"invalid port in bind address {bind!r}") from None
    if not 0 <= port_num <= 65535:
        raise ValueError(f"port out of range in bind address {bind!r}")
    return host or "0.0.0.0", port_num


def load_or_generate_host_key(path: Optional[str]) -> paramiko.PKey:
    """Load the RSA host key at ``path``, generating (and saving) one if missing."""
    if path and os.path.exists(path):
        LOGGER.info("Loading host key from %s", path)
        return paramiko.RSAKey(filename=path)

    key = paramiko.RSAKey.generate(HOST_KEY_BITS)
    if path:
        key.write_private_key_file(path)
        os.chmod(path, 0o600)
        LOGGER.info("Generated new host key at %s", path)
    else:
        LOGGER.warning("No host key path given, using an ephemeral host key")
    return key

"""Transport constants, addresses and network-name helpers."""

from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from typing import Union

from .utils import ascii_to_lower, ascii_to_upper

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

# -1: close after a single message, 0: close once the transaction ends,
# 1: keep connection idle after the transaction ends.
IDLE_CONNECTION = 1
TRANSPORT_BUFFER_READ_SIZE = 65535

MTU = 1500

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PROTOCOL = "UDP"

DEFAULT_UDP_PORT = 5060
DEFAULT_TCP_PORT = 5060
DEFAULT_TLS_PORT = 5061
DEFAULT_WS_PORT = 80
DEFAULT_WSS_PORT = 443

TRANSPORT_UDP = "UDP"
TRANSPORT_TCP = "TCP"
TRANSPORT_TLS = "TLS"
TRANSPORT_WS = "WS"
TRANSPORT_WSS = "WSS"

TRANSPORT_FIXED_LENGTH_MESSAGE = 0

_DEFAULT_PORTS = {
    "tls": DEFAULT_TLS_PORT,
    "tcp": DEFAULT_TCP_PORT,
    "udp": DEFAULT_UDP_PORT,
    "ws": DEFAULT_WS_PORT,
    "wss": DEFAULT_WSS_PORT,
}

_LOWER_NETWORKS = {"UDP": "udp", "TCP": "tcp", "TLS": "tls", "WS": "ws", "WSS": "wss"}
_UPPER_NETWORKS = {value: key for key, value in _LOWER_NETWORKS.items()}

_PORT_RE = re.compile(r"[+-]?[0-9]+", re.ASCII)


def default_port(transport: str) -> int:
    """Default port of a transport, falling back to the TCP port."""
    return _DEFAULT_PORTS.get(ascii_to_lower(transport), DEFAULT_TCP_PORT)


def join_host_port(host: str, port: int) -> str:
    """Combine host and port, bracketing IPv6 hosts."""
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _split_host_port(addr: str) -> tuple[str, str]:
    if addr.startswith("["):
        end = addr.find("]")
        if end < 0:
            raise ValueError(f"address {addr}: missing ']' in address")
        rest = addr[end + 1 :]
        if not rest:
            raise ValueError(f"address {addr}: missing port in address")
        if not rest.startswith(":") or ":" in rest[1:]:
            raise ValueError(f"address {addr}: unexpected text after host")
        host = addr[1:end]
        if "[" in host or "]" in host:
            raise ValueError(f"address {addr}: unexpected bracket in address")
        return host, rest[1:]
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"address {addr}: missing port in address")
    if ":" in host:
        raise ValueError(f"address {addr}: too many colons in address")
    if "[" in host or "]" in host or "]" in port:
        raise ValueError(f"address {addr}: unexpected bracket in address")
    return host, port


def parse_addr(addr: str) -> tuple[str, int]:
    """Split ``host:port`` into host and integer port; raise ValueError if malformed."""
    host, port = _split_host_port(addr)
    if not _PORT_RE.fullmatch(port):
        raise ValueError(f"address {addr}: invalid port {port!r}")
    return host, int(port)


def parse_ip(host: str) -> IPAddress | None:
    """Parse an IP literal, returning None when ``host`` is not one."""
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        return None


@dataclass
class Addr:
    """Network address: a resolved IP plus the hostname it came from."""

    ip: IPAddress | None = None
    port: int = 0
    hostname: str = ""

    def __str__(self) -> str:
        host = self.hostname if self.ip is None else str(self.ip)
        return join_host_port(host, self.port)


def is_reliable(network: str) -> bool:
    """False only for UDP."""
    return network not in ("udp", "UDP")


def network_to_lower(network: str) -> str:
    """Lower-case network name such as ``UDP`` to ``udp``."""
    return _LOWER_NETWORKS.get(network) or ascii_to_lower(network)


def network_to_upper(network: str) -> str:
    """Upper-case network name such as ``udp`` to ``UDP``."""
    return _UPPER_NETWORKS.get(network) or ascii_to_upper(network)
"""
Server endpoint resolution.

Turns ``ip`` or ``ip@port`` into exactly one connectable address. Only literal
IPv4/IPv6 addresses are accepted; host names are not looked up.
"""

import ipaddress
import logging
import socket
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

from unbound_control.errors import AddressError

DEFAULT_SERVER = "127.0.0.1"
PORT_MARKER = "@"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Endpoint:
    """A resolved transport address"""
    family: int
    address: str
    port: int

    @property
    def sockaddr(self) -> Union[Tuple[str, int], Tuple[str, int, int, int]]:
        """Address tuple for socket.connect()"""
        if self.family == socket.AF_INET6:
            return (self.address, self.port, 0, 0)
        return (self.address, self.port)

    def __str__(self) -> str:
        if self.family == socket.AF_INET6:
            return f"[{self.address}]:{self.port}"
        return f"{self.address}:{self.port}"


def _parse_ip(text: str) -> Union[ipaddress.IPv4Address, ipaddress.IPv6Address]:
    try:
        return ipaddress.ip_address(text.strip())
    except ValueError as e:
        raise AddressError(f"could not parse IP: {text!r}") from e


def _parse_port(text: str, value: str) -> int:
    if not (text.isascii() and text.isdigit()):
        raise AddressError(f"could not parse IP@port: {value!r} (bad port)")
    port = int(text)
    if not 1 <= port <= 65535:
        raise AddressError(f"could not parse IP@port: {value!r} (port out of range)")
    return port


def parse_endpoint(value: str, default_port: int) -> Endpoint:
    """Parse ``ip`` or ``ip@port`` into an Endpoint.

    Args:
        value: Address text, with an optional explicit port after '@'
        default_port: Port used when value has no '@'

    Raises:
        AddressError: the address or port is malformed
    """
    if not value or not value.strip():
        raise AddressError("empty server address")

    if PORT_MARKER in value:
        addr_text, _, port_text = value.partition(PORT_MARKER)
        port = _parse_port(port_text, value)
    else:
        addr_text = value
        port = default_port
        if not 1 <= port <= 65535:
            raise AddressError(f"default control port out of range: {port}")

    ip = _parse_ip(addr_text)
    family = socket.AF_INET6 if ip.version == 6 else socket.AF_INET
    # keep the scope id (fe80::1%eth0) that str(ip) preserves
    return Endpoint(family=family, address=str(ip), port=port)


def resolve_endpoint(
    server: Optional[str],
    control_interfaces: Sequence[str],
    default_port: int,
) -> Endpoint:
    """Pick the server address and resolve it.

    Uses ``server`` when given, otherwise the first configured control
    interface, otherwise loopback.
    """
    if not server:
        server = control_interfaces[0] if control_interfaces else DEFAULT_SERVER
    endpoint = parse_endpoint(server, default_port)
    logger.debug(f"Resolved server endpoint {server!r} -> {endpoint}")
    return endpoint

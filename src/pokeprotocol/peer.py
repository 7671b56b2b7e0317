"""
Peer Descriptor Module

Who a peer is on the network. A local descriptor owns the bound UDP socket;
a remote descriptor is only a name and an address.
"""

import errno
import socket
from dataclasses import dataclass, field
from typing import Optional, Tuple

from .config import DISCOVERY_PORT, DISCOVERY_PORT_RANGE
from .errors import PeerIOError

Address = Tuple[str, int]


@dataclass
class PeerDescriptor:
    """
    Identity of one peer.

    Attributes:
        name: Display (trainer) name
        address: (ip, port) the peer is reachable at
        sock: Bound socket, only set for the local peer
    """
    name: str
    address: Address
    sock: Optional[socket.socket] = field(default=None, repr=False, compare=False)

    @property
    def port(self) -> int:
        return self.address[1]

    def close(self):
        """Close the owned socket, if any."""
        if self.sock is not None:
            self.sock.close()
            self.sock = None

    @classmethod
    def remote(cls, name: str, address: Address) -> 'PeerDescriptor':
        return cls(name, (address[0], int(address[1])))


def bind_local(name: str, ip: str = "", port: int = DISCOVERY_PORT,
               attempts: int = DISCOVERY_PORT_RANGE,
               enable_broadcast: bool = True) -> PeerDescriptor:
    """
    Create and bind a UDP socket for a local peer.

    When the requested port is taken the next ones are tried, which is why
    discovery probes a small range of ports.

    Args:
        name: Trainer name of the local peer
        ip: Interface to bind; empty string binds all interfaces
        port: First port to try; 0 lets the OS pick
        attempts: Number of consecutive ports to try
        enable_broadcast: Allow sending to broadcast addresses

    Returns:
        Local PeerDescriptor owning the bound socket

    Raises:
        PeerIOError: No port in the range could be bound
    """
    last_error: Optional[OSError] = None
    candidates = [0] if port == 0 else range(port, port + max(1, attempts))

    for candidate in candidates:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            if enable_broadcast:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.bind((ip, candidate))
        except OSError as e:
            sock.close()
            last_error = e
            if e.errno == errno.EADDRINUSE:
                continue
            raise PeerIOError(f"Cannot bind {ip or '*'}:{candidate}: {e}") from e

        bound_ip, bound_port = sock.getsockname()[:2]
        return PeerDescriptor(name, (ip or bound_ip, bound_port), sock)

    raise PeerIOError(
        f"No free port in {port}-{port + attempts - 1}: {last_error}") from last_error


def local_ip() -> str:
    """
    Best guess at this machine's LAN address, used in I_AM_HOSTING.

    Falls back to loopback when no route is available.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # connect() on UDP only selects a route; nothing is sent
        sock.connect(("10.255.255.255", 1))
        return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"
    finally:
        sock.close()

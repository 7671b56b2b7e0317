"""
Protocol configuration.

All tunables live in one value that is passed to every component that needs
it, so two peers in the same process (as in the tests) never share switches.
"""

from dataclasses import dataclass, field
from typing import Dict, Tuple

DISCOVERY_PORT = 50000
DISCOVERY_PORT_RANGE = 11          # 50000..50010
DEFAULT_ACK_TIMEOUT = 0.5          # seconds
DEFAULT_MAX_RETRIES = 3
BOOST_ALLOCATION = 10
MAX_STICKER_BYTES = 10 * 1024 * 1024
MAX_DATAGRAM = 65535
MAX_UDP_PAYLOAD = 65507        # IPv4 limit for one datagram

DEFAULT_STICKERS: Dict[str, str] = {
    "/smile": ":)",
    "/laugh": "LOL",
    "/cool": "B)",
    "/angry": ">:(",
    "/sad": ":(",
    "/love": "<3",
    "/fire": "(~)",
    "/star": "*",
    "/thumbsup": "(Y)",
    "/thumbsdown": "(N)",
    "/hi": "o/",
    "/bye": "\\o",
    "/gg": "GG",
    "/nice": "Nice!",
    "/wow": "WOW!",
    "/ouch": "Ouch!",
    "/lucky": "Lucky!",
    "/unlucky": "Unlucky!",
    "/attack": ">>--->>",
    "/defend": "[SHIELD]",
    "/heal": "+HP+",
    "/critical": "***CRIT***",
    "/miss": "X MISS X",
    "/hit": "[HIT!]",
}


@dataclass
class ProtocolConfig:
    """
    Runtime settings for one peer.

    Attributes:
        verbose: Echo debug events to stdout
        ack_timeout: Seconds before an unacknowledged message is resent
        max_retries: Retransmissions allowed before a send is declared failed
        sweep_interval: Cadence of the retransmission sweep
        discovery_port: First well-known discovery port
        discovery_port_range: Number of consecutive discovery ports
        discovery_window: Seconds a discovering peer listens for hosts
        receive_poll: Select timeout used by blocking receive loops
        linger: Seconds spent acknowledging stragglers after game over
        boost_allocation: Total special attack + defense boost uses
        accept_spectators: Host admits spectators without asking
        stickers: Sticker command to glyph table
        max_sticker_bytes: Upper bound on decoded sticker payloads
    """
    verbose: bool = False
    ack_timeout: float = DEFAULT_ACK_TIMEOUT
    max_retries: int = DEFAULT_MAX_RETRIES
    sweep_interval: float = 0.1
    discovery_port: int = DISCOVERY_PORT
    discovery_port_range: int = DISCOVERY_PORT_RANGE
    discovery_window: float = 3.0
    receive_poll: float = 0.1
    linger: float = 1.0
    boost_allocation: int = BOOST_ALLOCATION
    accept_spectators: bool = True
    stickers: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_STICKERS))
    max_sticker_bytes: int = MAX_STICKER_BYTES

    @property
    def discovery_ports(self) -> Tuple[int, ...]:
        """All ports a host may have bound to."""
        return tuple(range(self.discovery_port,
                           self.discovery_port + self.discovery_port_range))

"""
Protocol Errors Module

Named failures raised by the protocol stack. Every condition that a caller
can reasonably recover from (unknown Pokémon, rejected handshake, lost
datagrams, calculation mismatch) gets its own exception type instead of
terminating the process.
"""

from typing import List, Optional


class ProtocolError(Exception):
    """Base class for all PokeProtocol failures."""


class UnknownPokemonError(ProtocolError, LookupError):
    """A peer referenced a Pokémon that is not in the local roster."""

    def __init__(self, name: str):
        super().__init__(f"Unknown Pokémon: {name}")
        self.name = name


class UnknownMoveError(ProtocolError, LookupError):
    """A peer announced a move its Pokémon does not know."""

    def __init__(self, move_name: str, pokemon_name: str):
        super().__init__(f"{pokemon_name} does not know {move_name}")
        self.move_name = move_name
        self.pokemon_name = pokemon_name


class HandshakeRejectedError(ProtocolError, ConnectionError):
    """The host explicitly declined a connection request."""

    def __init__(self, reason: Optional[str] = None):
        message = "Host declined the connection request"
        if reason:
            message += f": {reason}"
        super().__init__(message)
        self.reason = reason


class HandshakeTimeoutError(ProtocolError, TimeoutError):
    """The expected setup message did not arrive within the listen window."""


class DeliveryFailedError(ProtocolError, ConnectionError):
    """
    Reliable delivery gave up after exhausting its retry budget.

    Attributes:
        sequence_numbers: Sequence numbers that were never acknowledged
    """

    def __init__(self, sequence_numbers: List[int]):
        numbers = ", ".join(str(n) for n in sequence_numbers)
        super().__init__(f"No acknowledgement for message(s) {numbers}")
        self.sequence_numbers = list(sequence_numbers)


class CalculationDiscrepancyError(ProtocolError):
    """Attacker and defender computed different turn outcomes."""

    def __init__(self, discrepancy):
        super().__init__(f"Calculation discrepancy: {discrepancy.describe()}")
        self.discrepancy = discrepancy


class PeerIOError(ProtocolError, OSError):
    """Local socket failure; ends this peer's participation."""

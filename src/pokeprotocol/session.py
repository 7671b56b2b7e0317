"""
Battle Session Module

The per-match state shared by the turn flow: who is playing, the seeded
random source both players draw damage rolls from, whose turn it is and the
lifecycle state.
"""

import random
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from .battle import BattleState, CombatantState, TurnPhase
from .debug_logger import DebugLogger
from .peer import PeerDescriptor


class Side(Enum):
    """The two players of a session."""
    HOST = "HOST"
    JOINER = "JOINER"

    @property
    def other(self) -> 'Side':
        return Side.JOINER if self is Side.HOST else Side.HOST


class CommunicationMode(Enum):
    """How messages reach spectators; wire values of COMM_MODE."""
    P2P = "P"
    BROADCAST = "B"

    @classmethod
    def from_wire(cls, value: str) -> 'CommunicationMode':
        """
        Parse a wire token.

        Raises:
            ValueError: Not "P" or "B"
        """
        return cls(str(value).upper())


@dataclass
class BattleSession:
    """
    One match between a host and a joiner.

    Attributes:
        host: Host peer descriptor
        joiner: Joiner peer descriptor
        host_combatant: Host's Pokémon in battle
        joiner_combatant: Joiner's Pokémon in battle
        seed: Shared seed from the handshake
        mode: Spectator fan-out policy
        spectators: Admitted spectators (held by the host only)
        current_turn: Side whose turn it is to attack; the host starts
        state: Lifecycle state
        phase: Position inside the current turn
        turn_number: Completed turns
        event_log: Append-only record of what happened
    """
    host: PeerDescriptor
    joiner: PeerDescriptor
    host_combatant: CombatantState
    joiner_combatant: CombatantState
    seed: int
    mode: CommunicationMode = CommunicationMode.P2P
    spectators: List[PeerDescriptor] = field(default_factory=list)
    current_turn: Side = Side.HOST
    state: BattleState = BattleState.SETUP
    phase: TurnPhase = TurnPhase.IDLE
    turn_number: int = 0
    winner: Optional[Side] = None
    event_log: List[str] = field(default_factory=list)
    logger: Optional[DebugLogger] = field(default=None, repr=False)

    def __post_init__(self):
        self.rng = random.Random(self.seed)

    def log(self, text: str):
        """Append an entry to the event log."""
        self.event_log.append(text)
        if self.logger:
            self.logger.log_battle_event(text, {"turn": self.turn_number})

    def descriptor(self, side: Side) -> PeerDescriptor:
        return self.host if side is Side.HOST else self.joiner

    def combatant(self, side: Side) -> CombatantState:
        return self.host_combatant if side is Side.HOST else self.joiner_combatant

    def transition(self, new_state: BattleState, context: Optional[str] = None):
        """
        Move to a new lifecycle state.

        Raises:
            ValueError: The session already reached GAME_OVER or DISCONNECTED
        """
        if new_state is self.state:
            return
        if self.state in (BattleState.GAME_OVER, BattleState.DISCONNECTED):
            raise ValueError(f"Session already ended in {self.state.value}")
        old_state = self.state
        self.state = new_state
        if self.logger:
            self.logger.log_state_change(old_state.value, new_state.value, context)

    def switch_turn(self) -> Side:
        """Hand the attack to the other side after a completed turn."""
        self.current_turn = self.current_turn.other
        self.turn_number += 1
        self.phase = TurnPhase.IDLE
        return self.current_turn

    def finish(self, winner: Side):
        self.winner = winner
        self.phase = TurnPhase.IDLE
        self.transition(BattleState.GAME_OVER, f"{self.descriptor(winner).name} wins")
        self.log(f"{self.descriptor(winner).name} wins the battle")

    @property
    def loser(self) -> Optional[Side]:
        return self.winner.other if self.winner else None

    @property
    def is_over(self) -> bool:
        return self.state in (BattleState.GAME_OVER, BattleState.DISCONNECTED)

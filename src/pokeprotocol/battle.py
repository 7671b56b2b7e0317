"""
Battle Mechanics Module

Combatant state, the synchronized damage formula and the per-turn result
objects that the two players compare.

Both players compute every turn independently, so ``DamageCalculator`` is a
pure function of its inputs and the single random draw taken from the
session's seeded generator.
"""

import math
import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .config import BOOST_ALLOCATION
from .game_data import Move, Pokemon, get_type_effectiveness, PHYSICAL
from .messages import CalculationReport, ResolutionRequest

BOOST_MULTIPLIER = 1.5
RANDOM_FLOOR = 0.85
RANDOM_SPAN = 0.15


class BattleState(Enum):
    """Enumeration of all battle states in the state machine."""
    SETUP = "SETUP"
    WAITING_FOR_MOVE = "WAITING_FOR_MOVE"
    PROCESSING_TURN = "PROCESSING_TURN"
    GAME_OVER = "GAME_OVER"
    DISCONNECTED = "DISCONNECTED"


class TurnPhase(Enum):
    """Where a peer is inside the current turn."""
    IDLE = "IDLE"
    ANNOUNCING_ATTACK = "ANNOUNCING_ATTACK"
    AWAITING_DEFENSE = "AWAITING_DEFENSE"
    CALCULATING = "CALCULATING"
    AWAITING_CONFIRM = "AWAITING_CONFIRM"
    AWAITING_ATTACK = "AWAITING_ATTACK"
    AWAITING_REPORT = "AWAITING_REPORT"
    VERIFYING = "VERIFYING"
    RESOLVING = "RESOLVING"


class CombatantState:
    """
    A Pokémon in battle: current HP and remaining stat boosts.

    Attributes:
        pokemon: Base Pokémon data
        current_hp: Current HP, always within [0, max_hp]
        max_hp: Maximum HP
        special_attack_uses: Remaining special attack boosts
        special_defense_uses: Remaining special defense boosts
    """

    def __init__(self, pokemon: Pokemon, special_attack_uses: int = 5,
                 special_defense_uses: int = 5, allocation: int = BOOST_ALLOCATION):
        """
        Initialize a battle Pokémon.

        Raises:
            ValueError: Boost uses are negative or exceed the allocation
        """
        if special_attack_uses < 0 or special_defense_uses < 0:
            raise ValueError("Boost uses cannot be negative")
        if special_attack_uses + special_defense_uses > allocation:
            raise ValueError(
                f"Boost uses {special_attack_uses}+{special_defense_uses} "
                f"exceed the allocation of {allocation}")
        self.pokemon = pokemon
        self.max_hp = pokemon.hp
        self.current_hp = pokemon.hp
        self.special_attack_uses = special_attack_uses
        self.special_defense_uses = special_defense_uses

    @property
    def name(self) -> str:
        return self.pokemon.name

    def set_hp(self, hp: int) -> int:
        """Set HP, clamped to [0, max_hp]."""
        self.current_hp = max(0, min(self.max_hp, hp))
        return self.current_hp

    def take_damage(self, damage: int) -> int:
        """
        Apply damage to this Pokémon.

        Returns:
            Remaining HP after damage
        """
        return self.set_hp(self.current_hp - damage)

    def heal(self, amount: int) -> int:
        return self.set_hp(self.current_hp + amount)

    def is_fainted(self) -> bool:
        return self.current_hp <= 0

    def spend_attack_boost(self, move: Move) -> bool:
        """
        Consume a special attack boost if it applies to ``move``.

        Returns:
            True if the boost is in effect for this move
        """
        if move.is_special and self.special_attack_uses > 0:
            self.special_attack_uses -= 1
            return True
        return False

    def spend_defense_boost(self, move: Move) -> bool:
        """Consume a special defense boost if it applies to ``move``."""
        if move.is_special and self.special_defense_uses > 0:
            self.special_defense_uses -= 1
            return True
        return False

    def status(self) -> str:
        return f"{self.name}: {self.current_hp}/{self.max_hp} HP"

    def __repr__(self):
        return (f"CombatantState({self.name!r}, hp={self.current_hp}/{self.max_hp}, "
                f"spatk_uses={self.special_attack_uses}, "
                f"spdef_uses={self.special_defense_uses})")


@dataclass
class TurnOutcome:
    """
    Result of one attack as computed by one player.

    Attributes:
        attacker: Name of attacking Pokémon
        move_used: Name of move used
        attacker_hp: Attacker's HP when it attacked
        damage: Damage inflicted
        defender_hp_after: Defender's HP after the hit
        status_text: Human readable description
    """
    attacker: str
    move_used: str
    attacker_hp: int
    damage: int
    defender_hp_after: int
    status_text: str = ""

    def matches(self, other: 'TurnOutcome') -> bool:
        """Field comparison used for discrepancy detection."""
        return (self.damage == other.damage and
                self.defender_hp_after == other.defender_hp_after)

    def to_report(self) -> CalculationReport:
        return CalculationReport(
            attacker=self.attacker,
            move_used=self.move_used,
            remaining_health=self.attacker_hp,
            damage_dealt=self.damage,
            defender_hp_remaining=self.defender_hp_after,
            status_message=self.status_text,
        )

    def to_resolution_request(self) -> ResolutionRequest:
        return ResolutionRequest(
            attacker=self.attacker,
            move_used=self.move_used,
            damage_dealt=self.damage,
            defender_hp_remaining=self.defender_hp_after,
        )

    @classmethod
    def from_report(cls, report: CalculationReport) -> 'TurnOutcome':
        return cls(report.attacker, report.move_used, report.remaining_health,
                   report.damage_dealt, report.defender_hp_remaining,
                   report.status_message)

    @classmethod
    def from_resolution_request(cls, request: ResolutionRequest) -> 'TurnOutcome':
        return cls(request.attacker, request.move_used, 0,
                   request.damage_dealt, request.defender_hp_remaining)


@dataclass
class Discrepancy:
    """
    Two different computations of the same turn.

    Attributes:
        local: This peer's own computation
        remote: The value the other player reported
        raised_by_local: True when this peer detected the mismatch
    """
    local: TurnOutcome
    remote: TurnOutcome
    raised_by_local: bool = True

    def describe(self) -> str:
        return (f"{self.local.attacker} {self.local.move_used}: "
                f"local damage={self.local.damage} hp={self.local.defender_hp_after}, "
                f"remote damage={self.remote.damage} hp={self.remote.defender_hp_after}")


class DamageCalculator:
    """
    Calculates Pokémon battle damage using the protocol's formula.

        damage = round(A / D * power * eff(type1) * eff(type2) * random)

    with A/D the attack/defense pair picked by the move category, special
    stats scaled by 1.5 for a spent boost, and random in [0.85, 1.00].
    """

    @staticmethod
    def draw(rng: random.Random) -> float:
        """Take the turn's random multiplier from the session generator."""
        return RANDOM_FLOOR + rng.random() * RANDOM_SPAN

    @staticmethod
    def effectiveness(move: Move, defender: Pokemon) -> float:
        return (get_type_effectiveness(move.move_type, defender.type1) *
                get_type_effectiveness(move.move_type, defender.type2))

    @staticmethod
    def stat_pair(attacker: Pokemon, defender: Pokemon, move: Move,
                  attacker_boost: bool = False, defender_boost: bool = False):
        """
        Attacking and defending stat for this move.

        Returns:
            Tuple of (attacker_stat, defender_stat)
        """
        if move.damage_category == PHYSICAL:
            return float(attacker.attack), float(defender.defense)

        attacker_stat = float(attacker.sp_attack)
        defender_stat = float(defender.sp_defense)
        if attacker_boost:
            attacker_stat *= BOOST_MULTIPLIER
        if defender_boost:
            defender_stat *= BOOST_MULTIPLIER
        return attacker_stat, defender_stat

    def base_damage(self, attacker: Pokemon, defender: Pokemon, move: Move,
                    attacker_boost: bool = False, defender_boost: bool = False) -> float:
        """Damage before the random multiplier and rounding."""
        attacker_stat, defender_stat = self.stat_pair(
            attacker, defender, move, attacker_boost, defender_boost)
        power = move.power or 1.0
        return attacker_stat / defender_stat * power * self.effectiveness(move, defender)

    def calculate_damage(self, attacker: Pokemon, defender: Pokemon, move: Move,
                         random_factor: float, attacker_boost: bool = False,
                         defender_boost: bool = False) -> int:
        """
        Calculate damage dealt by an attack.

        Args:
            attacker: The attacking Pokémon
            defender: The defending Pokémon
            move: The move being used
            random_factor: Multiplier drawn for this turn
            attacker_boost: Special attack boost spent on this move
            defender_boost: Special defense boost spent against this move

        Returns:
            Damage, at least 1 unless the move has no effect
        """
        raw = self.base_damage(attacker, defender, move, attacker_boost, defender_boost)
        damage = int(math.floor(raw * random_factor + 0.5))
        if self.effectiveness(move, defender) > 0:
            return max(1, damage)
        return 0

    def calculate(self, attacker: CombatantState, defender: CombatantState, move: Move,
                  random_factor: float, attacker_boost: bool = False,
                  defender_boost: bool = False) -> TurnOutcome:
        """
        Compute a full turn outcome without touching either combatant.

        Returns:
            TurnOutcome with the defender's projected HP
        """
        damage = self.calculate_damage(attacker.pokemon, defender.pokemon, move,
                                       random_factor, attacker_boost, defender_boost)
        hp_after = max(0, defender.current_hp - damage)
        status = self.status_message(attacker.name, defender.name, move.name,
                                     self.effectiveness(move, defender.pokemon),
                                     damage, hp_after)
        return TurnOutcome(attacker.name, move.name, attacker.current_hp,
                           damage, hp_after, status)

    @staticmethod
    def status_message(attacker_name: str, defender_name: str, move_name: str,
                       effectiveness: float, damage: int,
                       defender_hp_after: Optional[int] = None) -> str:
        msg = f"{attacker_name} used {move_name}!"

        if effectiveness == 0:
            msg += " It had no effect..."
        elif effectiveness >= 2.0:
            msg += " It was super effective!"
        elif effectiveness < 1.0:
            msg += " It was not very effective..."

        msg += f" {defender_name} took {damage} damage."
        if defender_hp_after == 0:
            msg += f" {defender_name} fainted!"
        return msg

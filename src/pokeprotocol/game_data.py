"""
Game Data Module

Pokémon stats, moves and the type effectiveness chart. The protocol only
consumes these as values: a combatant's stats and move list, and the
multiplier of one attack type against one defending type.
"""

import csv
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .errors import UnknownMoveError, UnknownPokemonError

PHYSICAL = "physical"
SPECIAL = "special"

# Attack type -> defending type -> multiplier; absent pairs are neutral
TYPE_CHART: Dict[str, Dict[str, float]] = {
    "normal": {"rock": 0.5, "ghost": 0.0, "steel": 0.5},
    "fire": {"fire": 0.5, "water": 0.5, "grass": 2.0, "ice": 2.0, "bug": 2.0,
             "rock": 0.5, "dragon": 0.5, "steel": 2.0},
    "water": {"fire": 2.0, "water": 0.5, "grass": 0.5, "ground": 2.0, "rock": 2.0,
              "dragon": 0.5},
    "electric": {"water": 2.0, "electric": 0.5, "grass": 0.5, "ground": 0.0,
                 "flying": 2.0, "dragon": 0.5},
    "grass": {"fire": 0.5, "water": 2.0, "grass": 0.5, "poison": 0.5, "ground": 2.0,
              "flying": 0.5, "bug": 0.5, "rock": 2.0, "dragon": 0.5, "steel": 0.5},
    "ice": {"fire": 0.5, "water": 0.5, "grass": 2.0, "ice": 0.5, "ground": 2.0,
            "flying": 2.0, "dragon": 2.0, "steel": 0.5},
    "fighting": {"normal": 2.0, "ice": 2.0, "poison": 0.5, "flying": 0.5,
                 "psychic": 0.5, "bug": 0.5, "rock": 2.0, "ghost": 0.0, "dark": 2.0,
                 "steel": 2.0, "fairy": 0.5},
    "poison": {"grass": 2.0, "poison": 0.5, "ground": 0.5, "rock": 0.5, "ghost": 0.5,
               "steel": 0.0, "fairy": 2.0},
    "ground": {"fire": 2.0, "electric": 2.0, "grass": 0.5, "poison": 2.0,
               "flying": 0.0, "bug": 0.5, "rock": 2.0, "steel": 2.0},
    "flying": {"electric": 0.5, "grass": 2.0, "fighting": 2.0, "bug": 2.0,
               "rock": 0.5, "steel": 0.5},
    "psychic": {"fighting": 2.0, "poison": 2.0, "psychic": 0.5, "dark": 0.0,
                "steel": 0.5},
    "bug": {"fire": 0.5, "grass": 2.0, "fighting": 0.5, "poison": 0.5, "flying": 0.5,
            "psychic": 2.0, "ghost": 0.5, "dark": 2.0, "steel": 0.5, "fairy": 0.5},
    "rock": {"fire": 2.0, "ice": 2.0, "fighting": 0.5, "ground": 0.5, "flying": 2.0,
             "bug": 2.0, "steel": 0.5},
    "ghost": {"normal": 0.0, "psychic": 2.0, "ghost": 2.0, "dark": 0.5},
    "dragon": {"dragon": 2.0, "steel": 0.5, "fairy": 0.0},
    "dark": {"fighting": 0.5, "psychic": 2.0, "ghost": 2.0, "dark": 0.5, "fairy": 0.5},
    "steel": {"fire": 0.5, "water": 0.5, "electric": 0.5, "ice": 2.0, "rock": 2.0,
              "steel": 0.5, "fairy": 2.0},
    "fairy": {"fire": 0.5, "fighting": 2.0, "poison": 0.5, "dragon": 2.0, "dark": 2.0,
              "steel": 0.5},
}

SPECIAL_TYPES = {"fire", "water", "grass", "electric", "ice", "psychic",
                 "dragon", "dark", "fairy"}


def get_type_effectiveness(attack_type: str, defend_type: Optional[str]) -> float:
    """
    Multiplier of an attack type against one defending type.

    Args:
        attack_type: Type of the move
        defend_type: One of the defender's types; None counts as neutral

    Returns:
        0.0, 0.5, 1.0 or 2.0
    """
    if not defend_type:
        return 1.0
    return TYPE_CHART.get(attack_type.lower(), {}).get(defend_type.lower(), 1.0)


@dataclass
class Move:
    """
    Data class representing a Pokémon move.

    Attributes:
        name: Move name as announced on the wire
        power: Base power
        move_type: Elemental type of the move
        damage_category: "physical" or "special"
    """
    name: str
    power: float
    move_type: str
    damage_category: str

    def __post_init__(self):
        self.move_type = self.move_type.lower()
        self.damage_category = self.damage_category.lower()

    @property
    def is_special(self) -> bool:
        return self.damage_category == SPECIAL


def default_moves(type1: str, type2: Optional[str] = None) -> List[Move]:
    """
    Build the standard move list for a Pokémon of the given types.

    Every Pokémon knows Tackle, one attack per type, and Special Blast.
    """
    moves = [Move("Tackle", 40, "normal", PHYSICAL)]
    for pokemon_type in (type1, type2):
        if pokemon_type:
            category = SPECIAL if pokemon_type in SPECIAL_TYPES else PHYSICAL
            moves.append(Move(f"{pokemon_type.title()} Attack", 60, pokemon_type, category))
    moves.append(Move("Special Blast", 70, type1, SPECIAL))
    return moves


@dataclass
class Pokemon:
    """
    Base stats and type information of one Pokémon.

    Attributes:
        name: The name of the Pokémon
        hp: Base HP stat (the battle maximum)
        attack: Base Attack stat
        defense: Base Defense stat
        sp_attack: Base Special Attack stat
        sp_defense: Base Special Defense stat
        speed: Base Speed stat
        type1: Primary type
        type2: Optional secondary type
        moves: Moves this Pokémon can use; derived from its types when empty
    """
    name: str
    hp: int
    attack: int
    defense: int
    sp_attack: int
    sp_defense: int
    speed: int
    type1: str
    type2: Optional[str] = None
    moves: List[Move] = field(default_factory=list)

    def __post_init__(self):
        """Normalize type names to lowercase and handle empty type2."""
        self.type1 = self.type1.lower()
        self.type2 = self.type2.lower() if self.type2 else None
        if not self.moves:
            self.moves = default_moves(self.type1, self.type2)

    def find_move(self, move_name: str) -> Move:
        """
        Look up one of this Pokémon's moves by name (case-insensitive).

        Raises:
            UnknownMoveError: The Pokémon does not know the move
        """
        for move in self.moves:
            if move.name.lower() == move_name.lower():
                return move
        raise UnknownMoveError(move_name, self.name)


class PokemonDataLoader:
    """
    Loads Pokémon data from a CSV file.

    The bundled roster is used when no file is given. Columns: name, hp,
    attack, defense, sp_attack, sp_defense, speed, type1, type2.
    """

    def __init__(self, csv_file: Optional[str] = None):
        if csv_file is None:
            csv_file = str(Path(__file__).parent / "data" / "pokemon.csv")
        self.csv_file = csv_file
        self.pokemon_db: Dict[str, Pokemon] = {}
        self._load_data()

    def _load_data(self):
        with open(self.csv_file, 'r', encoding='utf-8') as f:
            for row in csv.DictReader(f):
                pokemon = Pokemon(
                    name=row['name'].strip(),
                    hp=int(row['hp']),
                    attack=int(row['attack']),
                    defense=int(row['defense']),
                    sp_attack=int(row['sp_attack']),
                    sp_defense=int(row['sp_defense']),
                    speed=int(row['speed']),
                    type1=row['type1'].strip(),
                    type2=(row.get('type2') or '').strip() or None,
                )
                self.pokemon_db[pokemon.name.lower()] = pokemon

    def get_pokemon(self, name: str) -> Pokemon:
        """
        Get a Pokémon by name (case-insensitive).

        Raises:
            UnknownPokemonError: No Pokémon with that name is loaded
        """
        pokemon = self.pokemon_db.get(name.strip().lower())
        if pokemon is None:
            raise UnknownPokemonError(name)
        return pokemon

    def get_all_pokemon_names(self) -> List[str]:
        return sorted(p.name for p in self.pokemon_db.values())

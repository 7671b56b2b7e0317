"""
Protocol Messages Module

This module defines every message kind of the PokeProtocol and the codec that
turns them into the wire format and back.

The wire format is a flat text record: one ``key: value`` pair per line, the
first line always being ``message_type: <KIND>``. Parsing is forgiving: lines
that do not split on ``": "`` are dropped, and any value that looks like an
integer is read as one. Each kind is a concrete dataclass carrying only its
own fields, so handlers never have to guess a field's type.
"""

import re
from dataclasses import dataclass, fields as dataclass_fields
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Tuple, Type, Union

FieldValue = Union[int, str]

_INTEGER = re.compile(r"^[+-]?[0-9]+$")


class MessageType(Enum):
    """Enumeration of all valid message types in the protocol."""
    FINDING_HOST = "FINDING_HOST"
    I_AM_HOSTING = "I_AM_HOSTING"
    HANDSHAKE_REQUEST = "HANDSHAKE_REQUEST"
    HANDSHAKE_RESPONSE = "HANDSHAKE_RESPONSE"
    HANDSHAKE_REJECTED = "HANDSHAKE_REJECTED"
    SPECTATOR_REQUEST = "SPECTATOR_REQUEST"
    BATTLE_SETUP = "BATTLE_SETUP"
    COMM_MODE = "COMM_MODE"
    ATTACK_ANNOUNCE = "ATTACK_ANNOUNCE"
    DEFENSE_ANNOUNCE = "DEFENSE_ANNOUNCE"
    CALCULATION_REPORT = "CALCULATION_REPORT"
    CALCULATION_CONFIRM = "CALCULATION_CONFIRM"
    RESOLUTION_REQUEST = "RESOLUTION_REQUEST"
    GAME_OVER = "GAME_OVER"
    CHAT_MESSAGE = "CHAT_MESSAGE"
    ACK = "ACK"


class ContentType(Enum):
    """Enumeration of chat content types."""
    TEXT = "TEXT"
    STICKER = "STICKER"


def parse_fields(data: bytes) -> Tuple[Optional[str], Dict[str, FieldValue]]:
    """
    Split a raw record into its kind token and an ordered field mapping.

    Never raises: undecodable bytes are replaced, lines without the
    ``": "`` separator are skipped.

    Args:
        data: The raw datagram payload

    Returns:
        Tuple of (message_type token or None, fields in wire order)
    """
    text = data.decode('utf-8', errors='replace')
    kind: Optional[str] = None
    parsed: Dict[str, FieldValue] = {}

    for line in text.split('\n'):
        if not line:
            continue
        key, separator, value = line.partition(': ')
        if not separator:
            continue
        if key == 'message_type':
            kind = value
            continue
        parsed[key] = int(value) if _INTEGER.match(value) else value

    return kind, parsed


def _text(parsed: Dict[str, FieldValue], key: str, default: Any = KeyError) -> Any:
    if key not in parsed:
        if default is KeyError:
            raise KeyError(key)
        return default
    # Numeric-looking text was coerced by parse_fields
    return str(parsed[key])


def _number(parsed: Dict[str, FieldValue], key: str, default: Any = KeyError) -> Any:
    if key not in parsed:
        if default is KeyError:
            raise KeyError(key)
        return default
    value = parsed[key]
    if not isinstance(value, int):
        raise ValueError(f"{key} is not an integer: {value!r}")
    return value


def _flag(parsed: Dict[str, FieldValue], key: str) -> bool:
    value = parsed.get(key, 'false')
    return str(value).lower() in ('true', '1')


@dataclass
class Message:
    """
    Base class for all protocol messages.

    Subclasses declare their wire fields as dataclass fields (in wire order)
    and implement ``from_fields``. Optional fields left as ``None`` are not
    written.
    """

    message_type: ClassVar[MessageType]

    def to_fields(self) -> Dict[str, FieldValue]:
        """Wire fields of this message, in order, without message_type."""
        result: Dict[str, FieldValue] = {}
        for f in dataclass_fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if isinstance(value, bool):
                value = 'true' if value else 'false'
            result[f.name] = value
        return result

    def serialize(self) -> bytes:
        """
        Convert message to protocol format bytes.

        Returns:
            The serialized message as bytes
        """
        lines = [f"message_type: {self.message_type.value}"]
        for key, value in self.to_fields().items():
            lines.append(f"{key}: {value}")
        return ('\n'.join(lines) + '\n').encode('utf-8')

    @classmethod
    def from_fields(cls, parsed: Dict[str, FieldValue]) -> 'Message':
        """
        Create a message instance from parsed fields.

        Raises:
            KeyError: A required field is missing
            ValueError: A numeric field holds text
        """
        raise NotImplementedError("Subclasses must implement from_fields()")


@dataclass
class FindingHost(Message):
    """Broadcast by joiners and spectators looking for a host."""
    message_type: ClassVar[MessageType] = MessageType.FINDING_HOST

    @classmethod
    def from_fields(cls, parsed):
        return cls()


@dataclass
class IAmHosting(Message):
    """
    Host's reply to a discovery broadcast.

    Attributes:
        name: Host trainer name
        ip: Address the joiner should use from now on
        port: Port the host is bound to
    """
    message_type: ClassVar[MessageType] = MessageType.I_AM_HOSTING
    name: str
    ip: str
    port: int

    @classmethod
    def from_fields(cls, parsed):
        return cls(_text(parsed, 'name'), _text(parsed, 'ip'), _number(parsed, 'port'))


@dataclass
class HandshakeRequest(Message):
    """Sent by a joiner to ask the host for a match."""
    message_type: ClassVar[MessageType] = MessageType.HANDSHAKE_REQUEST
    name: str = ""
    sequence_number: int = 0

    @classmethod
    def from_fields(cls, parsed):
        return cls(_text(parsed, 'name', ""), _number(parsed, 'sequence_number', 0))


@dataclass
class HandshakeResponse(Message):
    """
    Host's acceptance; carries the seed both sides build their RNG from.

    Spectators receive one too, so they know they were admitted.
    """
    message_type: ClassVar[MessageType] = MessageType.HANDSHAKE_RESPONSE
    seed: int
    sequence_number: int = 0

    @classmethod
    def from_fields(cls, parsed):
        return cls(_number(parsed, 'seed'), _number(parsed, 'sequence_number', 0))


@dataclass
class HandshakeRejected(Message):
    """Explicit refusal of a handshake or spectator request."""
    message_type: ClassVar[MessageType] = MessageType.HANDSHAKE_REJECTED
    reason: Optional[str] = None
    sequence_number: int = 0

    @classmethod
    def from_fields(cls, parsed):
        return cls(_text(parsed, 'reason', None), _number(parsed, 'sequence_number', 0))


@dataclass
class SpectatorRequest(Message):
    """Sent by a peer that wants to watch the host's battle."""
    message_type: ClassVar[MessageType] = MessageType.SPECTATOR_REQUEST
    name: Optional[str] = None
    sequence_number: int = 0

    @classmethod
    def from_fields(cls, parsed):
        return cls(_text(parsed, 'name', None), _number(parsed, 'sequence_number', 0))


@dataclass
class BattleSetup(Message):
    """
    Exchanged by both players to declare their Pokémon and boost allocation.

    Attributes:
        communication_mode: "P" (peer-to-peer) or "B" (broadcast)
        pokemon_name: Name of the chosen Pokémon
        special_attack_uses: Special attack boosts allocated
        special_defense_uses: Special defense boosts allocated
    """
    message_type: ClassVar[MessageType] = MessageType.BATTLE_SETUP
    communication_mode: str
    pokemon_name: str
    special_attack_uses: int
    special_defense_uses: int
    sequence_number: int = 0

    @classmethod
    def from_fields(cls, parsed):
        return cls(
            _text(parsed, 'communication_mode'),
            _text(parsed, 'pokemon_name'),
            _number(parsed, 'special_attack_uses'),
            _number(parsed, 'special_defense_uses'),
            _number(parsed, 'sequence_number', 0),
        )


@dataclass
class CommMode(Message):
    """Host tells the joiner which fan-out policy the session uses."""
    message_type: ClassVar[MessageType] = MessageType.COMM_MODE
    cmode: str
    sequence_number: int = 0

    @classmethod
    def from_fields(cls, parsed):
        return cls(_text(parsed, 'cmode'), _number(parsed, 'sequence_number', 0))


@dataclass
class AttackAnnounce(Message):
    """
    Message sent by attacking peer to announce move choice.

    Attributes:
        move_name: Name of the chosen move
        attack_boost: Attacker spends a special attack boost on this move
    """
    message_type: ClassVar[MessageType] = MessageType.ATTACK_ANNOUNCE
    move_name: str
    attack_boost: bool = False
    sequence_number: int = 0

    @classmethod
    def from_fields(cls, parsed):
        return cls(_text(parsed, 'move_name'), _flag(parsed, 'attack_boost'),
                   _number(parsed, 'sequence_number', 0))


@dataclass
class DefenseAnnounce(Message):
    """Defender's acknowledgement of the attack, with its boost choice."""
    message_type: ClassVar[MessageType] = MessageType.DEFENSE_ANNOUNCE
    defense_boost: bool = False
    sequence_number: int = 0

    @classmethod
    def from_fields(cls, parsed):
        return cls(_flag(parsed, 'defense_boost'), _number(parsed, 'sequence_number', 0))


@dataclass
class CalculationReport(Message):
    """
    The attacker's authoritative result for the turn.

    Attributes:
        attacker: Name of attacking Pokémon
        move_used: Name of move used
        remaining_health: Attacking Pokémon's remaining HP
        damage_dealt: Amount of damage inflicted
        defender_hp_remaining: Defender's HP after the hit
        status_message: Descriptive turn events
    """
    message_type: ClassVar[MessageType] = MessageType.CALCULATION_REPORT
    attacker: str
    move_used: str
    remaining_health: int
    damage_dealt: int
    defender_hp_remaining: int
    status_message: str = ""
    sequence_number: int = 0

    @classmethod
    def from_fields(cls, parsed):
        return cls(
            _text(parsed, 'attacker'),
            _text(parsed, 'move_used'),
            _number(parsed, 'remaining_health'),
            _number(parsed, 'damage_dealt'),
            _number(parsed, 'defender_hp_remaining'),
            _text(parsed, 'status_message', ""),
            _number(parsed, 'sequence_number', 0),
        )


@dataclass
class CalculationConfirm(Message):
    """Defender agrees with the reported calculation."""
    message_type: ClassVar[MessageType] = MessageType.CALCULATION_CONFIRM
    sequence_number: int = 0

    @classmethod
    def from_fields(cls, parsed):
        return cls(_number(parsed, 'sequence_number', 0))


@dataclass
class ResolutionRequest(Message):
    """
    Sent instead of a confirm when the defender's own computation differs.

    Carries the sender's values so the other side can see the mismatch.
    """
    message_type: ClassVar[MessageType] = MessageType.RESOLUTION_REQUEST
    attacker: str
    move_used: str
    damage_dealt: int
    defender_hp_remaining: int
    sequence_number: int = 0

    @classmethod
    def from_fields(cls, parsed):
        return cls(
            _text(parsed, 'attacker'),
            _text(parsed, 'move_used'),
            _number(parsed, 'damage_dealt'),
            _number(parsed, 'defender_hp_remaining'),
            _number(parsed, 'sequence_number', 0),
        )


@dataclass
class GameOver(Message):
    """Ends the battle; winner and loser are trainer names."""
    message_type: ClassVar[MessageType] = MessageType.GAME_OVER
    winner: str
    loser: str
    sequence_number: int = 0

    @classmethod
    def from_fields(cls, parsed):
        return cls(_text(parsed, 'winner'), _text(parsed, 'loser'),
                   _number(parsed, 'sequence_number', 0))


@dataclass
class ChatMessage(Message):
    """
    Text chat or sticker, allowed at any point of the session.

    Attributes:
        sender_name: Name of sending peer
        content_type: "TEXT" or "STICKER"
        message_text: Text content (TEXT only)
        sticker_data: Sticker command or Base64 image (STICKER only)
    """
    message_type: ClassVar[MessageType] = MessageType.CHAT_MESSAGE
    sender_name: str
    content_type: str = ContentType.TEXT.value
    message_text: Optional[str] = None
    sticker_data: Optional[str] = None
    sequence_number: int = 0

    @classmethod
    def from_fields(cls, parsed):
        return cls(
            _text(parsed, 'sender_name'),
            _text(parsed, 'content_type', ContentType.TEXT.value),
            _text(parsed, 'message_text', None),
            _text(parsed, 'sticker_data', None),
            _number(parsed, 'sequence_number', 0),
        )


@dataclass
class Ack(Message):
    """Acknowledgment of a reliably sent message."""
    message_type: ClassVar[MessageType] = MessageType.ACK
    ack_number: int

    @classmethod
    def from_fields(cls, parsed):
        return cls(_number(parsed, 'ack_number'))


MESSAGE_CLASSES: Dict[MessageType, Type[Message]] = {
    cls.message_type: cls for cls in (
        FindingHost, IAmHosting, HandshakeRequest, HandshakeResponse,
        HandshakeRejected, SpectatorRequest, BattleSetup, CommMode,
        AttackAnnounce, DefenseAnnounce, CalculationReport, CalculationConfirm,
        ResolutionRequest, GameOver, ChatMessage, Ack,
    )
}


def encode(message: Message) -> bytes:
    """Serialize a message into its wire record."""
    return message.serialize()


def decode(data: bytes) -> Optional[Message]:
    """
    Parse a wire record into its message class.

    Returns:
        The message, or None when the kind is unknown or a required field
        is missing or malformed
    """
    kind, parsed = parse_fields(data)
    try:
        message_type = MessageType(kind)
    except ValueError:
        return None

    try:
        return MESSAGE_CLASSES[message_type].from_fields(parsed)
    except (KeyError, ValueError):
        return None


def carries_sequence_number(message: Message) -> bool:
    """True for kinds that take part in acknowledgement."""
    return hasattr(message, 'sequence_number')

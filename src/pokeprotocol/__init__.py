"""
PokeProtocol Core Modules

Peer-to-peer Pokémon battles over UDP: message codec, reliability layer,
discovery and handshake, the turn coordinator and spectator relaying.
"""

__version__ = "1.0.0"

from .battle import (BattleState, CombatantState, DamageCalculator, Discrepancy,
                     TurnOutcome, TurnPhase)
from .chat import ChatHandler, validate_sticker
from .config import ProtocolConfig
from .coordinator import BattleResult, TurnCoordinator, raise_on_discrepancy
from .debug_logger import DebugLogger, EventType
from .discovery import (HandshakeState, HostHandshake, JoinerHandshake, Pairing,
                        discover_hosts, exchange_battle_setup)
from .errors import (CalculationDiscrepancyError, DeliveryFailedError,
                     HandshakeRejectedError, HandshakeTimeoutError, PeerIOError,
                     ProtocolError, UnknownMoveError, UnknownPokemonError)
from .game_data import Move, Pokemon, PokemonDataLoader, get_type_effectiveness
from .messages import (
    Message, MessageType, ContentType, decode, encode,
    FindingHost, IAmHosting, HandshakeRequest, HandshakeResponse, HandshakeRejected,
    SpectatorRequest, BattleSetup, CommMode, AttackAnnounce, DefenseAnnounce,
    CalculationReport, CalculationConfirm, ResolutionRequest,
    GameOver, ChatMessage, Ack
)
from .peer import PeerDescriptor, bind_local
from .relay import SpectatorRelay
from .reliability import ReliableChannel, RetransmissionSweeper
from .session import BattleSession, CommunicationMode, Side
from .spectator import SpectatorPeer

__all__ = [
    # Session and peers
    'BattleSession', 'CommunicationMode', 'Side', 'PeerDescriptor', 'bind_local',
    'SpectatorPeer', 'SpectatorRelay', 'ReliableChannel', 'RetransmissionSweeper',
    # Handshake
    'HandshakeState', 'HostHandshake', 'JoinerHandshake', 'Pairing',
    'discover_hosts', 'exchange_battle_setup',
    # Battle
    'BattleState', 'TurnPhase', 'CombatantState', 'DamageCalculator', 'Discrepancy',
    'TurnOutcome', 'TurnCoordinator', 'BattleResult', 'raise_on_discrepancy',
    # Game data
    'Move', 'Pokemon', 'PokemonDataLoader', 'get_type_effectiveness',
    # Messages
    'Message', 'MessageType', 'ContentType', 'encode', 'decode',
    'FindingHost', 'IAmHosting', 'HandshakeRequest', 'HandshakeResponse',
    'HandshakeRejected', 'SpectatorRequest', 'BattleSetup', 'CommMode',
    'AttackAnnounce', 'DefenseAnnounce', 'CalculationReport', 'CalculationConfirm',
    'ResolutionRequest', 'GameOver', 'ChatMessage', 'Ack',
    # Support
    'ChatHandler', 'validate_sticker', 'ProtocolConfig', 'DebugLogger', 'EventType',
    # Errors
    'ProtocolError', 'UnknownPokemonError', 'UnknownMoveError', 'HandshakeRejectedError',
    'HandshakeTimeoutError', 'DeliveryFailedError', 'CalculationDiscrepancyError',
    'PeerIOError',
]

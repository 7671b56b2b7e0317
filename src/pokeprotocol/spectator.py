"""
Spectator Module

A spectator joins a host with SPECTATOR_REQUEST, then follows the battle
through the messages the host relays to it. It can chat but never takes
part in a turn.
"""

import select
from typing import Callable, List, Optional

from .chat import ChatHandler
from .config import ProtocolConfig
from .debug_logger import DebugLogger
from .discovery import wait_for
from .errors import HandshakeRejectedError, UnknownPokemonError
from .game_data import PokemonDataLoader
from .messages import (AttackAnnounce, BattleSetup, CalculationReport, ChatMessage,
                       GameOver, HandshakeRejected, Message, MessageType,
                       ResolutionRequest, SpectatorRequest)
from .peer import Address, PeerDescriptor
from .reliability import ReliableChannel


class SpectatorPeer:
    """
    Spectator peer implementation - can observe but not participate.

    Attributes:
        host_pokemon: Host's Pokémon name, from the first BATTLE_SETUP
        joiner_pokemon: Joiner's Pokémon name, from the second BATTLE_SETUP
        host_hp: Host Pokémon's last known HP
        joiner_hp: Joiner Pokémon's last known HP
        last_attacker: "host" or "joiner"
        last_move: Most recently announced move
        discrepancies: Descriptions of RESOLUTION_REQUESTs seen
        game_over: Set once GAME_OVER arrives
    """

    def __init__(self, local: PeerDescriptor, channel: ReliableChannel,
                 roster: Optional[PokemonDataLoader] = None,
                 config: Optional[ProtocolConfig] = None,
                 logger: Optional[DebugLogger] = None,
                 chat: Optional[ChatHandler] = None,
                 input_source=None,
                 display: Callable[[str], None] = print):
        self.local = local
        self.channel = channel
        self.roster = roster
        self.config = config or ProtocolConfig()
        self.logger = logger
        self.chat = chat
        self.input_source = input_source
        self.display = display

        self.host: Optional[PeerDescriptor] = None
        self.battle_seed: Optional[int] = None
        self.host_pokemon: Optional[str] = None
        self.joiner_pokemon: Optional[str] = None
        self.host_hp: Optional[int] = None
        self.joiner_hp: Optional[int] = None
        self.last_attacker: Optional[str] = None
        self.last_move: Optional[str] = None
        self.discrepancies: List[str] = []
        self.game_over = False
        self.winner: Optional[str] = None
        self.loser: Optional[str] = None

    def join(self, host_address: Address, host_name: str = "Host") -> int:
        """
        Connect to a host as a spectator.

        Returns:
            The seed the host answered with

        Raises:
            HandshakeRejectedError: The host does not accept spectators
            DeliveryFailedError: The host never acknowledged the request
        """
        host_address = (host_address[0], int(host_address[1]))
        seq_num = self.channel.send_reliable(SpectatorRequest(name=self.local.name),
                                             host_address)
        message, address = wait_for(
            self.channel,
            {MessageType.HANDSHAKE_RESPONSE, MessageType.HANDSHAKE_REJECTED},
            self.config, watch={seq_num})

        if isinstance(message, HandshakeRejected):
            raise HandshakeRejectedError(message.reason)

        self.host = PeerDescriptor.remote(host_name, address)
        self.battle_seed = message.seed
        if self.logger:
            self.logger.log_connection(address, "Host")
            self.logger.log_battle_event("Battle seed received", {"seed": message.seed})
        self.display(f"Connected to host as spectator at {address[0]}:{address[1]}")
        return self.battle_seed

    def watch(self, timeout: Optional[float] = None):
        """
        Follow the battle until GAME_OVER.

        Args:
            timeout: Stop after this many seconds; None watches until the end
        """
        clock = self.channel.clock
        deadline = None if timeout is None else clock() + timeout

        while not self.game_over:
            if deadline is not None and clock() >= deadline:
                break
            failed = self.channel.check_retransmissions()
            if failed and self.logger:
                self.logger.log_warning("Chat not delivered", {"failed": failed})

            received = self._poll()
            if received is None:
                continue
            message, address = received
            if self.channel.is_stale(message, address):
                continue
            self.channel.accept(message, address)
            self.handle(message, address)

    def _poll(self):
        if self.input_source is None or self.channel.has_deferred():
            return self.channel.receive(self.config.receive_poll)
        ready, _, _ = select.select([self.channel, self.input_source], [], [],
                                    self.config.receive_poll)
        if self.input_source in ready:
            for line in self.input_source.read_lines():
                if line.strip():
                    self.send_chat(line)
        if self.channel in ready:
            return self.channel.receive(0)
        return None

    def handle(self, message: Message, address: Address) -> Optional[str]:
        """
        Update the tracked battle view with one relayed message.

        Returns:
            The line displayed for it, if any
        """
        if isinstance(message, ChatMessage):
            if self.chat is not None and not self.chat.is_own(message):
                self.chat.show(message)
            return None

        update = self._update(message)
        if update:
            self.display(update)
        return update

    def _update(self, message: Message) -> Optional[str]:
        if isinstance(message, BattleSetup):
            hp = self._max_hp(message.pokemon_name)
            if self.host_pokemon is None:
                self.host_pokemon, self.host_hp = message.pokemon_name, hp
                return f"HOST chose: {message.pokemon_name}"
            self.joiner_pokemon, self.joiner_hp = message.pokemon_name, hp
            return f"JOINER chose: {message.pokemon_name}"

        if isinstance(message, AttackAnnounce):
            self.last_move = message.move_name
            boost = " (boosted)" if message.attack_boost else ""
            return f"Incoming attack: {message.move_name}{boost}"

        if isinstance(message, CalculationReport):
            if message.attacker == self.joiner_pokemon and message.attacker != self.host_pokemon:
                self.last_attacker = "joiner"
                self.host_hp = message.defender_hp_remaining
            else:
                self.last_attacker = "host"
                self.joiner_hp = message.defender_hp_remaining
            lines = [message.status_message or
                     f"{message.attacker} used {message.move_used}!",
                     f"  Damage dealt: {message.damage_dealt} HP"]
            if self.host_pokemon and self.joiner_pokemon:
                lines.append(f"  {self.host_pokemon} (Host): {self._hp(self.host_hp)} HP | "
                             f"{self.joiner_pokemon} (Joiner): {self._hp(self.joiner_hp)} HP")
            return "\n".join(lines)

        if isinstance(message, ResolutionRequest):
            text = (f"Players disagree on {message.attacker}'s {message.move_used}: "
                    f"defender computed {message.damage_dealt} damage")
            self.discrepancies.append(text)
            if self.logger:
                self.logger.log_discrepancy(text)
            return text

        if isinstance(message, GameOver):
            self.game_over = True
            self.winner, self.loser = message.winner, message.loser
            return f"BATTLE ENDED! Winner: {message.winner}, Loser: {message.loser}"

        return None

    def _max_hp(self, pokemon_name: str) -> Optional[int]:
        if self.roster is None:
            return None
        try:
            return self.roster.get_pokemon(pokemon_name).hp
        except UnknownPokemonError:
            if self.logger:
                self.logger.log_warning(f"Unknown Pokémon in battle setup: {pokemon_name}")
            return None

    @staticmethod
    def _hp(value: Optional[int]) -> str:
        return "?" if value is None else str(value)

    def send_chat(self, text: str) -> Optional[int]:
        """Send a chat line to the host, which relays it onwards."""
        if self.chat is None or self.host is None:
            return None
        try:
            message = self.chat.make_message(text)
        except ValueError as e:
            self.display(str(e))
            return None
        self.chat.show(message, "SENT")
        return self.channel.send_reliable(message, self.host.address)

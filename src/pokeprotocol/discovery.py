"""
Discovery and Handshake Module

Pairs a host with a joiner before the battle starts:

1. The joiner broadcasts FINDING_HOST over the discovery port range and
   collects I_AM_HOSTING replies.
2. The joiner sends HANDSHAKE_REQUEST to the chosen host. The host accepts
   with HANDSHAKE_RESPONSE carrying the shared seed, or refuses with
   HANDSHAKE_REJECTED.
3. The host announces the communication mode (COMM_MODE) and both players
   exchange BATTLE_SETUP.

Spectators may send SPECTATOR_REQUEST at any time; the host admits them and
replies with HANDSHAKE_RESPONSE.
"""

import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Collection, Dict, Iterable, List, Optional, Tuple

from .battle import CombatantState
from .config import ProtocolConfig
from .debug_logger import DebugLogger
from .errors import (DeliveryFailedError, HandshakeRejectedError,
                     HandshakeTimeoutError, ProtocolError)
from .game_data import PokemonDataLoader
from .messages import (BattleSetup, CommMode, FindingHost, HandshakeRejected,
                       HandshakeRequest, HandshakeResponse, IAmHosting, Message,
                       MessageType)
from .peer import Address, PeerDescriptor, local_ip
from .relay import SpectatorRelay
from .reliability import ReliableChannel
from .session import CommunicationMode

MAX_SEED = 99999

# Host's answer to a HANDSHAKE_REQUEST: (joiner name, joiner address) -> accept?
Decision = Callable[[str, Address], bool]


def accept_all(name: str, address: Address) -> bool:
    return True


class HandshakeState(Enum):
    """Host side of the pairing state machine."""
    IDLE = "IDLE"
    AWAITING_DISCOVERY = "AWAITING_DISCOVERY"
    HANDSHAKING = "HANDSHAKING"
    PAIRED = "PAIRED"
    REJECTED = "REJECTED"


@dataclass
class Pairing:
    """Outcome of a successful host handshake."""
    joiner: PeerDescriptor
    seed: int
    spectators: List[PeerDescriptor] = field(default_factory=list)


def wait_for(channel: ReliableChannel, kinds: Collection[MessageType],
             config: ProtocolConfig, timeout: Optional[float] = None,
             lobby: Optional['HostHandshake'] = None,
             watch: Iterable[int] = ()) -> Tuple[Message, Address]:
    """
    Block until a message of one of ``kinds`` arrives and accept it.

    ACKs and duplicates are consumed on the way. Discovery and spectator
    traffic goes to ``lobby`` when one is given. Anything else is handed back
    to the channel for a later wait.

    Args:
        channel: Reliable channel to read from
        kinds: Message types that end the wait
        config: Protocol configuration (poll interval)
        timeout: Seconds to wait; None waits forever
        lobby: Host handshake serving late discovery and spectator requests
        watch: Sequence numbers whose delivery failure aborts the wait

    Returns:
        (message, sender address)

    Raises:
        DeliveryFailedError: A watched message exhausted its retries
        HandshakeTimeoutError: Nothing suitable arrived in time
    """
    watched = set(watch)
    deadline = None if timeout is None else channel.clock() + timeout
    skipped: List[Tuple[Message, Address]] = []
    try:
        while deadline is None or channel.clock() < deadline:
            lost = [seq for seq in channel.check_retransmissions() if seq in watched]
            if lost:
                raise DeliveryFailedError(lost)

            received = channel.receive(config.receive_poll)
            if received is None:
                continue
            message, address = received
            if channel.is_stale(message, address):
                continue

            if message.message_type in kinds:
                channel.accept(message, address)
                return message, address
            if lobby is not None and lobby.handles(message):
                channel.accept(message, address)
                lobby.handle(message, address)
                continue
            skipped.append(received)
    finally:
        channel.requeue(skipped)

    expected = ", ".join(sorted(k.value for k in kinds))
    raise HandshakeTimeoutError(f"Timed out waiting for {expected}")


class HostHandshake:
    """
    Host side of discovery and pairing.

    Answers discovery probes, admits spectators and decides on connection
    requests. After pairing it keeps serving discovery and spectator traffic
    whenever it is passed as ``lobby`` to a wait.
    """

    def __init__(self, local: PeerDescriptor, channel: ReliableChannel,
                 config: Optional[ProtocolConfig] = None,
                 logger: Optional[DebugLogger] = None,
                 advertised_ip: Optional[str] = None,
                 seed: Optional[int] = None,
                 rng: Optional[random.Random] = None):
        """
        Args:
            local: Host's own descriptor
            channel: Host's reliable channel
            config: Protocol configuration
            logger: Debug logger
            advertised_ip: Address put into I_AM_HOSTING replies
            seed: Force the shared seed instead of drawing one
            rng: Source for drawing the seed
        """
        self.local = local
        self.channel = channel
        self.config = config or ProtocolConfig()
        self.logger = logger
        self.advertised_ip = advertised_ip or self._guess_ip(local)
        self.forced_seed = seed
        self.rng = rng or random.Random()
        self.state = HandshakeState.IDLE
        self.seed = 0
        self.joiner: Optional[PeerDescriptor] = None
        self.spectators: List[PeerDescriptor] = []
        self.relay: Optional[SpectatorRelay] = None
        self.decide: Decision = accept_all

    @staticmethod
    def _guess_ip(local: PeerDescriptor) -> str:
        ip = local.address[0]
        return local_ip() if ip in ("", "0.0.0.0") else ip

    def _set_state(self, new_state: HandshakeState):
        if new_state is self.state:
            return
        if self.logger:
            self.logger.log_state_change(self.state.value, new_state.value, "handshake")
        self.state = new_state

    def listen(self):
        """Start answering discovery probes."""
        if self.state in (HandshakeState.IDLE, HandshakeState.REJECTED):
            self._set_state(HandshakeState.AWAITING_DISCOVERY)

    def handles(self, message: Message) -> bool:
        return message.message_type in (MessageType.FINDING_HOST,
                                        MessageType.SPECTATOR_REQUEST,
                                        MessageType.HANDSHAKE_REQUEST)

    def handle(self, message: Message, address: Address,
               decide: Optional[Decision] = None) -> HandshakeState:
        """
        Process one already acknowledged message.

        Args:
            message: FINDING_HOST, SPECTATOR_REQUEST or HANDSHAKE_REQUEST
            address: Sender address
            decide: Accept/reject callback for connection requests

        Returns:
            State after handling
        """
        self.listen()
        kind = message.message_type

        if kind is MessageType.FINDING_HOST:
            reply = IAmHosting(self.local.name, self.advertised_ip, self.local.port)
            self.channel.send_unreliable(reply, address)
        elif kind is MessageType.SPECTATOR_REQUEST:
            self._answer_spectator(message, address)
        elif kind is MessageType.HANDSHAKE_REQUEST:
            self._answer_request(message, address, decide or self.decide)
        return self.state

    def _reply(self, message: Message, address: Address):
        # Once a relay exists a lost reply only drops its addressee
        if self.relay is not None:
            self.relay.reply(message, address)
        else:
            self.channel.send_reliable(message, address)

    def _answer_spectator(self, message, address: Address):
        if not self.config.accept_spectators:
            self._reply(HandshakeRejected(reason="Spectators are not accepted"), address)
            return

        spectator = PeerDescriptor.remote(message.name or f"Spectator-{address[1]}", address)
        self._reply(HandshakeResponse(seed=self.seed), address)
        if self.relay is not None:
            self.relay.add_spectator(spectator)
        elif not any(s.address == spectator.address for s in self.spectators):
            self.spectators.append(spectator)
            if self.logger:
                self.logger.log_spectator_join(address)

    def _answer_request(self, message, address: Address, decide: Decision):
        name = message.name or f"Joiner-{address[1]}"

        if self.state is HandshakeState.PAIRED:
            if self.joiner is not None and self.joiner.address == address:
                # Same joiner asking again, e.g. after a restart
                self.channel.send_reliable(HandshakeResponse(seed=self.seed), address)
            else:
                self._reply(HandshakeRejected(reason="A battle is already in progress"),
                            address)
            return

        self._set_state(HandshakeState.HANDSHAKING)
        if not decide(name, address):
            self._reply(HandshakeRejected(reason="Declined by host"), address)
            self._set_state(HandshakeState.REJECTED)
            if self.logger:
                self.logger.log_battle_event("Rejected connection request",
                                             {"name": name, "address": address[0],
                                              "port": address[1]})
            return

        self.seed = (self.forced_seed if self.forced_seed is not None
                     else self.rng.randint(1, MAX_SEED))
        self.joiner = PeerDescriptor.remote(name, address)
        self.channel.send_reliable(HandshakeResponse(seed=self.seed), address)
        self._set_state(HandshakeState.PAIRED)
        if self.logger:
            self.logger.log_connection(address, "Joiner")
            self.logger.log_battle_event("Battle seed chosen", {"seed": self.seed})

    def wait_for_match(self, decide: Decision = accept_all,
                       timeout: Optional[float] = None) -> Pairing:
        """
        Serve discovery, spectators and requests until a joiner is accepted.

        Raises:
            HandshakeTimeoutError: ``timeout`` elapsed first
        """
        self.decide = decide
        self.listen()
        deadline = None if timeout is None else self.channel.clock() + timeout

        while self.state is not HandshakeState.PAIRED:
            if deadline is not None and self.channel.clock() >= deadline:
                raise HandshakeTimeoutError("No joiner was accepted in time")
            failed = self.channel.check_retransmissions()
            if failed and self.logger:
                self.logger.log_warning("Undelivered handshake replies", {"failed": failed})

            received = self.channel.receive(self.config.receive_poll)
            if received is None:
                continue
            message, address = received
            if self.channel.is_stale(message, address):
                continue
            self.channel.accept(message, address)
            if self.handles(message):
                self.handle(message, address, decide)
            elif self.logger:
                self.logger.log_warning(f"Ignored {message.message_type.value} before pairing",
                                        {"address": address[0], "port": address[1]})

        return Pairing(self.joiner, self.seed, self.spectators)


def discover_hosts(channel: ReliableChannel, config: ProtocolConfig,
                   logger: Optional[DebugLogger] = None,
                   broadcast_address: str = "<broadcast>") -> Dict[str, Address]:
    """
    Find hosts on the local network.

    Broadcasts FINDING_HOST to every discovery port and listens for the
    configured window.

    Returns:
        Mapping of host name to (ip, port)
    """
    for port in config.discovery_ports:
        try:
            channel.send_unreliable(FindingHost(), (broadcast_address, port))
        except ProtocolError as e:
            if logger:
                logger.log_warning(f"Discovery probe to port {port} failed", {"error": str(e)})

    hosts: Dict[str, Address] = {}
    deadline = channel.clock() + config.discovery_window
    while channel.clock() < deadline:
        received = channel.receive(min(config.receive_poll, config.discovery_window))
        if received is None:
            continue
        message, address = received
        if isinstance(message, IAmHosting):
            ip = message.ip if message.ip not in ("", "0.0.0.0") else address[0]
            hosts[message.name] = (ip, message.port)
            if logger:
                logger.log_battle_event("Found host", {"name": message.name, "ip": ip,
                                                       "port": message.port})
    return hosts


class JoinerHandshake:
    """Joiner side of pairing."""

    def __init__(self, local: PeerDescriptor, channel: ReliableChannel,
                 config: Optional[ProtocolConfig] = None,
                 logger: Optional[DebugLogger] = None):
        self.local = local
        self.channel = channel
        self.config = config or ProtocolConfig()
        self.logger = logger
        self.host: Optional[PeerDescriptor] = None
        self.seed: Optional[int] = None

    def request(self, host_address: Address, host_name: str = "Host") -> int:
        """
        Ask a host for a match.

        Once the host acknowledges the request the answer may take as long
        as its player needs to decide, so the wait has no deadline.

        Returns:
            The shared seed

        Raises:
            HandshakeRejectedError: The host declined
            DeliveryFailedError: The host never acknowledged the request
        """
        host_address = (host_address[0], int(host_address[1]))
        seq_num = self.channel.send_reliable(HandshakeRequest(name=self.local.name),
                                             host_address)
        message, address = wait_for(
            self.channel,
            {MessageType.HANDSHAKE_RESPONSE, MessageType.HANDSHAKE_REJECTED},
            self.config, watch={seq_num})

        if isinstance(message, HandshakeRejected):
            if self.logger:
                self.logger.log_warning("Handshake rejected", {"reason": message.reason})
            raise HandshakeRejectedError(message.reason)

        self.seed = message.seed
        self.host = PeerDescriptor.remote(host_name, address)
        if self.logger:
            self.logger.log_connection(address, "Host")
            self.logger.log_battle_event("Battle seed received", {"seed": self.seed})
        return self.seed


def send_comm_mode(channel: ReliableChannel, joiner_address: Address,
                   mode: CommunicationMode) -> int:
    """Host announces the communication mode to the joiner."""
    return channel.send_reliable(CommMode(cmode=mode.value), joiner_address)


def await_comm_mode(channel: ReliableChannel, config: ProtocolConfig,
                    timeout: Optional[float] = None) -> CommunicationMode:
    """
    Joiner waits for the host's COMM_MODE.

    Raises:
        ProtocolError: The host sent an unknown mode token
    """
    message, _ = wait_for(channel, {MessageType.COMM_MODE}, config, timeout=timeout)
    try:
        return CommunicationMode.from_wire(message.cmode)
    except ValueError as e:
        raise ProtocolError(f"Unknown communication mode: {message.cmode!r}") from e


def exchange_battle_setup(channel: ReliableChannel, opponent: Address,
                          own_setup: BattleSetup, config: ProtocolConfig,
                          relay: Optional[SpectatorRelay] = None,
                          lobby: Optional[HostHandshake] = None,
                          timeout: Optional[float] = None) -> BattleSetup:
    """
    Send our BATTLE_SETUP and wait for the opponent's.

    On the host, ``relay`` copies both setups to the spectators.

    Returns:
        The opponent's BATTLE_SETUP
    """
    if relay is not None:
        seq_num = relay.send(own_setup, opponent)
        relay.mirror(own_setup)
    else:
        seq_num = channel.send_reliable(own_setup, opponent)

    message, _ = wait_for(channel, {MessageType.BATTLE_SETUP}, config,
                          timeout=timeout, lobby=lobby, watch={seq_num})
    if relay is not None:
        relay.relay_inbound(message)
    return message


def combatant_from_setup(setup: BattleSetup, roster: PokemonDataLoader,
                         allocation: int) -> CombatantState:
    """
    Build the combatant a BATTLE_SETUP describes.

    Raises:
        UnknownPokemonError: The Pokémon is not in the local roster
        ProtocolError: The boost allocation breaks the limits
    """
    pokemon = roster.get_pokemon(setup.pokemon_name)
    try:
        return CombatantState(pokemon, setup.special_attack_uses,
                              setup.special_defense_uses, allocation)
    except ValueError as e:
        raise ProtocolError(f"Invalid battle setup for {setup.pokemon_name}: {e}") from e

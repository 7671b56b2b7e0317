"""
Command line interface.

    pokeprotocol host  --name Ash  --pokemon Pikachu --mode P
    pokeprotocol join  --name Gary --pokemon Charmander [--host 192.168.1.5:50000]
    pokeprotocol spectate --name Brock [--host 192.168.1.5:50000]

Missing choices are asked for interactively. Once the battle starts, console
input is read by a background thread and merged into the same ``select`` as
the network socket, so chat can be typed at any time.
"""

import argparse
import socket
import sys
import threading
from typing import List, Optional, Tuple

from . import __version__
from .battle import CombatantState
from .chat import ChatHandler
from .config import DISCOVERY_PORT, ProtocolConfig
from .coordinator import BattleResult, TurnCoordinator, boost_when_available, never_boost
from .debug_logger import DebugLogger
from .discovery import (HostHandshake, JoinerHandshake, await_comm_mode,
                        combatant_from_setup, discover_hosts, exchange_battle_setup,
                        send_comm_mode)
from .errors import ProtocolError
from .game_data import Pokemon, PokemonDataLoader
from .messages import BattleSetup
from .peer import Address, bind_local
from .relay import SpectatorRelay
from .reliability import ReliableChannel
from .session import BattleSession, CommunicationMode, Side
from .spectator import SpectatorPeer


class LineSource:
    """
    Console lines delivered through a socket pair.

    A daemon thread copies stdin into one end; the other end can be passed
    to ``select`` next to the UDP socket.
    """

    def __init__(self, stream=None):
        self.stream = stream if stream is not None else sys.stdin
        self._reader, self._writer = socket.socketpair()
        self._buffer = b""
        self._thread = threading.Thread(target=self._pump, name="console-input", daemon=True)

    def start(self) -> 'LineSource':
        self._thread.start()
        return self

    def _pump(self):
        for line in self.stream:
            try:
                self._writer.sendall(line.encode('utf-8'))
            except OSError:
                return

    def fileno(self) -> int:
        return self._reader.fileno()

    def read_lines(self) -> List[str]:
        """Complete lines received so far; call when ``select`` reports ready."""
        data = self._reader.recv(4096)
        self._buffer += data
        *lines, self._buffer = self._buffer.split(b"\n")
        return [line.decode('utf-8', errors='replace').rstrip('\r') for line in lines]

    def close(self):
        self._reader.close()
        self._writer.close()


def get_user_input(prompt: str, default: Optional[str] = None) -> str:
    """Get user input with an optional default value."""
    prompt_text = f"{prompt} (default: {default}): " if default else f"{prompt}: "
    user_input = input(prompt_text).strip()
    if not user_input and default:
        return default
    return user_input


def ask_yes_no(prompt: str) -> bool:
    while True:
        answer = input(f"{prompt} (Y/N): ").strip().lower()
        if answer in ("y", "yes"):
            return True
        if answer in ("n", "no"):
            return False
        print("Please enter Y or N")


def parse_address(text: str, default_port: int = DISCOVERY_PORT) -> Address:
    """Parse ``ip[:port]``."""
    host, _, port = text.rpartition(":")
    if not host:
        return text, default_port
    return host, int(port)


def choose_pokemon(roster: PokemonDataLoader, name: Optional[str]) -> Pokemon:
    """Look up the requested Pokémon, prompting until a known one is given."""
    while True:
        if not name:
            print("Available Pokémon: " + ", ".join(roster.get_all_pokemon_names()))
            name = get_user_input("Pokémon name")
        try:
            return roster.get_pokemon(name)
        except ProtocolError as e:
            print(f"✗ {e}")
            name = None


def choose_host(hosts) -> Tuple[str, Address]:
    names = sorted(hosts)
    if len(names) == 1:
        return names[0], hosts[names[0]]
    for number, name in enumerate(names, 1):
        ip, port = hosts[name]
        print(f"  {number}. {name} at {ip}:{port}")
    while True:
        choice = get_user_input("Host number", "1")
        if choice.isdigit() and 1 <= int(choice) <= len(names):
            name = names[int(choice) - 1]
            return name, hosts[name]
        print("✗ Invalid choice")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pokeprotocol",
                                     description="Peer-to-peer Pokémon battles over UDP")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subcommands = parser.add_subparsers(dest="command", required=True)

    def common(sub, default_port):
        sub.add_argument("--name", help="trainer name")
        sub.add_argument("--bind", default="", help="interface to bind (default: all)")
        sub.add_argument("--port", type=int, default=default_port,
                         help="local UDP port (0 picks a free one)")
        sub.add_argument("--verbose", action="store_true", help="print protocol events")
        sub.add_argument("--log-json", metavar="FILE", help="write the event log to FILE")

    def player(sub):
        sub.add_argument("--pokemon", help="Pokémon to battle with")
        sub.add_argument("--data", metavar="CSV", help="Pokémon roster file")
        sub.add_argument("--special-attack-uses", type=int, default=5)
        sub.add_argument("--special-defense-uses", type=int, default=5)
        sub.add_argument("--defense-boost", action="store_true",
                         help="spend a special defense boost against every special move")

    host = subcommands.add_parser("host", help="host a battle")
    common(host, DISCOVERY_PORT)
    player(host)
    host.add_argument("--mode", choices=("P", "B"), default="P",
                      help="P: peer-to-peer, B: broadcast to spectators")
    host.add_argument("--seed", type=int, help="force the shared battle seed")
    host.add_argument("--auto-accept", action="store_true",
                      help="accept the first joiner without asking")
    host.add_argument("--no-spectators", action="store_true",
                      help="reject spectator requests")

    join = subcommands.add_parser("join", help="join a hosted battle")
    common(join, 0)
    player(join)
    join.add_argument("--host", help="host address ip[:port]; discovered when omitted")

    spectate = subcommands.add_parser("spectate", help="watch a hosted battle")
    common(spectate, 0)
    spectate.add_argument("--host", help="host address ip[:port]; discovered when omitted")
    spectate.add_argument("--data", metavar="CSV", help="Pokémon roster file")
    return parser


def _own_combatant(args, roster: PokemonDataLoader, config: ProtocolConfig) -> CombatantState:
    pokemon = choose_pokemon(roster, args.pokemon)
    return CombatantState(pokemon, args.special_attack_uses, args.special_defense_uses,
                          config.boost_allocation)


def _print_result(result: BattleResult):
    print("\n" + "=" * 60)
    print(f"  Winner: {result.winner}   Loser: {result.loser}   Turns: {result.turns}")
    print("=" * 60)


def run_host(args, config: ProtocolConfig, logger: DebugLogger) -> int:
    name = args.name or get_user_input("Trainer name", "Host")
    roster = PokemonDataLoader(args.data)
    own = _own_combatant(args, roster, config)
    mode = CommunicationMode.from_wire(args.mode)

    local = bind_local(name, args.bind, args.port, config.discovery_port_range)
    logger.peer_port = local.port
    print(f"Host ready on port {local.port}")
    channel = ReliableChannel(local.sock, config.ack_timeout, config.max_retries, logger)
    handshake = HostHandshake(local, channel, config, logger, seed=args.seed)

    def decide(joiner_name: str, address: Address) -> bool:
        if args.auto_accept:
            return True
        return ask_yes_no(f"{joiner_name} ({address[0]}:{address[1]}) wants to battle. Accept?")

    print("Waiting for a joiner...")
    pairing = handshake.wait_for_match(decide)
    print(f"{pairing.joiner.name} joined. Battle seed: {pairing.seed}")

    relay = SpectatorRelay(channel, mode, pairing.spectators, is_host=True,
                           opponent=pairing.joiner.address, logger=logger)
    handshake.relay = relay
    send_comm_mode(channel, pairing.joiner.address, mode)

    own_setup = BattleSetup(mode.value, own.name, own.special_attack_uses,
                            own.special_defense_uses)
    their_setup = exchange_battle_setup(channel, pairing.joiner.address, own_setup, config,
                                        relay=relay, lobby=handshake)
    opponent = combatant_from_setup(their_setup, roster, config.boost_allocation)
    print(f"{pairing.joiner.name} chose {opponent.name}")

    session = BattleSession(host=local, joiner=pairing.joiner, host_combatant=own,
                            joiner_combatant=opponent, seed=pairing.seed, mode=mode,
                            spectators=pairing.spectators, logger=logger)
    return _play(session, Side.HOST, channel, relay, args, config, logger, lobby=handshake)


def run_join(args, config: ProtocolConfig, logger: DebugLogger) -> int:
    name = args.name or get_user_input("Trainer name", "Joiner")
    roster = PokemonDataLoader(args.data)
    own = _own_combatant(args, roster, config)

    local = bind_local(name, args.bind, args.port, config.discovery_port_range)
    logger.peer_port = local.port
    channel = ReliableChannel(local.sock, config.ack_timeout, config.max_retries, logger)
    host_name, host_address = _locate_host(args, channel, config, logger)

    handshake = JoinerHandshake(local, channel, config, logger)
    seed = handshake.request(host_address, host_name)
    print(f"Connected to {host_name}. Battle seed: {seed}")
    mode = await_comm_mode(channel, config)

    own_setup = BattleSetup(mode.value, own.name, own.special_attack_uses,
                            own.special_defense_uses)
    their_setup = exchange_battle_setup(channel, handshake.host.address, own_setup, config)
    opponent = combatant_from_setup(their_setup, roster, config.boost_allocation)
    print(f"{host_name} chose {opponent.name}")

    session = BattleSession(host=handshake.host, joiner=local, host_combatant=opponent,
                            joiner_combatant=own, seed=seed, mode=mode, logger=logger)
    return _play(session, Side.JOINER, channel, None, args, config, logger)


def run_spectate(args, config: ProtocolConfig, logger: DebugLogger) -> int:
    name = args.name or get_user_input("Spectator name", "Spectator")
    local = bind_local(name, args.bind, args.port, config.discovery_port_range)
    logger.peer_port = local.port
    channel = ReliableChannel(local.sock, config.ack_timeout, config.max_retries, logger)
    host_name, host_address = _locate_host(args, channel, config, logger)

    source = LineSource().start()
    spectator = SpectatorPeer(local, channel, PokemonDataLoader(args.data), config, logger,
                              chat=ChatHandler(name, config, logger=logger),
                              input_source=source)
    try:
        spectator.join(host_address, host_name)
        spectator.watch()
    finally:
        source.close()
    return 0


def _locate_host(args, channel: ReliableChannel, config: ProtocolConfig,
                 logger: DebugLogger) -> Tuple[str, Address]:
    if args.host:
        return "Host", parse_address(args.host, config.discovery_port)
    print("Looking for hosts...")
    hosts = discover_hosts(channel, config, logger)
    if not hosts:
        raise ProtocolError("No hosts found on the local network")
    return choose_host(hosts)


def _play(session: BattleSession, side: Side, channel: ReliableChannel,
          relay: Optional[SpectatorRelay], args, config: ProtocolConfig,
          logger: DebugLogger, lobby: Optional[HostHandshake] = None) -> int:
    source = LineSource().start()
    chat = ChatHandler(session.descriptor(side).name, config, logger=logger)
    coordinator = TurnCoordinator(
        session, side, channel, relay, config=config, logger=logger, chat=chat,
        defense_boost_policy=boost_when_available if args.defense_boost else never_boost,
        lobby=lobby, input_source=source)
    print("Battle started! Type a move name or number on your turn; "
          "anything else is sent as chat.")
    try:
        result = coordinator.run()
    finally:
        source.close()
    _print_result(result)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    config = ProtocolConfig(verbose=args.verbose,
                            accept_spectators=not getattr(args, "no_spectators", False))
    logger = DebugLogger(args.command.title(), args.port, verbose=args.verbose)
    runner = {"host": run_host, "join": run_join, "spectate": run_spectate}[args.command]

    try:
        return runner(args, config, logger)
    except (ProtocolError, ValueError) as e:
        logger.log_error("Session failed", e)
        print(f"✗ {e}", file=sys.stderr)
        return 1
    except (KeyboardInterrupt, EOFError):
        print("\nExiting...")
        return 130
    finally:
        if args.log_json:
            logger.export_to_json(args.log_json)

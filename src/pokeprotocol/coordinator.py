"""
Battle Turn Coordinator Module

Drives a paired session turn by turn. Each turn runs the same exchange, with
the attacker's messages on the left and the defender's on the right:

    ATTACK_ANNOUNCE     ->
                        <- DEFENSE_ANNOUNCE
    CALCULATION_REPORT  ->
                        <- CALCULATION_CONFIRM  (or RESOLUTION_REQUEST)

Both players compute the damage themselves from the same seeded random
source. The defender only confirms when its result matches the report.

All waiting happens in ``_await``, the single blocking receive loop. While it
waits for the next turn message it also serves chat, late spectators and
the opponent's GAME_OVER, and it reads the local player's typed lines when an
input source is attached.
"""

import select
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Collection, Deque, List, Optional, Tuple

from .battle import (BattleState, CombatantState, DamageCalculator, Discrepancy,
                     TurnOutcome, TurnPhase)
from .chat import ChatHandler
from .config import ProtocolConfig
from .debug_logger import DebugLogger
from .errors import CalculationDiscrepancyError, DeliveryFailedError, ProtocolError
from .game_data import Move
from .messages import (AttackAnnounce, CalculationConfirm, DefenseAnnounce, GameOver,
                       Message, MessageType, ResolutionRequest)
from .peer import Address
from .relay import SpectatorRelay
from .reliability import ReliableChannel, RetransmissionSweeper
from .session import BattleSession, Side

# Served by the wait loop no matter which turn message it is waiting for
SIDE_CHANNEL = frozenset({
    MessageType.CHAT_MESSAGE,
    MessageType.GAME_OVER,
    MessageType.FINDING_HOST,
    MessageType.SPECTATOR_REQUEST,
    MessageType.HANDSHAKE_REQUEST,
})

ResolutionPolicy = Callable[[Discrepancy], Optional[TurnOutcome]]
DefenseBoostPolicy = Callable[[Move, CombatantState], bool]
MoveChooser = Callable[[CombatantState], Tuple[str, bool]]


def raise_on_discrepancy(discrepancy: Discrepancy) -> Optional[TurnOutcome]:
    """Default resolution policy: the mismatch ends the battle."""
    raise CalculationDiscrepancyError(discrepancy)


def never_boost(move: Move, defender: CombatantState) -> bool:
    return False


def boost_when_available(move: Move, defender: CombatantState) -> bool:
    """Spend a special defense boost against every special move."""
    return move.is_special and defender.special_defense_uses > 0


def parse_move_choice(line: str, combatant: CombatantState) -> Optional[Tuple[str, bool]]:
    """
    Read a typed move choice.

    Accepts a move name or its 1-based menu number, optionally followed by
    ``+`` or `` boost`` to spend a special attack boost.

    Returns:
        (move name, boost) or None if the line names no move
    """
    text = line.strip()
    boost = False
    for suffix in ("+", " boost"):
        if text.lower().endswith(suffix):
            text = text[:-len(suffix)].strip()
            boost = True
            break

    moves = combatant.pokemon.moves
    if text.isdigit():
        index = int(text) - 1
        if 0 <= index < len(moves):
            return moves[index].name, boost
        return None
    for move in moves:
        if move.name.lower() == text.lower():
            return move.name, boost
    return None


@dataclass
class BattleResult:
    """Final outcome of a session."""
    winner: str
    loser: str
    turns: int
    event_log: List[str] = field(default_factory=list)


class TurnCoordinator:
    """
    Runs the turn protocol for one side of a session.

    Attributes:
        session: The session being played; owned by this coordinator
        local_side: Which player this process is
        channel: Reliable channel of the local peer
        relay: Spectator fan-out (a non-relaying one for the joiner)
        calculator: Damage formula
        resolution_policy: Called with a Discrepancy; returns the outcome to
            adopt or raises
        defense_boost_policy: Decides whether the defender spends a boost
    """

    def __init__(self, session: BattleSession, local_side: Side,
                 channel: ReliableChannel,
                 relay: Optional[SpectatorRelay] = None,
                 calculator: Optional[DamageCalculator] = None,
                 config: Optional[ProtocolConfig] = None,
                 logger: Optional[DebugLogger] = None,
                 chat: Optional[ChatHandler] = None,
                 resolution_policy: ResolutionPolicy = raise_on_discrepancy,
                 defense_boost_policy: DefenseBoostPolicy = never_boost,
                 lobby=None, input_source=None,
                 display: Callable[[str], None] = print):
        """
        Args:
            lobby: Host handshake serving late discovery and spectator requests
            input_source: Local line source merged into the receive select;
                needs ``fileno()`` and ``read_lines()``
            display: Sink for battle progress lines
        """
        self.session = session
        self.local_side = local_side
        self.channel = channel
        self.config = config or ProtocolConfig()
        self.logger = logger
        self.relay = relay or SpectatorRelay(channel, session.mode, session.spectators,
                                             is_host=local_side is Side.HOST,
                                             opponent=self.opponent.address, logger=logger)
        self.calculator = calculator or DamageCalculator()
        self.chat = chat
        self.resolution_policy = resolution_policy
        self.defense_boost_policy = defense_boost_policy
        self.lobby = lobby
        if lobby is not None:
            # Lobby replies to third parties are tracked as non-fatal
            lobby.relay = self.relay
        self.input_source = input_source
        self.display = display
        self._failures: Deque[int] = deque()
        self._sweeper: Optional[RetransmissionSweeper] = None
        self._choosing = False
        self._chosen: Optional[Tuple[str, bool]] = None

    @property
    def opponent(self):
        return self.session.descriptor(self.local_side.other)

    @property
    def own_combatant(self) -> CombatantState:
        return self.session.combatant(self.local_side)

    @property
    def opponent_combatant(self) -> CombatantState:
        return self.session.combatant(self.local_side.other)

    # ------------------------------------------------------------------
    # Whole battle
    # ------------------------------------------------------------------

    def run(self, choose_move: Optional[MoveChooser] = None) -> BattleResult:
        """
        Play turns until the battle ends.

        Args:
            choose_move: Picks (move name, boost) for the local attacker;
                defaults to prompting on the input source

        Raises:
            CalculationDiscrepancyError: The resolution policy gave up
            DeliveryFailedError: The opponent stopped acknowledging
            PeerIOError: The local socket failed
            ProtocolError: The opponent broke the turn protocol, e.g. announced
                a move its Pokémon does not know
        """
        self._start_sweeper()
        try:
            if self.session.state is BattleState.SETUP:
                self.session.transition(BattleState.WAITING_FOR_MOVE, "battle started")
            while not self.session.is_over:
                self.play_turn(choose_move)
            self._linger(self.config.linger)
        except CalculationDiscrepancyError:
            # Let the RESOLUTION_REQUEST reach the opponent before leaving
            self._linger(0)
            self._abort("calculation discrepancy")
            raise
        except ProtocolError as e:
            self._abort(str(e))
            raise
        finally:
            self._stop_sweeper()

        self.relay.release()
        return self.result()

    def play_turn(self, choose_move: Optional[MoveChooser] = None) -> Optional[TurnOutcome]:
        """Play one turn in whichever role the turn marker gives us."""
        if self.session.current_turn is self.local_side:
            chooser = choose_move or (lambda combatant: self.prompt_move())
            move_name, use_boost = chooser(self.own_combatant)
            if self.session.is_over:
                return None
            return self.attack(move_name, use_boost)
        return self.defend()

    def result(self) -> BattleResult:
        winner = self.session.winner
        if winner is None:
            return BattleResult("", "", self.session.turn_number, list(self.session.event_log))
        return BattleResult(self.session.descriptor(winner).name,
                            self.session.descriptor(winner.other).name,
                            self.session.turn_number, list(self.session.event_log))

    # ------------------------------------------------------------------
    # One turn
    # ------------------------------------------------------------------

    def attack(self, move_name: str, use_boost: bool = False) -> Optional[TurnOutcome]:
        """
        Run one turn as the attacker.

        Returns:
            The confirmed outcome, or None if the opponent ended the battle

        Raises:
            UnknownMoveError: Our Pokémon does not know the move
            ProtocolError: It is not our turn
        """
        self._require_turn(self.local_side)
        own, foe = self.own_combatant, self.opponent_combatant
        move = own.pokemon.find_move(move_name)
        use_boost = bool(use_boost) and move.is_special and own.special_attack_uses > 0

        self._enter(TurnPhase.ANNOUNCING_ATTACK)
        self._send(AttackAnnounce(move.name, attack_boost=use_boost))

        self._enter(TurnPhase.AWAITING_DEFENSE)
        received = self._await({MessageType.DEFENSE_ANNOUNCE})
        if received is None:
            return None
        defense = received[0]

        self._enter(TurnPhase.CALCULATING)
        outcome = self._compute(own, foe, move, use_boost, defense.defense_boost)
        self._send(outcome.to_report())

        self._enter(TurnPhase.AWAITING_CONFIRM)
        received = self._await({MessageType.CALCULATION_CONFIRM,
                                MessageType.RESOLUTION_REQUEST})
        if received is None:
            # The defender declared defeat instead of confirming
            foe.set_hp(outcome.defender_hp_after)
            self.session.log(outcome.status_text)
            return outcome

        reply = received[0]
        if isinstance(reply, ResolutionRequest):
            self._enter(TurnPhase.RESOLVING)
            remote = TurnOutcome.from_resolution_request(reply)
            outcome = self._resolve(Discrepancy(outcome, remote, raised_by_local=False))

        foe.set_hp(outcome.defender_hp_after)
        self._complete_turn(outcome)
        return outcome

    def defend(self) -> Optional[TurnOutcome]:
        """
        Run one turn as the defender.

        Returns:
            The agreed outcome, or None if the opponent ended the battle

        Raises:
            UnknownMoveError: The attacker announced a move its Pokémon lacks
            CalculationDiscrepancyError: Our computation differs and the
                resolution policy gave up
        """
        self._require_turn(self.local_side.other)
        own, foe = self.own_combatant, self.opponent_combatant

        self._enter(TurnPhase.AWAITING_ATTACK)
        received = self._await({MessageType.ATTACK_ANNOUNCE})
        if received is None:
            return None
        announce = received[0]
        move = foe.pokemon.find_move(announce.move_name)

        defense_boost = (bool(self.defense_boost_policy(move, own)) and move.is_special
                         and own.special_defense_uses > 0)
        self._send(DefenseAnnounce(defense_boost=defense_boost))

        self._enter(TurnPhase.CALCULATING)
        local = self._compute(foe, own, move, announce.attack_boost, defense_boost)

        self._enter(TurnPhase.AWAITING_REPORT)
        received = self._await({MessageType.CALCULATION_REPORT})
        if received is None:
            return None
        remote = TurnOutcome.from_report(received[0])

        self._enter(TurnPhase.VERIFYING)
        if local.matches(remote):
            outcome = remote
            own.set_hp(outcome.defender_hp_after)
            self._send(CalculationConfirm())
        else:
            self._enter(TurnPhase.RESOLVING)
            self._send(local.to_resolution_request())
            outcome = self._resolve(Discrepancy(local, remote, raised_by_local=True))
            own.set_hp(outcome.defender_hp_after)

        self._complete_turn(outcome)
        return outcome

    def _compute(self, attacker: CombatantState, defender: CombatantState, move: Move,
                 attack_boost: bool, defense_boost: bool) -> TurnOutcome:
        # Boosts are spent on both copies of the state, then exactly one draw
        attack_boost = attack_boost and attacker.spend_attack_boost(move)
        defense_boost = defense_boost and defender.spend_defense_boost(move)
        random_factor = self.calculator.draw(self.session.rng)
        return self.calculator.calculate(attacker, defender, move, random_factor,
                                         attack_boost, defense_boost)

    def _resolve(self, discrepancy: Discrepancy) -> TurnOutcome:
        self.session.log(f"Calculation discrepancy: {discrepancy.describe()}")
        if self.logger:
            self.logger.log_discrepancy(discrepancy.describe(), {
                "local_damage": discrepancy.local.damage,
                "remote_damage": discrepancy.remote.damage,
                "detected_locally": discrepancy.raised_by_local,
            })
        adopted = self.resolution_policy(discrepancy)
        if adopted is None:
            raise CalculationDiscrepancyError(discrepancy)
        return adopted

    def _complete_turn(self, outcome: TurnOutcome):
        attacker_side = self.session.current_turn
        defender_side = attacker_side.other
        self.session.log(outcome.status_text or
                         f"{outcome.attacker} used {outcome.move_used} for {outcome.damage}")
        self.display(outcome.status_text)
        self.display(f"  {self.session.host_combatant.status()} | "
                     f"{self.session.joiner_combatant.status()}")

        if self.session.combatant(defender_side).is_fainted():
            if defender_side is self.local_side:
                self._send(GameOver(winner=self.opponent.name,
                                    loser=self.session.descriptor(self.local_side).name))
            self.session.turn_number += 1
            self.session.finish(attacker_side)
            self.display(f"{self.session.descriptor(attacker_side).name} wins!")
            return

        self.session.switch_turn()
        self.session.transition(BattleState.WAITING_FOR_MOVE, "turn complete")

    def _require_turn(self, attacker: Side):
        if self.session.is_over:
            raise ProtocolError("The battle is over")
        if self.session.current_turn is not attacker:
            raise ProtocolError(f"It is {self.session.current_turn.value}'s turn to attack")
        self.session.transition(BattleState.PROCESSING_TURN)

    def _enter(self, phase: TurnPhase):
        self.session.phase = phase

    # ------------------------------------------------------------------
    # Sending and waiting
    # ------------------------------------------------------------------

    def _send(self, message: Message) -> int:
        seq_num = self.relay.send(message, self.opponent.address)
        self.relay.mirror(message)
        return seq_num

    def send_chat(self, text: str) -> Optional[int]:
        """Send a chat line to the opponent (and, on the host, to spectators)."""
        if self.chat is None:
            return None
        try:
            message = self.chat.make_message(text)
        except ValueError as e:
            self.display(str(e))
            return None
        self.chat.show(message, "SENT")
        return self._send(message)

    def prompt_move(self) -> Tuple[str, bool]:
        """
        Wait for the local player to type a move, serving traffic meanwhile.

        Lines that do not name a move are sent as chat.

        Raises:
            ProtocolError: No input source is attached
        """
        if self.input_source is None:
            raise ProtocolError("No input source to read a move from")

        own = self.own_combatant
        self.display("Your move:")
        for number, move in enumerate(own.pokemon.moves, 1):
            self.display(f"  {number}. {move.name} ({move.move_type}, {move.damage_category}, "
                         f"power {move.power:g})")
        self.display(f"  Special attack boosts left: {own.special_attack_uses} "
                     "(append + to use one)")

        self._choosing, self._chosen = True, None
        try:
            self._await((), until=lambda: self._chosen is not None or self.session.is_over)
        finally:
            self._choosing = False
        return self._chosen or (own.pokemon.moves[0].name, False)

    def _await(self, kinds: Collection[MessageType],
               until: Optional[Callable[[], bool]] = None) -> Optional[Tuple[Message, Address]]:
        """
        The blocking receive loop.

        Returns:
            (message, address) for the first message of ``kinds`` from the
            opponent, or None once the session is over or ``until`` holds

        Raises:
            DeliveryFailedError: A message to the opponent was never acknowledged
        """
        skipped: List[Tuple[Message, Address]] = []
        try:
            while True:
                self._check_failures()
                if self.session.is_over or (until is not None and until()):
                    return None

                received = self._poll()
                if received is None:
                    continue
                message, address = received
                if self.channel.is_stale(message, address):
                    continue

                kind = message.message_type
                from_opponent = address == self.opponent.address
                if kind in kinds and from_opponent:
                    self.channel.accept(message, address)
                    self.relay.relay_inbound(message)
                    return message, address
                if kind in SIDE_CHANNEL:
                    self.channel.accept(message, address)
                    self._handle_side(message, address)
                    continue
                if from_opponent:
                    skipped.append(received)
                    continue

                self.channel.accept(message, address)
                if self.logger:
                    self.logger.log_warning(f"Ignored {kind.value} from a non-player",
                                            {"address": address[0], "port": address[1]})
        finally:
            self.channel.requeue(skipped)

    def _poll(self) -> Optional[Tuple[Message, Address]]:
        if self.input_source is None or self.channel.has_deferred():
            return self.channel.receive(self.config.receive_poll)

        ready, _, _ = select.select([self.channel, self.input_source], [], [],
                                    self.config.receive_poll)
        if self.input_source in ready:
            self._handle_input()
        if self.channel in ready:
            return self.channel.receive(0)
        return None

    def _handle_input(self):
        for line in self.input_source.read_lines():
            if not line.strip():
                continue
            if self._choosing and self._chosen is None:
                choice = parse_move_choice(line, self.own_combatant)
                if choice is not None:
                    self._chosen = choice
                    continue
            self.send_chat(line)

    def _handle_side(self, message: Message, address: Address):
        kind = message.message_type

        if kind is MessageType.CHAT_MESSAGE:
            if self.chat is not None and not self.chat.is_own(message):
                self.chat.show(message)
            self.relay.relay_chat(message, address, address == self.opponent.address)

        elif kind is MessageType.GAME_OVER:
            if address != self.opponent.address:
                return
            self.relay.relay_inbound(message)
            if self.session.is_over:
                return
            local_name = self.session.descriptor(self.local_side).name
            winner = self.local_side if message.winner == local_name else self.local_side.other
            self.session.finish(winner)
            self.display(f"{message.winner} wins! {message.loser} is out of the battle.")

        elif self.lobby is not None:
            self.lobby.handle(message, address)

        elif self.logger:
            self.logger.log_warning(f"Ignored {kind.value} during battle",
                                    {"address": address[0], "port": address[1]})

    def _check_failures(self):
        if self._sweeper is None:
            self._failures.extend(self.channel.check_retransmissions())

        fatal: List[int] = []
        spectator_losses: List[int] = []
        while self._failures:
            seq_num = self._failures.popleft()
            (spectator_losses if self.relay.owns(seq_num) else fatal).append(seq_num)

        if spectator_losses:
            self.relay.drop_unreachable(spectator_losses)
        if fatal:
            raise DeliveryFailedError(fatal)

    def _linger(self, minimum: float):
        """
        Keep acknowledging and retransmitting after the battle ends.

        Runs for at least ``minimum`` seconds and until our own sends are
        acknowledged or have run out of retries.
        """
        clock = self.channel.clock
        start = clock()
        hard_stop = start + minimum + self.config.ack_timeout * (self.config.max_retries + 2)

        while clock() < hard_stop:
            if clock() - start >= minimum and not self.channel.has_pending():
                break
            if self._sweeper is None:
                self.channel.check_retransmissions()
            self._failures.clear()

            received = self.channel.receive(self.config.receive_poll)
            if received is None:
                continue
            message, address = received
            if self.channel.is_stale(message, address):
                continue
            self.channel.accept(message, address)
            if message.message_type in SIDE_CHANNEL:
                self._handle_side(message, address)

    def _abort(self, reason: str):
        if not self.session.is_over:
            self.session.transition(BattleState.DISCONNECTED, reason)
        self.session.log(f"Session ended: {reason}")
        self.relay.release()
        if self.logger:
            self.logger.log_disconnection(self.opponent.address)

    def _start_sweeper(self):
        if self._sweeper is not None:
            return
        self._sweeper = RetransmissionSweeper(self.channel, self.config.sweep_interval,
                                              on_failure=self._failures.extend)
        self._sweeper.start()

    def _stop_sweeper(self):
        if self._sweeper is not None:
            self._sweeper.stop()
            self._sweeper = None

"""
Automated Test Suite for PokeProtocol

Unit tests for the codec, the reliability layer, the battle math and the
session/relay/handshake logic. These tests run on a single machine without
any network traffic; see test_integration.py for loopback UDP scenarios.
"""

import base64
import random
import sys
import threading
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent / 'src'))

from pokeprotocol.battle import (BattleState, CombatantState, DamageCalculator,
                                 Discrepancy, TurnOutcome)
from pokeprotocol.chat import ChatHandler, validate_sticker
from pokeprotocol.cli import parse_address
from pokeprotocol.config import ProtocolConfig
from pokeprotocol.coordinator import TurnCoordinator, parse_move_choice
from pokeprotocol.debug_logger import DebugLogger, EventType
from pokeprotocol.discovery import HandshakeState, HostHandshake, combatant_from_setup
from pokeprotocol.errors import (CalculationDiscrepancyError, PeerIOError, ProtocolError,
                                 UnknownMoveError, UnknownPokemonError)
from pokeprotocol.game_data import (Move, Pokemon, PokemonDataLoader,
                                    get_type_effectiveness)
from pokeprotocol.messages import (Ack, AttackAnnounce, BattleSetup, CalculationConfirm,
                                   CalculationReport, ChatMessage, CommMode,
                                   DefenseAnnounce, FindingHost, GameOver,
                                   HandshakeRejected, HandshakeRequest, HandshakeResponse,
                                   IAmHosting, ResolutionRequest,
                                   SpectatorRequest, decode, encode, parse_fields)
from pokeprotocol.peer import PeerDescriptor
from pokeprotocol.relay import SpectatorRelay
from pokeprotocol.reliability import ReliableChannel
from pokeprotocol.session import BattleSession, CommunicationMode, Side
from pokeprotocol.spectator import SpectatorPeer

HOST_ADDR = ("10.0.0.1", 50000)
JOINER_ADDR = ("10.0.0.2", 50001)
SPECTATOR_A = ("10.0.0.3", 50002)
SPECTATOR_B = ("10.0.0.4", 50003)
SPECTATOR_C = ("10.0.0.5", 50004)


class FakeSocket:
    """Records datagrams instead of sending them."""

    def __init__(self):
        self.sent = []

    def sendto(self, data, address):
        self.sent.append((data, address))
        return len(data)

    def fileno(self):
        return -1

    def messages_to(self, address):
        return [decode(data) for data, target in self.sent if target == address]

    def all_messages(self):
        return [(decode(data), target) for data, target in self.sent]


class RefusingSocket(FakeSocket):
    """Refuses every datagram, like a payload over the UDP limit."""

    def sendto(self, data, address):
        raise OSError(90, "Message too long")


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def make_channel(timeout=0.5, max_retries=3):
    sock, clock = FakeSocket(), FakeClock()
    return ReliableChannel(sock, timeout, max_retries, clock=clock), sock, clock


class TestPokemonDataLoader(unittest.TestCase):
    """Test Pokemon data loading and lookup."""

    def setUp(self):
        self.loader = PokemonDataLoader()

    def test_load_pokemon_success(self):
        pikachu = self.loader.get_pokemon("Pikachu")
        self.assertEqual(pikachu.name, "Pikachu")
        self.assertEqual(pikachu.type1, "electric")
        self.assertIsNone(pikachu.type2)

    def test_lookup_is_case_insensitive(self):
        self.assertEqual(self.loader.get_pokemon("  charizard ").name, "Charizard")

    def test_unknown_pokemon_is_recoverable(self):
        with self.assertRaises(UnknownPokemonError) as ctx:
            self.loader.get_pokemon("Missingno")
        self.assertEqual(ctx.exception.name, "Missingno")
        self.assertIsInstance(ctx.exception, LookupError)

    def test_default_moves_follow_types(self):
        charizard = self.loader.get_pokemon("Charizard")
        names = [move.name for move in charizard.moves]
        self.assertEqual(names, ["Tackle", "Fire Attack", "Flying Attack", "Special Blast"])
        self.assertTrue(charizard.find_move("fire attack").is_special)
        self.assertFalse(charizard.find_move("Flying Attack").is_special)

    def test_unknown_move(self):
        with self.assertRaises(UnknownMoveError):
            self.loader.get_pokemon("Pikachu").find_move("Hyper Beam")


class TestTypeEffectiveness(unittest.TestCase):
    """Test the type chart lookups."""

    def test_known_matchups(self):
        self.assertEqual(get_type_effectiveness("fire", "grass"), 2.0)
        self.assertEqual(get_type_effectiveness("water", "fire"), 2.0)
        self.assertEqual(get_type_effectiveness("normal", "ghost"), 0.0)
        self.assertEqual(get_type_effectiveness("grass", "fire"), 0.5)

    def test_missing_entries_are_neutral(self):
        self.assertEqual(get_type_effectiveness("normal", "water"), 1.0)
        self.assertEqual(get_type_effectiveness("fire", None), 1.0)


class TestMessageCodec(unittest.TestCase):
    """Test message serialization and deserialization."""

    def test_wire_format(self):
        data = encode(AttackAnnounce("Thunderbolt", attack_boost=True, sequence_number=5))
        self.assertEqual(data, b"message_type: ATTACK_ANNOUNCE\nmove_name: Thunderbolt\n"
                               b"attack_boost: true\nsequence_number: 5\n")

    def test_round_trip(self):
        samples = [
            FindingHost(),
            IAmHosting("Ash", "192.168.1.5", 50000),
            HandshakeRequest("Gary", 1),
            HandshakeResponse(seed=42, sequence_number=2),
            HandshakeRejected("Declined by host", 3),
            SpectatorRequest("Brock", 4),
            BattleSetup("P", "Pikachu", 5, 5, 6),
            CommMode("B", 7),
            AttackAnnounce("Fire Attack", True, 8),
            DefenseAnnounce(False, 9),
            CalculationReport("Charizard", "Fire Attack", 78, 50, 29,
                              "Charizard used Fire Attack! It was super effective!", 10),
            CalculationConfirm(11),
            ResolutionRequest("Charizard", "Fire Attack", 48, 31, 12),
            GameOver("Ash", "Gary", 13),
            ChatMessage("Ash", "TEXT", message_text="Good luck!", sequence_number=14),
            ChatMessage("Ash", "STICKER", sticker_data="/smile", sequence_number=15),
            Ack(16),
        ]
        for message in samples:
            with self.subTest(kind=message.message_type.value):
                self.assertEqual(decode(encode(message)), message)

    def test_integer_coercion(self):
        kind, fields = parse_fields(b"message_type: I_AM_HOSTING\nname: Ash\nport: 50000\n"
                                    b"offset: -3\n")
        self.assertEqual(kind, "I_AM_HOSTING")
        self.assertEqual(fields, {"name": "Ash", "port": 50000, "offset": -3})

    def test_numeric_looking_text_is_lossy(self):
        parsed = decode(encode(ChatMessage("Ash", message_text="007", sequence_number=1)))
        self.assertEqual(parsed.message_text, "7")
        parsed = decode(encode(ChatMessage("1234", message_text="42", sequence_number=1)))
        self.assertEqual(parsed.sender_name, "1234")
        self.assertEqual(parsed.message_text, "42")

    def test_malformed_lines_are_skipped(self):
        parsed = decode(b"message_type: ACK\nthis line has no separator\n\nack_number: 3\n")
        self.assertEqual(parsed, Ack(3))

    def test_unknown_fields_are_ignored(self):
        parsed = decode(b"message_type: CALCULATION_CONFIRM\nsequence_number: 4\nextra: 1\n")
        self.assertEqual(parsed, CalculationConfirm(4))

    def test_unusable_records(self):
        self.assertIsNone(decode(b"message_type: NOT_A_KIND\n"))
        self.assertIsNone(decode(b"move_name: Tackle\n"))
        self.assertIsNone(decode(b"message_type: ACK\n"))
        self.assertIsNone(decode(b"message_type: ACK\nack_number: three\n"))
        self.assertIsNone(decode(b"\xff\xfe\x00garbage"))

    def test_optional_flags_default_false(self):
        parsed = decode(b"message_type: DEFENSE_ANNOUNCE\nsequence_number: 2\n")
        self.assertFalse(parsed.defense_boost)


class TestReliableChannel(unittest.TestCase):
    """Test reliability layer functionality."""

    def setUp(self):
        self.channel, self.sock, self.clock = make_channel()

    def test_sequence_numbers_strictly_increase(self):
        numbers = [self.channel.next_sequence_number() for _ in range(50)]
        self.assertEqual(numbers, list(range(1, 51)))

    def test_sequence_numbers_unique_across_threads(self):
        results = []
        lock = threading.Lock()

        def worker():
            mine = [self.channel.next_sequence_number() for _ in range(250)]
            with lock:
                results.extend(mine)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(sorted(results), list(range(1, 1001)))

    def test_send_reliable_stamps_sequence_number(self):
        message = AttackAnnounce("Tackle")
        seq_num = self.channel.send_reliable(message, JOINER_ADDR)
        self.assertEqual(message.sequence_number, seq_num)
        self.assertEqual(self.sock.messages_to(JOINER_ADDR)[0].sequence_number, seq_num)
        self.assertTrue(self.channel.has_pending())

    def test_ack_is_idempotent(self):
        first = self.channel.send_reliable(DefenseAnnounce(), HOST_ADDR)
        second = self.channel.send_reliable(CalculationConfirm(), HOST_ADDR)
        self.assertTrue(self.channel.receive_ack(first))
        self.assertFalse(self.channel.receive_ack(first))
        self.assertEqual(list(self.channel.pending_snapshot()), [second])

    def test_send_ack_is_not_tracked(self):
        self.channel.send_ack(9, HOST_ADDR)
        self.assertFalse(self.channel.has_pending())
        self.assertEqual(self.sock.messages_to(HOST_ADDR), [Ack(9)])

    def test_no_retransmission_before_timeout(self):
        self.channel.send_reliable(AttackAnnounce("Tackle"), JOINER_ADDR)
        self.clock.advance(0.4)
        self.assertEqual(self.channel.check_retransmissions(), [])
        self.assertEqual(len(self.sock.sent), 1)

    def test_retry_budget_and_single_failure_report(self):
        seq_num = self.channel.send_reliable(AttackAnnounce("Tackle"), JOINER_ADDR)
        reports = []
        for _ in range(6):
            self.clock.advance(0.6)
            reports.append(self.channel.check_retransmissions())

        transmissions = self.sock.messages_to(JOINER_ADDR)
        self.assertEqual(len(transmissions), 1 + 3)
        self.assertTrue(all(m.sequence_number == seq_num for m in transmissions))
        self.assertEqual(reports, [[], [], [], [seq_num], [], []])
        self.assertFalse(self.channel.has_pending())

    def test_acknowledged_message_not_retransmitted(self):
        seq_num = self.channel.send_reliable(AttackAnnounce("Tackle"), JOINER_ADDR)
        self.channel.receive_ack(seq_num)
        self.clock.advance(5)
        self.assertEqual(self.channel.check_retransmissions(), [])
        self.assertEqual(len(self.sock.sent), 1)

    def test_duplicates_keyed_by_sender(self):
        self.channel.mark_received(HOST_ADDR, 3)
        self.assertTrue(self.channel.is_duplicate(HOST_ADDR, 3))
        self.assertFalse(self.channel.is_duplicate(SPECTATOR_A, 3))

    def test_is_stale_consumes_acks_and_duplicates(self):
        seq_num = self.channel.send_reliable(CalculationConfirm(), HOST_ADDR)
        self.assertTrue(self.channel.is_stale(Ack(seq_num), HOST_ADDR))
        self.assertFalse(self.channel.has_pending())

        report = CalculationConfirm(sequence_number=7)
        self.assertFalse(self.channel.is_stale(report, HOST_ADDR))
        self.channel.accept(report, HOST_ADDR)
        self.assertTrue(self.channel.is_stale(report, HOST_ADDR))
        # Accepted once and re-acknowledged as a duplicate
        self.assertEqual(self.sock.messages_to(HOST_ADDR)[-2:], [Ack(7), Ack(7)])

    def test_requeued_messages_come_first(self):
        early = (BattleSetup("P", "Pikachu", 5, 5, 3), HOST_ADDR)
        self.channel.requeue([early])
        self.assertTrue(self.channel.has_deferred())
        self.assertEqual(self.channel.receive(0), early)
        self.assertFalse(self.channel.has_deferred())

    def test_refused_datagram_leaves_nothing_pending(self):
        channel = ReliableChannel(RefusingSocket(), clock=FakeClock())
        with self.assertRaises(PeerIOError):
            channel.send_reliable(ChatMessage("Ash", message_text="hi"), JOINER_ADDR)
        self.assertFalse(channel.has_pending())
        self.assertEqual(channel.check_retransmissions(), [])


class TestCombatantState(unittest.TestCase):
    """Test HP clamping and the boost allocation invariant."""

    def setUp(self):
        self.pikachu = PokemonDataLoader().get_pokemon("Pikachu")

    def test_hp_clamped(self):
        combatant = CombatantState(self.pikachu)
        self.assertEqual(combatant.take_damage(500), 0)
        self.assertTrue(combatant.is_fainted())
        self.assertEqual(combatant.heal(1000), combatant.max_hp)
        self.assertEqual(combatant.set_hp(-4), 0)

    def test_heal_after_damage_is_clamped(self):
        combatant = CombatantState(self.pikachu)
        combatant.take_damage(20)
        self.assertEqual(combatant.heal(5), combatant.max_hp - 15)
        self.assertEqual(combatant.heal(100), combatant.max_hp)
        combatant.take_damage(combatant.max_hp)
        self.assertEqual(combatant.heal(-10), 0)
        self.assertTrue(combatant.is_fainted())

    def test_boost_allocation_limits(self):
        CombatantState(self.pikachu, 10, 0)
        with self.assertRaises(ValueError):
            CombatantState(self.pikachu, 6, 5)
        with self.assertRaises(ValueError):
            CombatantState(self.pikachu, -1, 3)

    def test_boosts_spent_only_on_special_moves(self):
        combatant = CombatantState(self.pikachu, 1, 1)
        tackle = self.pikachu.find_move("Tackle")
        blast = self.pikachu.find_move("Special Blast")
        self.assertFalse(combatant.spend_attack_boost(tackle))
        self.assertTrue(combatant.spend_attack_boost(blast))
        self.assertFalse(combatant.spend_attack_boost(blast))
        self.assertEqual(combatant.special_attack_uses, 0)
        self.assertTrue(combatant.spend_defense_boost(blast))

    def test_setup_with_invalid_allocation_is_rejected(self):
        roster = PokemonDataLoader()
        with self.assertRaises(ProtocolError):
            combatant_from_setup(BattleSetup("P", "Pikachu", 8, 8), roster, 10)
        with self.assertRaises(UnknownPokemonError):
            combatant_from_setup(BattleSetup("P", "Agumon", 5, 5), roster, 10)


class TestDamageCalculator(unittest.TestCase):
    """Test the damage formula."""

    def setUp(self):
        self.calculator = DamageCalculator()
        self.attacker = Pokemon("Striker", 100, 84, 60, 90, 60, 50, "normal")
        self.defender = Pokemon("Wall", 120, 60, 78, 60, 80, 50, "normal")
        self.move = Move("Slash", 60, "normal", "physical")

    def test_reference_values(self):
        base = self.calculator.base_damage(self.attacker, self.defender, self.move)
        self.assertEqual(round(base), 65)
        self.assertEqual(self.calculator.calculate_damage(
            self.attacker, self.defender, self.move, 0.85), 55)
        self.assertEqual(self.calculator.calculate_damage(
            self.attacker, self.defender, self.move, 1.0), 65)

    def test_seeded_draw_stays_in_range(self):
        rng = random.Random(42)
        for _ in range(200):
            factor = self.calculator.draw(rng)
            self.assertTrue(0.85 <= factor <= 1.0)
            damage = self.calculator.calculate_damage(self.attacker, self.defender,
                                                      self.move, factor)
            self.assertTrue(55 <= damage <= 65)

    def test_identical_inputs_identical_output(self):
        host_rng, joiner_rng = random.Random(42), random.Random(42)
        for _ in range(20):
            a = self.calculator.calculate_damage(self.attacker, self.defender, self.move,
                                                 self.calculator.draw(host_rng))
            b = self.calculator.calculate_damage(self.attacker, self.defender, self.move,
                                                 self.calculator.draw(joiner_rng))
            self.assertEqual(a, b)

    def test_no_effect_deals_zero(self):
        ghost = Pokemon("Haunter", 45, 50, 1, 115, 1, 95, "ghost", "poison")
        strong = Pokemon("Titan", 999, 999, 999, 999, 999, 999, "normal")
        self.assertEqual(self.calculator.calculate_damage(
            strong, ghost, strong.find_move("Tackle"), 1.0), 0)

    def test_minimum_damage_is_one(self):
        weak = Pokemon("Weak", 10, 1, 1, 1, 1, 1, "normal")
        wall = Pokemon("Wall", 10, 1, 1000, 1, 1000, 1, "normal")
        self.assertEqual(self.calculator.calculate_damage(
            weak, wall, weak.find_move("Tackle"), 0.85), 1)

    def test_boosts_scale_special_stats(self):
        roster = PokemonDataLoader()
        charizard, venusaur = roster.get_pokemon("Charizard"), roster.get_pokemon("Ivysaur")
        fire = charizard.find_move("Fire Attack")
        plain = self.calculator.calculate_damage(charizard, venusaur, fire, 1.0)
        boosted = self.calculator.calculate_damage(charizard, venusaur, fire, 1.0,
                                                   attacker_boost=True)
        defended = self.calculator.calculate_damage(charizard, venusaur, fire, 1.0,
                                                    defender_boost=True)
        self.assertGreater(boosted, plain)
        self.assertLess(defended, plain)
        tackle = charizard.find_move("Tackle")
        self.assertEqual(self.calculator.calculate_damage(charizard, venusaur, tackle, 1.0),
                         self.calculator.calculate_damage(charizard, venusaur, tackle, 1.0,
                                                          attacker_boost=True))

    def test_calculate_does_not_mutate(self):
        attacker, defender = CombatantState(self.attacker), CombatantState(self.defender)
        outcome = self.calculator.calculate(attacker, defender, self.move, 1.0)
        self.assertEqual(outcome.damage, 65)
        self.assertEqual(outcome.defender_hp_after, 55)
        self.assertEqual(outcome.attacker_hp, 100)
        self.assertEqual(defender.current_hp, 120)

    def test_status_text(self):
        self.assertIn("super effective", DamageCalculator.status_message(
            "Charizard", "Bulbasaur", "Fire Attack", 2.0, 40))
        self.assertIn("fainted", DamageCalculator.status_message(
            "Charizard", "Bulbasaur", "Fire Attack", 1.0, 40, 0))
        self.assertIn("no effect", DamageCalculator.status_message(
            "Eevee", "Gengar", "Tackle", 0.0, 0))


class TestTurnOutcome(unittest.TestCase):

    def test_matches_compares_damage_and_hp(self):
        a = TurnOutcome("Pikachu", "Tackle", 35, 20, 19, "text")
        self.assertTrue(a.matches(TurnOutcome("Pikachu", "Tackle", 35, 20, 19, "other")))
        self.assertFalse(a.matches(TurnOutcome("Pikachu", "Tackle", 35, 21, 18)))

    def test_report_conversion(self):
        outcome = TurnOutcome("Pikachu", "Tackle", 35, 20, 19, "Pikachu used Tackle!")
        self.assertEqual(TurnOutcome.from_report(outcome.to_report()), outcome)
        request = outcome.to_resolution_request()
        self.assertEqual((request.damage_dealt, request.defender_hp_remaining), (20, 19))

    def test_discrepancy_error_carries_details(self):
        discrepancy = Discrepancy(TurnOutcome("Pikachu", "Tackle", 35, 20, 19),
                                  TurnOutcome("Pikachu", "Tackle", 35, 25, 14))
        error = CalculationDiscrepancyError(discrepancy)
        self.assertIs(error.discrepancy, discrepancy)
        self.assertIn("remote damage=25", str(error))


def make_session(seed=42, mode=CommunicationMode.P2P):
    roster = PokemonDataLoader()
    return BattleSession(
        host=PeerDescriptor.remote("Ash", HOST_ADDR),
        joiner=PeerDescriptor.remote("Gary", JOINER_ADDR),
        host_combatant=CombatantState(roster.get_pokemon("Pikachu")),
        joiner_combatant=CombatantState(roster.get_pokemon("Squirtle")),
        seed=seed, mode=mode)


class TestBattleSession(unittest.TestCase):
    """Test session state, seeding and turn alternation."""

    def test_rng_is_seeded(self):
        session = make_session(seed=42)
        expected = random.Random(42)
        self.assertEqual([session.rng.random() for _ in range(3)],
                         [expected.random() for _ in range(3)])

    def test_turns_alternate(self):
        session = make_session()
        self.assertIs(session.current_turn, Side.HOST)
        order = [session.switch_turn() for _ in range(4)]
        self.assertEqual(order, [Side.JOINER, Side.HOST, Side.JOINER, Side.HOST])
        self.assertEqual(session.turn_number, 4)

    def test_game_over_is_terminal(self):
        session = make_session()
        session.transition(BattleState.WAITING_FOR_MOVE)
        session.finish(Side.JOINER)
        self.assertIs(session.loser, Side.HOST)
        self.assertTrue(session.is_over)
        with self.assertRaises(ValueError):
            session.transition(BattleState.WAITING_FOR_MOVE)
        self.assertEqual(session.event_log, ["Gary wins the battle"])

    def test_communication_mode_tokens(self):
        self.assertIs(CommunicationMode.from_wire("b"), CommunicationMode.BROADCAST)
        self.assertIs(CommunicationMode.from_wire("P"), CommunicationMode.P2P)
        with self.assertRaises(ValueError):
            CommunicationMode.from_wire("X")


class TestSpectatorRelay(unittest.TestCase):
    """Test fan-out policies."""

    def make_relay(self, mode, is_host=True):
        channel, sock, _ = make_channel()
        relay = SpectatorRelay(channel, mode, is_host=is_host, opponent=JOINER_ADDR)
        relay.add_spectator(PeerDescriptor.remote("Brock", SPECTATOR_A))
        relay.add_spectator(PeerDescriptor.remote("Misty", SPECTATOR_B))
        return relay, sock

    def destinations(self, sock):
        return [target for _, target in sock.sent]

    def test_p2p_mirror_is_separate_step(self):
        relay, sock = self.make_relay(CommunicationMode.P2P)
        message = AttackAnnounce("Tackle")
        seq_num = relay.send(message, JOINER_ADDR)
        self.assertEqual(self.destinations(sock), [JOINER_ADDR])
        relay.mirror(message)
        self.assertEqual(self.destinations(sock), [JOINER_ADDR, SPECTATOR_A, SPECTATOR_B])
        # Copies are sent with their own sequence numbers
        self.assertEqual(message.sequence_number, seq_num)
        copies = [m.sequence_number for m, _ in sock.all_messages()]
        self.assertEqual(len(set(copies)), 3)

    def test_broadcast_folds_mirror_into_send(self):
        relay, sock = self.make_relay(CommunicationMode.BROADCAST)
        message = AttackAnnounce("Tackle")
        relay.send(message, JOINER_ADDR)
        self.assertEqual(self.destinations(sock), [JOINER_ADDR, SPECTATOR_A, SPECTATOR_B])
        self.assertEqual(relay.mirror(message), [])
        self.assertEqual(len(sock.sent), 3)

    def test_inbound_battle_messages_are_relayed(self):
        relay, sock = self.make_relay(CommunicationMode.P2P)
        relay.relay_inbound(DefenseAnnounce(sequence_number=4))
        relay.relay_inbound(Ack(4))
        self.assertEqual(self.destinations(sock), [SPECTATOR_A, SPECTATOR_B])

    def test_non_host_never_relays(self):
        relay, sock = self.make_relay(CommunicationMode.BROADCAST, is_host=False)
        relay.send(AttackAnnounce("Tackle"), HOST_ADDR)
        relay.mirror(AttackAnnounce("Tackle"))
        relay.relay_inbound(CalculationConfirm(3))
        relay.relay_chat(ChatMessage("Brock", message_text="hi"), SPECTATOR_A, False)
        self.assertEqual(self.destinations(sock), [HOST_ADDR])

    def test_opponent_chat_goes_to_all_spectators(self):
        relay, sock = self.make_relay(CommunicationMode.P2P)
        targets = relay.relay_chat(ChatMessage("Gary", message_text="gl"), JOINER_ADDR, True)
        self.assertEqual(targets, [SPECTATOR_A, SPECTATOR_B])

    def test_spectator_chat_withheld_from_opponent_in_p2p(self):
        relay, _ = self.make_relay(CommunicationMode.P2P)
        targets = relay.relay_chat(ChatMessage("Brock", message_text="go"), SPECTATOR_A, False)
        self.assertEqual(targets, [SPECTATOR_B])

    def test_spectator_chat_reaches_opponent_in_broadcast(self):
        relay, _ = self.make_relay(CommunicationMode.BROADCAST)
        targets = relay.relay_chat(ChatMessage("Brock", message_text="go"), SPECTATOR_A, False)
        self.assertEqual(targets, [SPECTATOR_B, JOINER_ADDR])

    def test_spectator_bookkeeping(self):
        relay, _ = self.make_relay(CommunicationMode.P2P)
        self.assertFalse(relay.add_spectator(PeerDescriptor.remote("Again", SPECTATOR_A)))
        seqs = relay.mirror(AttackAnnounce("Tackle"))
        self.assertTrue(relay.owns(seqs[0]))
        dropped = relay.drop_unreachable([seqs[0]])
        self.assertEqual([s.address for s in dropped], [SPECTATOR_A])
        relay.release()
        self.assertEqual(relay.spectators, [])

    def test_late_spectator_receives_both_setups(self):
        relay, sock = self.make_relay(CommunicationMode.P2P)
        own = BattleSetup("P", "Charizard", 5, 5)
        relay.send(own, JOINER_ADDR)
        relay.mirror(own)
        relay.relay_inbound(BattleSetup("P", "Blastoise", 5, 5, 1))

        relay.add_spectator(PeerDescriptor.remote("Erika", SPECTATOR_C))
        names = [m.pokemon_name for m in sock.messages_to(SPECTATOR_C)]
        self.assertEqual(names, ["Charizard", "Blastoise"])
        self.assertEqual(len(sock.messages_to(SPECTATOR_A)), 2)

    def test_third_party_replies_are_not_fatal(self):
        relay, _ = self.make_relay(CommunicationMode.P2P)
        seq_num = relay.reply(HandshakeRejected(reason="busy"), SPECTATOR_C)
        self.assertTrue(relay.owns(seq_num))
        self.assertEqual(relay.drop_unreachable([seq_num]), [])
        self.assertEqual(len(relay.spectators), 2)


class TestHostHandshake(unittest.TestCase):
    """Test the host pairing state machine without a network."""

    def setUp(self):
        self.channel, self.sock, _ = make_channel()
        self.config = ProtocolConfig()
        local = PeerDescriptor.remote("Ash", ("127.0.0.1", 50000))
        self.handshake = HostHandshake(local, self.channel, self.config, seed=42)

    def test_discovery_reply(self):
        state = self.handshake.handle(FindingHost(), JOINER_ADDR)
        self.assertIs(state, HandshakeState.AWAITING_DISCOVERY)
        self.assertEqual(self.sock.messages_to(JOINER_ADDR),
                         [IAmHosting("Ash", "127.0.0.1", 50000)])
        self.assertFalse(self.channel.has_pending())

    def test_accept_pairs_with_seed(self):
        state = self.handshake.handle(HandshakeRequest("Gary", 1), JOINER_ADDR)
        self.assertIs(state, HandshakeState.PAIRED)
        self.assertEqual(self.handshake.joiner.name, "Gary")
        response = self.sock.messages_to(JOINER_ADDR)[0]
        self.assertIsInstance(response, HandshakeResponse)
        self.assertEqual(response.seed, 42)
        self.assertTrue(self.channel.has_pending())

    def test_reject_then_listen_again(self):
        state = self.handshake.handle(HandshakeRequest("Gary", 1), JOINER_ADDR,
                                      decide=lambda name, address: False)
        self.assertIs(state, HandshakeState.REJECTED)
        self.assertIsInstance(self.sock.messages_to(JOINER_ADDR)[0], HandshakeRejected)

        state = self.handshake.handle(FindingHost(), SPECTATOR_A)
        self.assertIs(state, HandshakeState.AWAITING_DISCOVERY)
        state = self.handshake.handle(HandshakeRequest("Misty", 1), SPECTATOR_B)
        self.assertIs(state, HandshakeState.PAIRED)

    def test_second_joiner_rejected(self):
        self.handshake.handle(HandshakeRequest("Gary", 1), JOINER_ADDR)
        self.handshake.handle(HandshakeRequest("Misty", 1), SPECTATOR_B)
        rejection = self.sock.messages_to(SPECTATOR_B)[0]
        self.assertIsInstance(rejection, HandshakeRejected)
        self.assertEqual(self.handshake.joiner.address, JOINER_ADDR)

    def test_spectators_admitted_without_asking(self):
        self.handshake.handle(SpectatorRequest("Brock", 1), SPECTATOR_A,
                              decide=lambda name, address: False)
        self.assertEqual([s.name for s in self.handshake.spectators], ["Brock"])
        self.assertIsInstance(self.sock.messages_to(SPECTATOR_A)[0], HandshakeResponse)
        self.assertIs(self.handshake.state, HandshakeState.AWAITING_DISCOVERY)

    def test_spectators_can_be_refused(self):
        self.config.accept_spectators = False
        self.handshake.handle(SpectatorRequest("Brock", 1), SPECTATOR_A)
        self.assertEqual(self.handshake.spectators, [])
        self.assertIsInstance(self.sock.messages_to(SPECTATOR_A)[0], HandshakeRejected)

    def test_spectators_join_relay_after_pairing(self):
        self.handshake.handle(HandshakeRequest("Gary", 1), JOINER_ADDR)
        relay = SpectatorRelay(self.channel, spectators=self.handshake.spectators,
                               opponent=JOINER_ADDR)
        self.handshake.relay = relay
        self.handshake.handle(SpectatorRequest("Brock", 2), SPECTATOR_A)
        self.assertEqual([s.address for s in relay.spectators], [SPECTATOR_A])
        self.assertEqual(self.sock.messages_to(SPECTATOR_A)[0].seed, 42)

    def test_battle_time_replies_go_through_relay(self):
        self.handshake.handle(HandshakeRequest("Gary", 1), JOINER_ADDR)
        relay = SpectatorRelay(self.channel, spectators=self.handshake.spectators,
                               opponent=JOINER_ADDR)
        self.handshake.relay = relay
        self.handshake.handle(SpectatorRequest("Brock", 2), SPECTATOR_A)
        self.handshake.handle(HandshakeRequest("Misty", 1), SPECTATOR_B)

        snapshot = self.channel.pending_snapshot()
        self.assertEqual(len(snapshot), 3)
        # Only the pairing response to the joiner can end the battle
        fatal = [p.destination for seq, p in snapshot.items() if not relay.owns(seq)]
        self.assertEqual(fatal, [JOINER_ADDR])


class TestChat(unittest.TestCase):
    """Test chat and sticker handling."""

    def setUp(self):
        self.lines = []
        self.chat = ChatHandler("Ash", ProtocolConfig(), display=self.lines.append)

    def test_text_message(self):
        message = self.chat.make_message("  good luck  ")
        self.assertEqual((message.content_type, message.message_text), ("TEXT", "good luck"))
        self.assertEqual(self.chat.render(message), "[Ash]: good luck")

    def test_sticker_command(self):
        message = self.chat.make_message("/smile")
        self.assertEqual((message.content_type, message.sticker_data), ("STICKER", "/smile"))
        self.assertEqual(self.chat.render(message), "[Ash]: :)")

    def test_raw_sticker(self):
        message = self.chat.make_message("/sticker aGVsbG8=")
        self.assertEqual(message.sticker_data, "aGVsbG8=")
        self.assertEqual(self.chat.render(message), "[Ash] sent a sticker (5 bytes)")
        with self.assertRaises(ValueError):
            self.chat.make_message("/sticker not*base64")

    def test_invalid_sticker_reported(self):
        message = ChatMessage("Gary", "STICKER", sticker_data="%%%")
        self.chat.show(message)
        self.assertEqual(self.lines, ["Invalid sticker received from Gary"])

    def test_validate_sticker_size(self):
        self.assertTrue(validate_sticker("aGVsbG8="))
        self.assertFalse(validate_sticker("aGVsbG8=", max_bytes=4))
        self.assertFalse(validate_sticker(""))

    def test_sticker_must_fit_one_datagram(self):
        small = base64.b64encode(b"\x89PNG" * 8000).decode("ascii")
        self.assertEqual(self.chat.make_message("/sticker " + small).sticker_data, small)

        large = base64.b64encode(b"\x00" * 80 * 1024).decode("ascii")
        self.assertTrue(validate_sticker(large))
        with self.assertRaises(ValueError):
            self.chat.make_message("/sticker " + large)

    def test_oversized_sticker_never_reaches_socket(self):
        channel, sock, _ = make_channel()
        chat = ChatHandler("Ash", display=self.lines.append)
        coordinator = TurnCoordinator(make_session(), Side.HOST, channel, chat=chat,
                                      display=self.lines.append)
        payload = base64.b64encode(b"\x00" * 80 * 1024).decode("ascii")

        self.assertIsNone(coordinator.send_chat("/sticker " + payload))
        self.assertEqual(sock.sent, [])
        self.assertFalse(channel.has_pending())
        self.assertTrue(self.lines[0].startswith("Message too large"))
        self.assertIsNotNone(coordinator.send_chat("/gg"))


class TestMoveChoice(unittest.TestCase):

    def setUp(self):
        self.charizard = CombatantState(PokemonDataLoader().get_pokemon("Charizard"))

    def test_by_number_and_name(self):
        self.assertEqual(parse_move_choice("1", self.charizard), ("Tackle", False))
        self.assertEqual(parse_move_choice("fire attack+", self.charizard),
                         ("Fire Attack", True))
        self.assertEqual(parse_move_choice("4 boost", self.charizard),
                         ("Special Blast", True))

    def test_other_lines_are_not_moves(self):
        self.assertIsNone(parse_move_choice("good game", self.charizard))
        self.assertIsNone(parse_move_choice("9", self.charizard))


class TestSpectatorView(unittest.TestCase):
    """Test how a spectator tracks relayed battle messages."""

    def setUp(self):
        channel, _, _ = make_channel()
        self.lines = []
        self.spectator = SpectatorPeer(PeerDescriptor.remote("Brock", SPECTATOR_A), channel,
                                       PokemonDataLoader(), display=self.lines.append)

    def test_setups_assign_sides_in_order(self):
        self.spectator.handle(BattleSetup("P", "Charizard", 5, 5, 1), HOST_ADDR)
        self.spectator.handle(BattleSetup("P", "Blastoise", 5, 5, 2), HOST_ADDR)
        self.assertEqual((self.spectator.host_pokemon, self.spectator.host_hp),
                         ("Charizard", 78))
        self.assertEqual((self.spectator.joiner_pokemon, self.spectator.joiner_hp),
                         ("Blastoise", 79))

    def test_reports_update_defender_hp(self):
        self.spectator.handle(BattleSetup("P", "Charizard", 5, 5, 1), HOST_ADDR)
        self.spectator.handle(BattleSetup("P", "Blastoise", 5, 5, 2), HOST_ADDR)
        self.spectator.handle(AttackAnnounce("Tackle", sequence_number=3), HOST_ADDR)
        self.spectator.handle(CalculationReport("Charizard", "Tackle", 78, 30, 49,
                                                sequence_number=4), HOST_ADDR)
        self.assertEqual(self.spectator.last_move, "Tackle")
        self.assertEqual((self.spectator.last_attacker, self.spectator.joiner_hp),
                         ("host", 49))
        self.spectator.handle(CalculationReport("Blastoise", "Tackle", 49, 40, 38,
                                                sequence_number=5), HOST_ADDR)
        self.assertEqual((self.spectator.last_attacker, self.spectator.host_hp),
                         ("joiner", 38))

    def test_discrepancy_and_game_over(self):
        self.spectator.handle(ResolutionRequest("Charizard", "Tackle", 31, 48, 6), HOST_ADDR)
        self.assertEqual(len(self.spectator.discrepancies), 1)
        self.spectator.handle(GameOver("Ash", "Gary", 7), HOST_ADDR)
        self.assertTrue(self.spectator.game_over)
        self.assertEqual((self.spectator.winner, self.spectator.loser), ("Ash", "Gary"))
        self.assertIn("Winner: Ash", self.lines[-1])


class TestAddressParsing(unittest.TestCase):

    def test_parse_address(self):
        self.assertEqual(parse_address("192.168.1.5:50002"), ("192.168.1.5", 50002))
        self.assertEqual(parse_address("192.168.1.5"), ("192.168.1.5", 50000))


class TestDebugLogger(unittest.TestCase):

    def test_events_and_statistics(self):
        lines = []
        logger = DebugLogger("Host", 50000, verbose=True, output=lines.append)
        logger.log_message_sent(AttackAnnounce("Tackle", sequence_number=1), JOINER_ADDR)
        logger.log_retransmission(1, 2)
        logger.log_discrepancy("damage differs")
        stats = logger.get_statistics()
        self.assertEqual(stats["messages_sent"], 1)
        self.assertEqual(stats["event_type_counts"][EventType.DISCREPANCY.value], 1)
        self.assertEqual(stats["sent_by_type"], {"ATTACK_ANNOUNCE": 1})
        self.assertEqual(stats["retransmissions"], 1)
        self.assertEqual(stats["discrepancies"], 1)
        self.assertTrue(lines[0].startswith("LOG :: [Host] Sent ATTACK_ANNOUNCE"))
        self.assertIn("\t> move_name: Tackle", lines[0])
        self.assertIn('"peer_type": "Host"', logger.export_to_json())


def run_tests():
    """Run all tests and display results."""
    print("=" * 60)
    print("PokeProtocol Test Suite")
    print("=" * 60)
    print()

    loader = unittest.TestLoader()
    suite = unittest.TestSuite()
    for case in (TestPokemonDataLoader, TestTypeEffectiveness, TestMessageCodec,
                 TestReliableChannel, TestCombatantState, TestDamageCalculator,
                 TestTurnOutcome, TestBattleSession, TestSpectatorRelay,
                 TestHostHandshake, TestChat, TestMoveChoice, TestSpectatorView,
                 TestAddressParsing, TestDebugLogger):
        suite.addTests(loader.loadTestsFromTestCase(case))

    runner = unittest.TextTestRunner(verbosity=2)
    result = runner.run(suite)

    print()
    print("=" * 60)
    print("Test Summary")
    print("=" * 60)
    print(f"Tests run: {result.testsRun}")
    print(f"Failures: {len(result.failures)}")
    print(f"Errors: {len(result.errors)}")

    if result.wasSuccessful():
        print("\nALL TESTS PASSED!")
        return 0
    print("\nSOME TESTS FAILED")
    return 1


if __name__ == "__main__":
    sys.exit(run_tests())

"""
Spectator Relay Module

Only the host knows the spectators, so only the host relays. The
communication mode decides where the mirroring happens:

- P2P: a send reaches only its addressee; the caller mirrors to spectators
  with a separate ``mirror`` call.
- BROADCAST: the mirror is folded into ``send`` itself.

Either way every spectator ends up with one copy of each battle message.
"""

import dataclasses
from typing import Dict, Iterable, List, Optional

from .debug_logger import DebugLogger
from .messages import BattleSetup, ChatMessage, Message, MessageType
from .peer import Address, PeerDescriptor
from .reliability import ReliableChannel
from .session import CommunicationMode

# Messages spectators follow the battle with
SPECTATOR_VISIBLE = frozenset({
    MessageType.BATTLE_SETUP,
    MessageType.ATTACK_ANNOUNCE,
    MessageType.DEFENSE_ANNOUNCE,
    MessageType.CALCULATION_REPORT,
    MessageType.CALCULATION_CONFIRM,
    MessageType.RESOLUTION_REQUEST,
    MessageType.GAME_OVER,
    MessageType.CHAT_MESSAGE,
})


class SpectatorRelay:
    """
    Fans messages out to spectators according to the communication mode.

    Attributes:
        channel: Reliable channel of the local peer
        mode: Communication mode of the session
        spectators: Admitted spectators; shared with the session
        is_host: Relaying is a no-op unless set
        opponent: Address of the other player, for chat relaying
    """

    def __init__(self, channel: ReliableChannel,
                 mode: CommunicationMode = CommunicationMode.P2P,
                 spectators: Optional[List[PeerDescriptor]] = None,
                 is_host: bool = True, opponent: Optional[Address] = None,
                 logger: Optional[DebugLogger] = None):
        self.channel = channel
        self.mode = mode
        self.spectators = spectators if spectators is not None else []
        self.is_host = is_host
        self.opponent = opponent
        self.logger = logger
        self._outstanding: Dict[int, Address] = {}
        # Host's setup first, then the joiner's
        self.setups: List[BattleSetup] = []

    def add_spectator(self, spectator: PeerDescriptor) -> bool:
        """
        Admit a spectator.

        A spectator admitted after the setup exchange is sent both
        BATTLE_SETUPs so it can tell the players apart.

        Returns:
            False if a spectator with that address is already admitted
        """
        if any(s.address == spectator.address for s in self.spectators):
            return False
        self.spectators.append(spectator)
        if self.logger:
            self.logger.log_spectator_join(spectator.address)
        for setup in self.setups:
            self._send_copy(setup, spectator.address)
        return True

    def release(self):
        """Forget every spectator; called when the session ends."""
        self.spectators.clear()
        self.setups.clear()
        self._outstanding.clear()

    def send(self, message: Message, destination: Address) -> int:
        """
        Send a battle message reliably to ``destination``.

        In BROADCAST mode the host also copies it to every spectator.

        Returns:
            Sequence number of the primary send
        """
        seq_num = self.channel.send_reliable(message, destination)
        self._remember_setup(message)
        if self.is_host and self.mode is CommunicationMode.BROADCAST:
            self._fan_out(message, exclude=(destination,))
        return seq_num

    def mirror(self, message: Message) -> List[int]:
        """
        Explicit spectator copy of a message already sent with ``send``.

        Only acts in P2P mode; in BROADCAST mode ``send`` already did it.
        """
        if self.is_host and self.mode is CommunicationMode.P2P:
            return self._fan_out(message)
        return []

    def relay_inbound(self, message: Message) -> List[int]:
        """Copy the opponent's battle message to the spectators."""
        if not self.is_host or message.message_type not in SPECTATOR_VISIBLE:
            return []
        self._remember_setup(message)
        return self._fan_out(message)

    def relay_chat(self, message: ChatMessage, sender: Address,
                   from_opponent: bool) -> List[Address]:
        """
        Forward a chat message received by the host.

        Chat from the opponent goes to every spectator. Chat from a spectator
        goes to the other spectators, and to the opponent only in BROADCAST
        mode.

        Returns:
            Addresses the message was forwarded to
        """
        if not self.is_host:
            return []

        targets = [s.address for s in self.spectators if s.address != sender]
        if (not from_opponent and self.mode is CommunicationMode.BROADCAST
                and self.opponent is not None and self.opponent != sender):
            targets.append(self.opponent)

        for address in targets:
            self._send_copy(message, address)
        return targets

    def reply(self, message: Message, address: Address) -> int:
        """
        Reliable send to someone other than the opponent, such as a
        spectator being admitted or a refused requester.

        Its loss only drops that party, never the battle.
        """
        return self._send_copy(message, address)

    def drop_unreachable(self, failed: Iterable[int]) -> List[PeerDescriptor]:
        """
        Remove spectators that never acknowledged a relayed message.

        Args:
            failed: Sequence numbers reported by the retransmission sweep

        Returns:
            The spectators that were removed
        """
        gone = {self._outstanding.pop(seq) for seq in failed if seq in self._outstanding}
        dropped = [s for s in self.spectators if s.address in gone]
        for spectator in dropped:
            self.spectators.remove(spectator)
            if self.logger:
                self.logger.log_disconnection(spectator.address)
        return dropped

    def owns(self, sequence_number: int) -> bool:
        """True if the sequence number belongs to a send to a non-opponent."""
        return sequence_number in self._outstanding

    def _remember_setup(self, message: Message):
        if self.is_host and isinstance(message, BattleSetup):
            self.setups.append(message)

    def _fan_out(self, message: Message, exclude: Iterable[Address] = ()) -> List[int]:
        excluded = set(exclude)
        return [self._send_copy(message, s.address)
                for s in list(self.spectators) if s.address not in excluded]

    def _send_copy(self, message: Message, address: Address) -> int:
        # Each copy gets its own sequence number and pending entry
        seq_num = self.channel.send_reliable(dataclasses.replace(message), address)
        if len(self._outstanding) >= 256:
            self._outstanding = {seq: addr for seq, addr in self._outstanding.items()
                                 if self.channel.is_pending(seq)}
        self._outstanding[seq_num] = address
        return seq_num

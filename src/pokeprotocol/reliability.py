"""
Reliability Layer Module

This module implements the reliability layer on top of UDP, providing:
- Sequence numbers scoped to one channel
- Acknowledgements (ACKs)
- Retransmission with timeout handling and a bounded retry budget
- Duplicate suppression for inbound messages
- A background sweeper that drives retransmissions on a fixed cadence
"""

import select
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from .config import DEFAULT_ACK_TIMEOUT, DEFAULT_MAX_RETRIES, MAX_DATAGRAM
from .debug_logger import DebugLogger
from .errors import PeerIOError
from .messages import Ack, Message, carries_sequence_number, decode

Address = Tuple[str, int]


@dataclass
class PendingSend:
    """
    A message waiting for acknowledgment.

    Attributes:
        message: The message being sent
        destination: Where it was sent
        retries_remaining: Retransmissions still allowed
        last_sent: Clock reading of the latest transmission
        acknowledged: Set once the matching ACK arrives
    """
    message: Message
    destination: Address
    retries_remaining: int
    last_sent: float
    acknowledged: bool = False


class ReliableChannel:
    """
    Provides reliability services on top of one UDP socket.

    The pending-send table is shared between the sending path, the
    acknowledgement path and the retransmission sweep, so every access to it
    happens under ``self._lock``.
    """

    def __init__(self, sock, timeout: float = DEFAULT_ACK_TIMEOUT,
                 max_retries: int = DEFAULT_MAX_RETRIES,
                 logger: Optional[DebugLogger] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize the reliability layer.

        Args:
            sock: Bound UDP socket (anything with sendto/recvfrom/fileno)
            timeout: Seconds before an unacknowledged message is resent
            max_retries: Maximum retransmission attempts
            logger: Debug logger of the owning peer
            clock: Monotonic time source
        """
        self.sock = sock
        self.timeout = timeout
        self.max_retries = max_retries
        self.logger = logger
        self.clock = clock
        self._lock = threading.Lock()
        self._next_sequence = 1
        self._pending: Dict[int, PendingSend] = {}
        self._received: Deque[Tuple[Address, int]] = deque(maxlen=1000)
        self._received_index: Set[Tuple[Address, int]] = set()
        self._deferred: Deque[Tuple[Message, Address]] = deque()

    def fileno(self) -> int:
        return self.sock.fileno()

    def next_sequence_number(self) -> int:
        """
        Get the next sequence number.

        Returns:
            A number strictly greater than every number issued before
        """
        with self._lock:
            seq_num = self._next_sequence
            self._next_sequence += 1
            return seq_num

    def send_reliable(self, message: Message, destination: Address) -> int:
        """
        Send a message and track it until acknowledged.

        The issued sequence number is written into the message before it is
        encoded, so the receiver acknowledges exactly this number.

        Args:
            message: Message to send
            destination: Target address

        Returns:
            Assigned sequence number

        Raises:
            PeerIOError: The socket refused the datagram; nothing stays pending
        """
        seq_num = self.next_sequence_number()
        if carries_sequence_number(message):
            message.sequence_number = seq_num

        with self._lock:
            self._pending[seq_num] = PendingSend(
                message=message,
                destination=destination,
                retries_remaining=self.max_retries,
                last_sent=self.clock(),
            )

        try:
            self._transmit(message, destination)
        except PeerIOError:
            with self._lock:
                self._pending.pop(seq_num, None)
            raise
        return seq_num

    def send_unreliable(self, message: Message, destination: Address):
        """Send a message once, without tracking (discovery traffic)."""
        self._transmit(message, destination)

    def send_ack(self, sequence_number: int, destination: Address):
        """
        Send an acknowledgment message. Never tracked.

        Args:
            sequence_number: Sequence number being acknowledged
            destination: Target address
        """
        self._transmit(Ack(sequence_number), destination)
        if self.logger:
            self.logger.log_ack(sequence_number, "SENT")

    def receive_ack(self, sequence_number: int) -> bool:
        """
        Handle an incoming ACK message.

        Args:
            sequence_number: The acknowledged sequence number

        Returns:
            True if a pending entry was satisfied, False for unknown or
            repeated acknowledgements
        """
        with self._lock:
            pending = self._pending.pop(sequence_number, None)
            if pending is None:
                return False
            pending.acknowledged = True

        if self.logger:
            self.logger.log_ack(sequence_number, "RECEIVED")
        return True

    def check_retransmissions(self) -> List[int]:
        """
        Resend timed-out messages and drop the ones out of retries.

        Returns:
            Sequence numbers that failed permanently during this sweep
        """
        failed: List[int] = []
        resend: List[Tuple[int, PendingSend]] = []
        now = self.clock()

        with self._lock:
            for seq_num in list(self._pending):
                pending = self._pending[seq_num]
                if pending.acknowledged or now - pending.last_sent <= self.timeout:
                    continue
                if pending.retries_remaining > 0:
                    pending.retries_remaining -= 1
                    pending.last_sent = now
                    resend.append((seq_num, pending))
                else:
                    failed.append(seq_num)
                    del self._pending[seq_num]

        for seq_num, pending in resend:
            if self.logger:
                self.logger.log_retransmission(seq_num, pending.retries_remaining)
            try:
                self._transmit(pending.message, pending.destination)
            except PeerIOError:
                # The entry stays pending; a later sweep retries or fails it
                pass

        if failed and self.logger:
            self.logger.log_timeout("retransmission", {"failed": failed})
        return failed

    def has_pending(self) -> bool:
        """True while any message waits for its ACK."""
        with self._lock:
            return bool(self._pending)

    def is_pending(self, sequence_number: int) -> bool:
        with self._lock:
            return sequence_number in self._pending

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def pending_snapshot(self) -> Dict[int, PendingSend]:
        """Copy of the pending table, for inspection."""
        with self._lock:
            return {seq: PendingSend(p.message, p.destination, p.retries_remaining,
                                     p.last_sent, p.acknowledged)
                    for seq, p in self._pending.items()}

    def is_duplicate(self, address: Address, sequence_number: int) -> bool:
        """
        Check if a sequence number from this sender was already processed.

        Args:
            address: Sender address
            sequence_number: Sequence number to check

        Returns:
            True if duplicate, False otherwise
        """
        return (address, sequence_number) in self._received_index

    def mark_received(self, address: Address, sequence_number: int):
        """Remember a processed message so retransmissions are ignored."""
        key = (address, sequence_number)
        if key in self._received_index:
            return
        if len(self._received) == self._received.maxlen:
            self._received_index.discard(self._received[0])
        self._received.append(key)
        self._received_index.add(key)

    def is_stale(self, message: Message, address: Address) -> bool:
        """
        Consume ACKs and already processed retransmissions.

        A duplicate is acknowledged again, since the earlier ACK was
        evidently lost.

        Returns:
            True if nothing is left to do with the message
        """
        if isinstance(message, Ack):
            self.receive_ack(message.ack_number)
            return True
        seq_num = getattr(message, 'sequence_number', 0)
        if seq_num and self.is_duplicate(address, seq_num):
            self.send_ack(seq_num, address)
            return True
        return False

    def accept(self, message: Message, address: Address):
        """Acknowledge an inbound message and remember it as processed."""
        seq_num = getattr(message, 'sequence_number', 0)
        if seq_num:
            self.send_ack(seq_num, address)
            self.mark_received(address, seq_num)

    def requeue(self, messages: List[Tuple[Message, Address]]):
        """
        Hand messages that arrived too early back to the next ``receive``.

        They have not been acknowledged yet; whoever finally accepts them
        sends the ACK.
        """
        self._deferred.extend(messages)

    def has_deferred(self) -> bool:
        return bool(self._deferred)

    def receive(self, timeout: float) -> Optional[Tuple[Message, Address]]:
        """
        Wait up to ``timeout`` for one datagram.

        Requeued messages are returned first, without touching the socket.

        Returns:
            (message, sender) or None on timeout or an undecodable record

        Raises:
            PeerIOError: The socket failed
        """
        if self._deferred:
            return self._deferred.popleft()

        try:
            ready, _, _ = select.select([self.sock], [], [], timeout)
            if not ready:
                return None
            data, address = self.sock.recvfrom(MAX_DATAGRAM)
        except OSError as e:
            if self.logger:
                self.logger.log_error("Error receiving message", e)
            raise PeerIOError(f"Socket receive failed: {e}") from e

        message = decode(data)
        if message is None:
            if self.logger:
                self.logger.log_warning("Dropped undecodable datagram",
                                        {"source": f"{address[0]}:{address[1]}",
                                         "size": len(data)})
            return None

        address = (address[0], address[1])
        if self.logger:
            self.logger.log_message_received(message, address)
        return message, address

    def _transmit(self, message: Message, destination: Address):
        try:
            self.sock.sendto(message.serialize(), destination)
        except OSError as e:
            if self.logger:
                self.logger.log_error("Error sending message", e)
            raise PeerIOError(f"Socket send failed: {e}") from e
        if self.logger:
            self.logger.log_message_sent(message, destination)


class RetransmissionSweeper(threading.Thread):
    """
    Calls ``check_retransmissions`` on a fixed cadence.

    Runs independently of the turn flow, which may be blocked waiting for a
    datagram that was lost. Failed sequence numbers go to ``on_failure``.
    """

    def __init__(self, channel: ReliableChannel, interval: float = 0.1,
                 on_failure: Optional[Callable[[List[int]], None]] = None):
        super().__init__(name="retransmission-sweeper", daemon=True)
        self.channel = channel
        self.interval = interval
        self.on_failure = on_failure
        self._stopped = threading.Event()

    def run(self):
        while not self._stopped.wait(self.interval):
            failed = self.channel.check_retransmissions()
            if failed and self.on_failure:
                self.on_failure(failed)

    def stop(self):
        self._stopped.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout=self.interval * 5)
